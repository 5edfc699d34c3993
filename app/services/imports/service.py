# app/services/imports/service.py
"""
Import Service - stage operations of the patient CSV import wizard.

This service owns the database session for one request and is the only
place where a stage ends its unit of work. Every job it touches is scoped
to the caller's practice: a job of another practice is reported as not found.
"""
import csv
import io
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ImportLockedError, InvalidJobStateError, NotFoundError, ValidationError
from app.db.repositories.import_jobs import ImportJobRepository
from app.db.repositories.patients import PatientRepository
from app.db.session import async_session_factory
from app.models.import_job import ImportJob, ImportJobRow, ImportJobStatus, RowStatus
from app.schemas.import_job import (
    CancelResponse, DetectHeadersResponse, FieldIssue, ImportJobResponse, ImportProgress,
    ImportRowResponse, ImportStats, PatientFieldInfo, RowSample, RunResponse,
    SuggestedMapping, UploadResponse, ValidateResponse, ValidationSamples,
)
from app.schemas.user import User
from app.services.imports.executor import ImportExecutor, USER_CANCELLATION
from app.services.imports.locks import TenantLockManager
from app.services.imports.mapping import field_catalogue, suggest_mapping, validate_mapping
from app.services.imports.matcher import RecordMatcher
from app.services.imports.normalizer import normalize_row
from app.services.imports.parser import SEMICOLON, compute_file_hash, parse_csv

logger = logging.getLogger("practice.imports.service")

ERRORS_ROW_COLUMN = "row"
ERRORS_COLUMN = "errors"
ERRORS_SEPARATOR = " | "
EXECUTION_ERROR_FIELD = "db"


class ImportService:
    """
    Stage operations of the import wizard for one authenticated user.

    Usage:
        async with ImportService(current_user) as service:
            return await service.upload(content, file_name)
    """

    def __init__(self, user: User):
        self.user = user
        self.tenant_id = user.tenant_id
        self.session: Optional[AsyncSession] = None
        self.import_repo: Optional[ImportJobRepository] = None
        self.patient_repo: Optional[PatientRepository] = None

    async def __aenter__(self):
        """Context manager entry - creates session and repositories."""
        self.session = async_session_factory()
        self.import_repo = ImportJobRepository(self.session)
        self.patient_repo = PatientRepository(self.session)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - rolls back unfinished work and closes the session."""
        try:
            if exc_type is not None and self.session.in_transaction():
                await self.session.rollback()
                logger.debug(f"Rolled back import transaction for tenant {self.tenant_id}")
            await self.session.close()
        except Exception as e:
            logger.error(f"Error cleaning up ImportService for tenant {self.tenant_id}: {str(e)}")
        finally:
            self.session = None
            self.import_repo = None
            self.patient_repo = None

    async def _get_job(self, job_id: str) -> ImportJob:
        job = await self.import_repo.get_for_tenant(job_id, self.tenant_id)
        if not job:
            raise NotFoundError(f"Import job {job_id} not found", details={"job_id": job_id})
        return job

    # Upload

    async def upload(self, content: str, file_name: str) -> UploadResponse:
        """
        Create a pending job holding the uploaded CSV text.

        Raises:
            ValidationError: Empty content or content over the size limit
        """
        if not content or not content.strip():
            raise ValidationError("The uploaded file is empty")

        size = len(content.encode("utf-8"))
        if size > settings.IMPORT_MAX_FILE_SIZE:
            raise ValidationError(
                f"File size exceeds {settings.IMPORT_MAX_FILE_SIZE // (1024 * 1024)}MB limit",
                details={"file_size": size, "max_file_size": settings.IMPORT_MAX_FILE_SIZE},
            )

        file_hash = compute_file_hash(content)
        job = await self.import_repo.create_import_job(
            tenant_id=self.tenant_id,
            user_id=self.user.id,
            file_name=file_name,
            file_hash=file_hash,
            content=content,
        )
        previous = await self.import_repo.get_previous_by_hash(
            self.tenant_id, file_hash, exclude_job_id=job.id
        )
        await self.session.commit()

        if previous:
            logger.info(f"Import job {job.id} re-uploads the file of job {previous.id}")

        return UploadResponse(
            job_id=job.id,
            file_name=job.file_name,
            file_hash=file_hash,
            status=job.status,
            previous_job_id=previous.id if previous else None,
        )

    # Header detection

    async def detect_headers(self, job_id: str) -> DetectHeadersResponse:
        """Headers, delimiter, row count and an advisory mapping for a job's file."""
        job = await self._get_job(job_id)
        parsed = parse_csv(job.content)
        if not parsed.headers:
            raise ValidationError("The uploaded file has no header line", details={"job_id": job_id})

        return DetectHeadersResponse(
            headers=parsed.headers,
            delimiter=parsed.delimiter,
            row_count=parsed.row_count,
            suggested_mapping=[
                SuggestedMapping(csv_header=header, suggested_field=key)
                for header, key in suggest_mapping(parsed.headers)
            ],
            patient_fields=[PatientFieldInfo(**entry) for entry in field_catalogue()],
        )

    # Validation

    async def validate(self, job_id: str, mapping: Dict[str, Optional[str]]) -> ValidateResponse:
        """
        Normalize, validate and match every row, replacing earlier row outcomes.

        Re-validating a validated job with another mapping is allowed and
        idempotent: the previous rows and stats are replaced wholesale.

        Raises:
            InvalidJobStateError: Job is neither pending nor validated
            ValidationError: Mapping does not fit the file
        """
        job = await self._get_job(job_id)
        current = ImportJobStatus(job.status)
        if current not in (ImportJobStatus.PENDING, ImportJobStatus.VALIDATED):
            raise InvalidJobStateError(
                f"Import job {job.id} cannot be validated while {current.value}",
                details={"job_id": job.id, "status": current.value},
            )

        parsed = parse_csv(job.content)
        confirmed = validate_mapping(mapping, parsed.headers)
        matcher = RecordMatcher(self.patient_repo, self.tenant_id)

        stats = ImportStats(total=parsed.row_count)
        seen_identities: Set[Tuple[Any, ...]] = set()
        outcomes: List[Dict[str, Any]] = []

        for row_index, raw in enumerate(parsed.rows, start=1):
            result = normalize_row(raw, confirmed, settings.IMPORT_DEFAULT_COUNTRY)
            match = None

            if result.normalized is not None:
                match = await matcher.find_match(result.normalized)
                if match:
                    identity = ("record", match.record_id)
                    stats.to_update += 1
                else:
                    identity = ("new",) + result.normalized.identity_key
                    stats.to_create += 1
                if identity in seen_identities:
                    stats.collision += 1
                seen_identities.add(identity)

            if result.status == RowStatus.OK:
                stats.ok += 1
            elif result.status == RowStatus.WARNING:
                stats.warning += 1
            else:
                stats.error += 1

            outcomes.append({
                "row_index": row_index,
                "raw_data": raw,
                "normalized_data": result.normalized.model_dump(mode="json") if result.normalized else None,
                "status": result.status,
                "errors": [issue.model_dump() for issue in result.errors],
                "warnings": [issue.model_dump() for issue in result.warnings],
                "matched_record_id": match.record_id if match else None,
                "match_type": match.match_type if match else None,
            })

        await self.import_repo.replace_rows(job.id, outcomes, settings.IMPORT_ROW_BATCH_SIZE)
        await self.import_repo.transition(
            job,
            ImportJobStatus.VALIDATED,
            delimiter=parsed.delimiter,
            column_mapping=mapping,
            total_rows=stats.total,
            processed_rows=0,
            stats=stats.model_dump(),
        )
        await self.session.commit()

        logger.info(
            f"Validated import job {job.id}: {stats.ok} ok, {stats.warning} warnings, "
            f"{stats.error} errors, {stats.collision} collisions"
        )

        return ValidateResponse(
            job_id=job.id,
            status=ImportJobStatus.VALIDATED,
            stats=stats,
            samples=await self._samples(job.id),
        )

    async def _samples(self, job_id: str) -> ValidationSamples:
        limit = settings.IMPORT_SAMPLE_SIZE
        samples = {}
        for key, status in (("ok", RowStatus.OK), ("errors", RowStatus.ERROR), ("warnings", RowStatus.WARNING)):
            rows = await self.import_repo.get_row_samples(job_id, status, limit)
            samples[key] = [
                RowSample(
                    row=row.row_index,
                    data=row.normalized_data,
                    raw=row.raw_data,
                    errors=row.errors or [],
                    warnings=row.warnings or [],
                    match_type=row.match_type,
                )
                for row in rows
            ]
        return ValidationSamples(**samples)

    # Run

    async def run(self, job_id: str) -> RunResponse:
        """
        Apply a validated job to the patient store and wait for it to stop.

        Raises:
            ImportLockedError: Another import of the practice is running
            InvalidJobStateError: Job is not validated
        """
        job = await self._get_job(job_id)

        async with TenantLockManager.acquire(self.tenant_id):
            running = await self.import_repo.count_running(self.tenant_id, exclude_job_id=job.id)
            if running:
                raise ImportLockedError(details={"tenant_id": self.tenant_id, "running": running})

            try:
                await self.import_repo.transition(job, ImportJobStatus.RUNNING, processed_rows=0)
                await self.session.commit()
            except IntegrityError:
                # Another process started a run of this practice in the meantime
                await self.session.rollback()
                raise ImportLockedError(details={"tenant_id": self.tenant_id})

            executor = ImportExecutor(self.session, job.id, self.tenant_id)
            outcome = await executor.run()

        return RunResponse(
            job_id=job.id,
            status=outcome.status,
            stats=outcome.stats,
            message=outcome.message,
        )

    # Monitoring

    async def get_progress(self, job_id: str) -> ImportProgress:
        """Progress snapshot read from the job's committed checkpoint."""
        progress = await self.import_repo.get_progress(job_id, self.tenant_id)
        if progress is None:
            raise NotFoundError(f"Import job {job_id} not found", details={"job_id": job_id})

        status, total_rows, processed_rows, stats = progress
        return ImportProgress(
            status=status,
            total_rows=total_rows or 0,
            processed_rows=processed_rows or 0,
            stats=ImportStats.model_validate(stats) if stats else ImportStats(total=total_rows or 0),
        )

    async def get_job(self, job_id: str) -> ImportJobResponse:
        job = await self._get_job(job_id)
        return ImportJobResponse.model_validate(job)

    async def get_last_import(self) -> Optional[ImportJobResponse]:
        """Most recent job of the practice, whatever its status."""
        job = await self.import_repo.get_latest_for_tenant(self.tenant_id)
        return ImportJobResponse.model_validate(job) if job else None

    async def cancel(self, job_id: str) -> CancelResponse:
        """
        Cancel a job.

        Pending and validated jobs are cancelled at once. A running job only
        gets its flag raised; the executor stops after the row in progress.
        A job left running with no run in progress in this process (after a
        restart or a crashed worker) is cancelled at once as well.
        Terminal jobs are left untouched.
        """
        job = await self._get_job(job_id)
        current = ImportJobStatus(job.status)

        if job.is_terminal:
            return CancelResponse(
                job_id=job.id,
                status=current,
                acknowledged=False,
                message=f"Import is already {current.value}",
            )

        if current == ImportJobStatus.RUNNING and TenantLockManager.is_locked(self.tenant_id):
            await self.import_repo.request_cancel(job.id)
            await self.session.commit()
            logger.info(f"Cancellation requested for running import job {job.id}")
            return CancelResponse(
                job_id=job.id,
                status=current,
                acknowledged=True,
                message="Cancellation requested, the import stops after the current row",
            )

        if current == ImportJobStatus.RUNNING:
            logger.warning(f"Import job {job.id} is running with no live run, cancelling it")

        await self.import_repo.transition(
            job,
            ImportJobStatus.CANCELLED,
            cancel_requested=True,
            cancellation_reason=USER_CANCELLATION,
        )
        await self.session.commit()
        return CancelResponse(
            job_id=job.id,
            status=ImportJobStatus.CANCELLED,
            acknowledged=True,
            message="Import cancelled",
        )

    async def list_rows(self, job_id: str, status: Optional[RowStatus] = None) -> List[ImportRowResponse]:
        job = await self._get_job(job_id)
        rows = await self.import_repo.get_rows(job.id, status)
        return [ImportRowResponse.model_validate(row) for row in rows]

    async def export_errors(self, job_id: str) -> Tuple[str, str]:
        """
        CSV of the rows rejected at validation or failed at run time.

        The uploaded columns are kept, preceded by the row number and followed
        by the joined error messages.

        Returns:
            (csv text, download filename)
        """
        job = await self._get_job(job_id)
        rows = await self.import_repo.get_failed_rows(job.id)
        headers = parse_csv(job.content).headers if job.content else []

        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=job.delimiter or SEMICOLON, lineterminator="\n")
        writer.writerow([ERRORS_ROW_COLUMN] + headers + [ERRORS_COLUMN])
        for row in rows:
            raw = row.raw_data or {}
            writer.writerow(
                [row.row_index]
                + [raw.get(header, "") for header in headers]
                + [ERRORS_SEPARATOR.join(_row_messages(row))]
            )

        base_name = (job.file_name or "import").rsplit(".", 1)[0]
        return buffer.getvalue(), f"{base_name}_errors.csv"


def _row_messages(row: ImportJobRow) -> List[str]:
    issues = [FieldIssue.model_validate(issue) for issue in (row.errors or [])]
    messages = [f"{issue.field}: {issue.message}" for issue in issues]
    if row.execution_error:
        messages.append(f"{EXECUTION_ERROR_FIELD}: {row.execution_error}")
    return messages
