# app/services/imports/executor.py
"""
Import executor: applies validated row outcomes to the patient store.

Rows are replayed strictly in row order by a single writer. Each row is its
own unit of work: the patient write, the row's execution record and the job
checkpoint are committed together, so a failing row never undoes earlier rows
and ``processed_rows`` always matches what is committed.

Cancellation is cooperative. The flag is read between rows and a row that
has started is always finished first.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.repositories.import_jobs import ImportJobRepository
from app.db.repositories.patients import PatientRepository
from app.models.import_job import ImportJobStatus, RowExecutionStatus, RowStatus
from app.schemas.import_job import ImportStats
from app.schemas.patient import PatientRecord

logger = logging.getLogger("practice.imports.executor")

USER_CANCELLATION = "user"


class MatchedRecordMissing(Exception):
    """The patient a row was matched to at validation no longer exists."""


@dataclass
class PendingRow:
    """Detached copy of the row data the executor needs."""
    id: str
    row_index: int
    status: RowStatus
    record: Optional[PatientRecord]
    matched_record_id: Optional[str]


@dataclass
class RunAccumulator:
    """Counters owned by one run; persisted at every checkpoint."""
    total: int
    collision: int = 0
    processed: int = 0
    ok: int = 0
    warning: int = 0
    error: int = 0
    to_create: int = 0
    to_update: int = 0
    execution_error: int = 0

    @property
    def attempted(self) -> int:
        """Rows that were actually sent to the patient store."""
        return self.to_create + self.to_update + self.execution_error

    def to_stats(self) -> ImportStats:
        return ImportStats(
            total=self.total,
            ok=self.ok,
            warning=self.warning,
            error=self.error,
            collision=self.collision,
            to_create=self.to_create,
            to_update=self.to_update,
            execution_error=self.execution_error,
        )


@dataclass
class RunOutcome:
    """How a run ended."""
    status: ImportJobStatus
    stats: ImportStats
    processed_rows: int
    message: str


class ImportExecutor:
    """
    Replays the row outcomes of one RUNNING job against the patient store.

    The executor is the only writer of the job aggregate while it runs.
    """

    def __init__(self, session: AsyncSession, job_id: str, tenant_id: str):
        self.session = session
        self.job_id = job_id
        self.tenant_id = tenant_id
        self.import_repo = ImportJobRepository(session)
        self.patient_repo = PatientRepository(session)
        self._checkpoint: Tuple[int, ImportStats] = (0, ImportStats())
        self._last_milestone = 0

    async def run(self) -> RunOutcome:
        """
        Apply every row, then move the job to its terminal status.

        Returns:
            RunOutcome: completed, cancelled or failed, with final counters
        """
        try:
            job = await self.import_repo.get_by_id(self.job_id)
            rows = await self._load_rows()
            validated = ImportStats.model_validate(job.stats or {})
            acc = RunAccumulator(total=len(rows), collision=validated.collision)
            await self._save_checkpoint(acc)

            logger.info(f"Import job {self.job_id}: applying {len(rows)} rows")

            for row in rows:
                if await self.import_repo.is_cancel_requested(self.job_id):
                    return await self._finish_cancelled(acc)

                await self._process_row(row, acc)
                await self._save_checkpoint(acc)
                self._log_progress(acc)

            return await self._finish_completed(acc)

        except asyncio.CancelledError:
            logger.error(f"Import job {self.job_id} interrupted")
            await self._finish_failed("Import interrupted before all rows were applied")
            raise
        except Exception as e:
            logger.exception(f"Import job {self.job_id} failed: {e}")
            return await self._finish_failed(str(e))

    async def _load_rows(self) -> List[PendingRow]:
        # Detached copies: a row rollback expires ORM instances in the session
        rows = await self.import_repo.get_rows(self.job_id)
        return [
            PendingRow(
                id=row.id,
                row_index=row.row_index,
                status=RowStatus(row.status),
                record=PatientRecord.model_validate(row.normalized_data) if row.normalized_data else None,
                matched_record_id=row.matched_record_id,
            )
            for row in rows
        ]

    async def _process_row(self, row: PendingRow, acc: RunAccumulator) -> None:
        """Apply one row; an apply failure is recorded on the row and the run goes on."""
        acc.processed += 1

        if row.status == RowStatus.ERROR or row.record is None:
            acc.error += 1
            return

        try:
            if row.matched_record_id:
                patient = await self.patient_repo.update_patient(
                    self.tenant_id, row.matched_record_id, row.record
                )
                if patient is None:
                    raise MatchedRecordMissing(
                        f"Matched patient {row.matched_record_id} no longer exists"
                    )
            else:
                patient = await self.patient_repo.create_patient(self.tenant_id, row.record)

            await self.import_repo.record_row_execution(
                row.id, RowExecutionStatus.APPLIED, applied_record_id=patient.id
            )
        except (OperationalError, InterfaceError):
            # Lost connection or unusable database: not this row's fault
            raise
        except Exception as e:
            await self.session.rollback()
            acc.error += 1
            acc.execution_error += 1
            await self.import_repo.record_row_execution(
                row.id, RowExecutionStatus.FAILED, error=str(e)
            )
            logger.warning(f"Import job {self.job_id}: row {row.row_index} failed: {e}")
            return

        if row.matched_record_id:
            acc.to_update += 1
        else:
            acc.to_create += 1
        if row.status == RowStatus.WARNING:
            acc.warning += 1
        else:
            acc.ok += 1

    async def _save_checkpoint(self, acc: RunAccumulator) -> None:
        stats = acc.to_stats()
        await self.import_repo.save_progress(self.job_id, acc.processed, stats.model_dump())
        await self.session.commit()
        self._checkpoint = (acc.processed, stats)

    def _log_progress(self, acc: RunAccumulator) -> None:
        """Log every 10% milestone."""
        if acc.total == 0:
            return
        milestone = int((acc.processed / acc.total) * 100 // 10) * 10
        if milestone > self._last_milestone:
            self._last_milestone = milestone
            logger.info(
                f"Import {self.job_id} reached {milestone}% "
                f"({acc.processed:,}/{acc.total:,} rows)"
            )

    async def _finish_completed(self, acc: RunAccumulator) -> RunOutcome:
        stats = acc.to_stats()
        job = await self.import_repo.get_by_id(self.job_id)
        await self.import_repo.transition(job, ImportJobStatus.COMPLETED)
        await self.session.commit()

        message = (
            f"Import completed: {stats.to_create} created, {stats.to_update} updated, "
            f"{stats.error} errors"
        )
        logger.info(f"Import job {self.job_id}: {message}")
        return RunOutcome(ImportJobStatus.COMPLETED, stats, acc.processed, message)

    async def _finish_cancelled(self, acc: RunAccumulator) -> RunOutcome:
        stats = acc.to_stats()
        job = await self.import_repo.get_by_id(self.job_id)
        await self.import_repo.transition(
            job, ImportJobStatus.CANCELLED, cancellation_reason=USER_CANCELLATION
        )
        await self.session.commit()

        message = (
            f"Import cancelled after {acc.processed}/{acc.total} rows: "
            f"{acc.attempted} attempted, {stats.to_create} created, {stats.to_update} updated"
        )
        logger.info(f"Import job {self.job_id}: {message}")
        return RunOutcome(ImportJobStatus.CANCELLED, stats, acc.processed, message)

    async def _finish_failed(self, error: str) -> RunOutcome:
        processed, stats = self._checkpoint
        message = f"Import failed: {error}"
        try:
            await self.session.rollback()
            job = await self.import_repo.get_by_id(self.job_id)
            await self.import_repo.transition(
                job,
                ImportJobStatus.FAILED,
                error_message=error,
                processed_rows=processed,
                stats=stats.model_dump(),
            )
            await self.session.commit()
        except Exception as e:
            logger.error(f"Failed to mark import job {self.job_id} as failed: {str(e)}")
        return RunOutcome(ImportJobStatus.FAILED, stats, processed, message)
