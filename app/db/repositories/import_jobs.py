"""
ImportJob repository: persistence for import jobs and their row outcomes.
"""
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import select, update, delete, desc, func, insert, or_
from sqlalchemy.ext.asyncio import AsyncSession

import logging
from app.core.exceptions import InvalidJobStateError
from app.db.repositories.base import BaseRepository
from app.models.import_job import (
    ImportJob, ImportJobRow, ImportJobStatus, RowStatus, RowExecutionStatus, can_transition,
)
from app.utils.datetime import utc_now
from app.utils.ids import generate_prefixed_id, IDPrefix

logger = logging.getLogger("practice.db")

DEFAULT_ROW_BATCH_SIZE = 500

# Timestamp column stamped when a job enters a status
_STATUS_TIMESTAMPS = {
    ImportJobStatus.VALIDATED: "validated_at",
    ImportJobStatus.RUNNING: "started_at",
    ImportJobStatus.COMPLETED: "completed_at",
    ImportJobStatus.FAILED: "completed_at",
    ImportJobStatus.CANCELLED: "completed_at",
}


class ImportJobRepository(BaseRepository[ImportJob]):
    """ImportJob repository for database operations."""

    def __init__(self, session: AsyncSession):
        """Initialize with session and ImportJob model."""
        super().__init__(session=session, model=ImportJob)

    async def create_import_job(
        self,
        *,
        tenant_id: str,
        user_id: Optional[str],
        file_name: str,
        file_hash: str,
        content: str,
    ) -> ImportJob:
        """
        Create a new pending import job holding the uploaded content.

        Args:
            tenant_id: Practice the import belongs to
            user_id: User who uploaded the file
            file_name: Original filename
            file_hash: Content fingerprint
            content: Uploaded CSV text

        Returns:
            ImportJob: Created import job
        """
        db_obj = ImportJob(
            id=generate_prefixed_id(IDPrefix.IMPORT),
            tenant_id=tenant_id,
            user_id=user_id,
            file_name=file_name,
            file_hash=file_hash,
            file_size=len(content.encode("utf-8")),
            content=content,
            status=ImportJobStatus.PENDING,
            cancel_requested=False,
            total_rows=0,
            processed_rows=0,
        )
        await self.add(db_obj)

        logger.info(f"Created import job {db_obj.id} for tenant {tenant_id}")
        return db_obj

    async def get_for_tenant(self, job_id: str, tenant_id: str) -> Optional[ImportJob]:
        """Get a job only if it belongs to the given practice."""
        result = await self.session.execute(
            select(ImportJob).where(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_latest_for_tenant(self, tenant_id: str) -> Optional[ImportJob]:
        """Most recently created job of a practice."""
        result = await self.session.execute(
            select(ImportJob)
            .where(ImportJob.tenant_id == tenant_id)
            .order_by(desc(ImportJob.created_at))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_previous_by_hash(
        self,
        tenant_id: str,
        file_hash: str,
        exclude_job_id: Optional[str] = None
    ) -> Optional[ImportJob]:
        """
        Find the latest earlier job of a practice for the same file content.

        Args:
            tenant_id: Practice ID
            file_hash: Content fingerprint
            exclude_job_id: Job to ignore (usually the one just created)

        Returns:
            ImportJob: Found import job or None
        """
        query = select(ImportJob).where(
            ImportJob.tenant_id == tenant_id,
            ImportJob.file_hash == file_hash,
        )
        if exclude_job_id:
            query = query.where(ImportJob.id != exclude_job_id)
        result = await self.session.execute(query.order_by(desc(ImportJob.created_at)).limit(1))
        return result.scalar_one_or_none()

    async def count_running(self, tenant_id: str, exclude_job_id: Optional[str] = None) -> int:
        """
        Count jobs of a practice currently in the RUNNING status.

        Args:
            tenant_id: Practice ID
            exclude_job_id: Job to leave out of the count

        Returns:
            int: Number of running import jobs
        """
        query = select(func.count(ImportJob.id)).where(
            ImportJob.tenant_id == tenant_id,
            ImportJob.status == ImportJobStatus.RUNNING,
        )
        if exclude_job_id:
            query = query.where(ImportJob.id != exclude_job_id)
        result = await self.session.execute(query)
        return result.scalar() or 0

    async def transition(
        self,
        job: ImportJob,
        target: ImportJobStatus,
        **fields: Any
    ) -> ImportJob:
        """
        Move a job to a new status, stamping the matching timestamp.

        The write only applies if the stored status is still the one the
        caller loaded, so two requests acting on the same job cannot both
        win: the one that lost sees InvalidJobStateError.

        Args:
            job: Loaded import job
            target: Status to move to
            fields: Other columns to set in the same write

        Returns:
            ImportJob: Updated import job

        Raises:
            InvalidJobStateError: If the state machine forbids the move or
                the job changed status since it was loaded
        """
        current = ImportJobStatus(job.status)
        if not can_transition(current, target):
            raise InvalidJobStateError(
                f"Import job {job.id} cannot go from {current.value} to {target.value}",
                details={"job_id": job.id, "status": current.value, "target": target.value},
            )

        values = dict(fields, status=target, updated_at=utc_now())
        timestamp_column = _STATUS_TIMESTAMPS.get(target)
        if timestamp_column:
            values[timestamp_column] = values["updated_at"]

        result = await self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job.id, ImportJob.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidJobStateError(
                f"Import job {job.id} is no longer {current.value}",
                details={"job_id": job.id, "status": current.value, "target": target.value},
            )

        await self.session.refresh(job)
        logger.info(f"Import job {job.id}: {current.value} -> {target.value}")
        return job

    async def replace_rows(
        self,
        job_id: str,
        rows: List[Dict[str, Any]],
        batch_size: int = DEFAULT_ROW_BATCH_SIZE
    ) -> int:
        """
        Store the row outcomes of a validation, replacing any earlier ones.

        Rows are inserted in fixed-size batches to bound each statement.

        Args:
            job_id: Import job ID
            rows: Column values for each ImportJobRow (without job_id/id)
            batch_size: Rows per insert statement

        Returns:
            int: Number of rows written
        """
        await self.session.execute(delete(ImportJobRow).where(ImportJobRow.job_id == job_id))

        now = utc_now()
        for start in range(0, len(rows), batch_size):
            batch = [
                {
                    **row,
                    "id": generate_prefixed_id(IDPrefix.ROW),
                    "job_id": job_id,
                    "created_at": now,
                    "updated_at": now,
                }
                for row in rows[start:start + batch_size]
            ]
            await self.session.execute(insert(ImportJobRow), batch)
            logger.debug(f"Stored rows {start + 1}-{start + len(batch)} for import job {job_id}")

        return len(rows)

    async def get_rows(
        self,
        job_id: str,
        status: Optional[RowStatus] = None
    ) -> List[ImportJobRow]:
        """
        Get all row outcomes of a job in row order.

        Args:
            job_id: Import job ID
            status: Optional validation status filter

        Returns:
            List[ImportJobRow]: Row outcomes
        """
        query = select(ImportJobRow).where(ImportJobRow.job_id == job_id)
        if status:
            query = query.where(ImportJobRow.status == status)
        result = await self.session.execute(query.order_by(ImportJobRow.row_index))
        return list(result.scalars().all())

    async def get_row_samples(
        self,
        job_id: str,
        status: RowStatus,
        limit: int
    ) -> List[ImportJobRow]:
        """First ``limit`` rows of a job with the given validation status."""
        result = await self.session.execute(
            select(ImportJobRow)
            .where(ImportJobRow.job_id == job_id, ImportJobRow.status == status)
            .order_by(ImportJobRow.row_index)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_failed_rows(self, job_id: str) -> List[ImportJobRow]:
        """Rows rejected at validation or that failed when applied."""
        result = await self.session.execute(
            select(ImportJobRow)
            .where(
                ImportJobRow.job_id == job_id,
                or_(
                    ImportJobRow.status == RowStatus.ERROR,
                    ImportJobRow.execution_status == RowExecutionStatus.FAILED,
                ),
            )
            .order_by(ImportJobRow.row_index)
        )
        return list(result.scalars().all())

    async def record_row_execution(
        self,
        row_id: str,
        status: RowExecutionStatus,
        *,
        error: Optional[str] = None,
        applied_record_id: Optional[str] = None
    ) -> None:
        """
        Record what happened when a row was applied.

        Only execution columns are written; the validation outcome of the
        row is left as it was.
        """
        now = utc_now()
        await self.session.execute(
            update(ImportJobRow)
            .where(ImportJobRow.id == row_id)
            .values(
                execution_status=status,
                execution_error=error,
                applied_record_id=applied_record_id,
                executed_at=now,
                updated_at=now,
            )
        )

    async def save_progress(
        self,
        job_id: str,
        processed_rows: int,
        stats: Dict[str, Any]
    ) -> None:
        """
        Persist a run checkpoint.

        Args:
            job_id: Import job ID
            processed_rows: Rows reached so far
            stats: Running aggregate counts
        """
        await self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(processed_rows=processed_rows, stats=stats, updated_at=utc_now())
        )

    async def request_cancel(self, job_id: str) -> None:
        """Raise the cancellation flag without touching the job aggregate."""
        await self.session.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(cancel_requested=True, updated_at=utc_now())
        )

    async def is_cancel_requested(self, job_id: str) -> bool:
        """Read the cancellation flag straight from the database."""
        result = await self.session.execute(
            select(ImportJob.cancel_requested).where(ImportJob.id == job_id)
        )
        return bool(result.scalar())

    async def get_progress(self, job_id: str, tenant_id: str) -> Optional[Tuple[Any, ...]]:
        """
        Read only the progress columns of a job.

        Returns:
            (status, total_rows, processed_rows, stats) or None
        """
        result = await self.session.execute(
            select(
                ImportJob.status,
                ImportJob.total_rows,
                ImportJob.processed_rows,
                ImportJob.stats,
            ).where(ImportJob.id == job_id, ImportJob.tenant_id == tenant_id)
        )
        row = result.one_or_none()
        return tuple(row) if row else None
