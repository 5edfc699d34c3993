"""
Database models for patient import jobs and their per-row outcomes.
"""
from enum import Enum
from typing import Dict, FrozenSet

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Integer, ForeignKey, Text, UniqueConstraint, Index, text, Enum as SQLEnum
from sqlalchemy.orm import relationship

from app.models.base import Base, TenantScopedMixin


class ImportJobStatus(str, Enum):
    """Import job status enum."""
    PENDING = "pending"
    VALIDATED = "validated"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RowStatus(str, Enum):
    """Validation outcome of a single CSV row."""
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


class RowExecutionStatus(str, Enum):
    """What happened when a validated row was applied to the patient store."""
    APPLIED = "applied"
    FAILED = "failed"


class MatchType(str, Enum):
    """Rule that resolved a row to an existing patient."""
    FILE_NUMBER = "file_number"
    NAME_DOB = "name_dob"
    EMAIL = "email"


TERMINAL_STATUSES: FrozenSet[ImportJobStatus] = frozenset({
    ImportJobStatus.COMPLETED,
    ImportJobStatus.FAILED,
    ImportJobStatus.CANCELLED,
})

# Re-validation keeps a job in VALIDATED; a job that never started running
# can be cancelled directly.
ALLOWED_TRANSITIONS: Dict[ImportJobStatus, FrozenSet[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset({ImportJobStatus.VALIDATED, ImportJobStatus.CANCELLED}),
    ImportJobStatus.VALIDATED: frozenset({
        ImportJobStatus.VALIDATED,
        ImportJobStatus.RUNNING,
        ImportJobStatus.CANCELLED,
    }),
    ImportJobStatus.RUNNING: frozenset({
        ImportJobStatus.COMPLETED,
        ImportJobStatus.FAILED,
        ImportJobStatus.CANCELLED,
    }),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
    ImportJobStatus.CANCELLED: frozenset(),
}


def can_transition(current: ImportJobStatus, target: ImportJobStatus) -> bool:
    """Check whether the job state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class ImportJob(TenantScopedMixin, Base):
    """Model for tracking a patient CSV import through its stages."""

    user_id = Column(String, nullable=True, index=True)
    type = Column(String, nullable=False, default="patients_csv")

    # Job status and cooperative cancellation
    status = Column(SQLEnum(ImportJobStatus), nullable=False, default=ImportJobStatus.PENDING, index=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    cancellation_reason = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    # Uploaded file
    file_name = Column(String, nullable=True)
    file_hash = Column(String, nullable=True, index=True)  # 16 hex chars of SHA-256
    file_size = Column(Integer, nullable=True)
    content = Column(Text, nullable=True)
    delimiter = Column(String(1), nullable=True)

    # Operator-confirmed {csv header: canonical field or null}
    column_mapping = Column(JSON, nullable=True)

    # Progress tracking
    total_rows = Column(Integer, default=0, nullable=False)
    processed_rows = Column(Integer, default=0, nullable=False)
    stats = Column(JSON, nullable=True)

    # Stage timestamps
    validated_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    rows = relationship("ImportJobRow", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # At most one running import per practice, whichever process started it
        Index(
            "uix_import_running_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a final status."""
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percentage(self) -> float:
        """Calculate the run progress percentage."""
        if not self.total_rows:
            return 0
        return round((self.processed_rows / self.total_rows) * 100, 2)


class ImportJobRow(Base):
    """Validation outcome of one CSV row, plus what happened when it was applied."""

    job_id = Column(String, ForeignKey("importjob.id", ondelete="CASCADE"), nullable=False, index=True)
    row_index = Column(Integer, nullable=False)  # 1-based, over data rows

    # Written once at validation
    raw_data = Column(JSON, nullable=False)
    normalized_data = Column(JSON, nullable=True)
    status = Column(SQLEnum(RowStatus), nullable=False, index=True)
    errors = Column(JSON, nullable=False, default=list)
    warnings = Column(JSON, nullable=False, default=list)
    matched_record_id = Column(String, nullable=True)
    match_type = Column(SQLEnum(MatchType), nullable=True)

    # Written by the executor only
    execution_status = Column(SQLEnum(RowExecutionStatus), nullable=True)
    execution_error = Column(Text, nullable=True)
    applied_record_id = Column(String, nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)

    job = relationship("ImportJob", back_populates="rows")

    __table_args__ = (
        UniqueConstraint('job_id', 'row_index', name='uix_import_row_index'),
    )
