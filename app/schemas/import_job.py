"""
Pydantic schemas for patient import API operations.
"""
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from app.models.import_job import ImportJobStatus, RowStatus, RowExecutionStatus, MatchType
from app.schemas.patient import PatientRecord


class FieldIssue(BaseModel):
    """A problem found on one field of one row."""
    field: str = Field(..., description="Canonical field (or 'db' for execution errors)")
    message: str = Field(..., description="Human-readable description")


class RowValidationResult(BaseModel):
    """Outcome of normalizing and validating one raw row."""
    status: RowStatus
    normalized: Optional[PatientRecord] = None
    errors: List[FieldIssue] = Field(default_factory=list)
    warnings: List[FieldIssue] = Field(default_factory=list)


class ImportStats(BaseModel):
    """
    Aggregate counts for a job.

    After validation ``ok + warning + error == total`` and to_create/to_update
    project what a run would do. During and after a run the counts describe
    the rows reached so far, and ``execution_error`` isolates the rows that
    failed when applied (they are also included in ``error``).
    """
    total: int = 0
    ok: int = 0
    warning: int = 0
    error: int = 0
    collision: int = 0
    to_create: int = 0
    to_update: int = 0
    execution_error: int = 0


class UploadRequest(BaseModel):
    """Raw CSV text sent by the import wizard."""
    content: str = Field(..., description="CSV file content")
    file_name: str = Field(..., description="Original filename")

    @field_validator("file_name")
    def validate_file_name(cls, v):
        """Reject blank filenames."""
        v = v.strip()
        if not v:
            raise ValueError("File name is required")
        return v


class UploadResponse(BaseModel):
    """Response schema for an upload."""
    job_id: str
    file_name: str
    file_hash: str
    status: ImportJobStatus
    previous_job_id: Optional[str] = Field(None, description="Earlier job of this practice for the same file")


class JobRequest(BaseModel):
    """Request carrying only a job id."""
    job_id: str


class SuggestedMapping(BaseModel):
    """Advisory mapping for one CSV header."""
    csv_header: str
    suggested_field: Optional[str] = None


class PatientFieldInfo(BaseModel):
    """A canonical field offered in the mapping step."""
    key: Optional[str] = None
    label: str
    required: bool = False


class DetectHeadersResponse(BaseModel):
    """Response schema for header detection."""
    headers: List[str]
    delimiter: str
    row_count: int
    suggested_mapping: List[SuggestedMapping]
    patient_fields: List[PatientFieldInfo]


class ValidateRequest(BaseModel):
    """Operator-confirmed column mapping."""
    job_id: str
    mapping: Dict[str, Optional[str]] = Field(..., description="CSV header -> canonical field or null")


class RowSample(BaseModel):
    """Preview of one row outcome."""
    row: int
    data: Optional[Dict[str, Any]] = None
    raw: Optional[Dict[str, Any]] = None
    errors: List[FieldIssue] = Field(default_factory=list)
    warnings: List[FieldIssue] = Field(default_factory=list)
    match_type: Optional[MatchType] = None


class ValidationSamples(BaseModel):
    """Bounded preview of row outcomes per status."""
    ok: List[RowSample] = Field(default_factory=list)
    errors: List[RowSample] = Field(default_factory=list)
    warnings: List[RowSample] = Field(default_factory=list)


class ValidateResponse(BaseModel):
    """Response schema for validation."""
    job_id: str
    status: ImportJobStatus
    stats: ImportStats
    samples: ValidationSamples


class RunResponse(BaseModel):
    """Response schema once a run stops."""
    job_id: str
    status: ImportJobStatus
    stats: ImportStats
    message: str


class ImportProgress(BaseModel):
    """Progress snapshot polled by the client."""
    status: ImportJobStatus
    total_rows: int
    processed_rows: int
    stats: ImportStats


class CancelResponse(BaseModel):
    """Acknowledgement of a cancellation request."""
    job_id: str
    status: ImportJobStatus
    acknowledged: bool
    message: str


class ImportJobResponse(BaseModel):
    """Schema for import job response."""
    id: str = Field(..., description="Import job ID")
    tenant_id: str
    user_id: Optional[str] = None
    status: ImportJobStatus
    file_name: Optional[str] = None
    file_hash: Optional[str] = None
    file_size: Optional[int] = None
    delimiter: Optional[str] = None
    column_mapping: Optional[Dict[str, Optional[str]]] = None
    total_rows: int
    processed_rows: int
    stats: Optional[ImportStats] = None
    cancel_requested: bool = False
    cancellation_reason: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    validated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress_percentage: float = 0

    class Config:
        """Pydantic config."""
        from_attributes = True


class LastImportResponse(BaseModel):
    """Most recent import of the practice, if any."""
    last_import: Optional[ImportJobResponse] = None


class ImportRowResponse(BaseModel):
    """Schema for one stored row outcome."""
    row_index: int
    status: RowStatus
    raw_data: Dict[str, Any]
    normalized_data: Optional[Dict[str, Any]] = None
    errors: List[FieldIssue] = Field(default_factory=list)
    warnings: List[FieldIssue] = Field(default_factory=list)
    matched_record_id: Optional[str] = None
    match_type: Optional[MatchType] = None
    execution_status: Optional[RowExecutionStatus] = None
    execution_error: Optional[str] = None
    applied_record_id: Optional[str] = None

    class Config:
        """Pydantic config."""
        from_attributes = True


TemplateVariant = Literal["empty", "example"]
