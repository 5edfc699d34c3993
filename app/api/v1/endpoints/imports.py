# app/api/v1/endpoints/imports.py
"""
Patient CSV import endpoints.

The wizard drives one job through upload, header detection, validation and
run. Every route is scoped to the caller's practice. Errors are raised as
PracticeException subclasses and rendered by the application handler.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response

from app.api.v1.dependencies import get_current_user
from app.models.import_job import RowStatus
from app.schemas.import_job import (
    CancelResponse, DetectHeadersResponse, ImportJobResponse, ImportProgress, ImportRowResponse,
    JobRequest, LastImportResponse, RunResponse, TemplateVariant, UploadRequest, UploadResponse,
    ValidateRequest, ValidateResponse,
)
from app.schemas.user import User
from app.services.imports.mapping import build_template
from app.services.imports.service import ImportService

router = APIRouter()
logger = logging.getLogger("practice.api.imports")

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"


def _csv_attachment(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=CSV_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/patients/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_patients_file(
    request: UploadRequest,
    current_user: User = Depends(get_current_user),
):
    """
    Upload CSV text and create a pending import job.

    The response carries ``previous_job_id`` when the same file was already
    uploaded by the practice.
    """
    async with ImportService(current_user) as service:
        response = await service.upload(request.content, request.file_name)

    logger.info(f"User {current_user.id} uploaded {request.file_name} as job {response.job_id}")
    return response


@router.post("/patients/detect-headers", response_model=DetectHeadersResponse)
async def detect_headers(
    request: JobRequest,
    current_user: User = Depends(get_current_user),
):
    """Detect headers and delimiter and suggest a column mapping."""
    async with ImportService(current_user) as service:
        return await service.detect_headers(request.job_id)


@router.post("/patients/validate", response_model=ValidateResponse)
async def validate_import(
    request: ValidateRequest,
    current_user: User = Depends(get_current_user),
):
    """
    Validate every row against the confirmed mapping.

    May be called again on a validated job to try another mapping.
    """
    async with ImportService(current_user) as service:
        return await service.validate(request.job_id, request.mapping)


@router.post("/patients/run", response_model=RunResponse)
async def run_import(
    request: JobRequest,
    current_user: User = Depends(get_current_user),
):
    """
    Apply a validated job to the patient records.

    The request returns once the run has completed, been cancelled or failed.
    Progress can be polled meanwhile on ``/{job_id}/progress``.
    """
    async with ImportService(current_user) as service:
        return await service.run(request.job_id)


@router.get("/patients/last", response_model=LastImportResponse)
async def get_last_import(current_user: User = Depends(get_current_user)):
    """Most recent import of the practice."""
    async with ImportService(current_user) as service:
        return LastImportResponse(last_import=await service.get_last_import())


@router.get("/patients/template")
async def download_template(
    variant: TemplateVariant = Query("empty", description="'empty' for headers only, 'example' with a sample row"),
    current_user: User = Depends(get_current_user),
) -> Response:
    """Download a CSV template with the expected column labels."""
    return _csv_attachment(build_template(variant), f"patients_template_{variant}.csv")


@router.get("/{job_id}", response_model=ImportJobResponse)
async def get_import_job(
    job_id: str,
    current_user: User = Depends(get_current_user),
):
    """Get an import job of the practice."""
    async with ImportService(current_user) as service:
        return await service.get_job(job_id)


@router.get("/{job_id}/progress", response_model=ImportProgress)
async def get_import_progress(
    job_id: str,
    current_user: User = Depends(get_current_user),
):
    """Progress snapshot of a job; safe to poll while it runs."""
    async with ImportService(current_user) as service:
        return await service.get_progress(job_id)


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_import(
    job_id: str,
    current_user: User = Depends(get_current_user),
):
    """
    Cancel an import.

    A running import stops after the row it is applying; rows already
    applied stay applied.
    """
    async with ImportService(current_user) as service:
        return await service.cancel(job_id)


@router.get("/{job_id}/errors")
async def download_import_errors(
    job_id: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Download the rejected and failed rows with their error messages."""
    async with ImportService(current_user) as service:
        content, filename = await service.export_errors(job_id)
    return _csv_attachment(content, filename)


@router.get("/{job_id}/rows", response_model=List[ImportRowResponse])
async def list_import_rows(
    job_id: str,
    row_status: Optional[RowStatus] = Query(None, alias="status", description="Filter by validation status"),
    current_user: User = Depends(get_current_user),
):
    """Row outcomes of a job in file order."""
    async with ImportService(current_user) as service:
        return await service.list_rows(job_id, row_status)
