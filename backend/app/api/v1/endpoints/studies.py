"""Study catalog endpoints.

Create, update and delete go through the lifecycle coordinator; listing,
detail and download go through the catalog query. Domain errors are
rendered by the application's ``StudyCatalogError`` handler.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from pydantic import BaseModel, Field

from app.api.v1.endpoints.auth import get_current_active_user
from app.core.config import get_settings
from app.core.errors import StudyCatalogError
from app.core.logging import audit_logger
from app.core.security import TokenData
from app.services.storage.records import StudyRecord
from app.services.studies.catalog import StudyCatalogQuery, TimeFilter
from app.services.studies.lifecycle import StudyLifecycleCoordinator
from app.services.studies.validation import UploadPayload

router = APIRouter()

CHUNK_SIZE = 1024 * 1024  # 1MB


class StudyResponse(BaseModel):
    """A catalogued study."""

    id: int = Field(..., description="Study record id")
    name: str = Field(..., description="Display name")
    description: str = Field(..., description="Free-text description")
    storage_path: str = Field(..., description="Blob path of the DICOM file")
    file_name: str = Field(..., description="Original file name")
    created_at: datetime
    updated_at: datetime
    download_url: str = Field(..., description="Where the DICOM file can be fetched")


class StudyListResponse(BaseModel):
    """Study list response."""

    total: int
    time_filter: str
    studies: list[StudyResponse]


class StudyUpdateResponse(BaseModel):
    """Updated study plus non-fatal warnings."""

    study: StudyResponse
    warnings: list[str] = Field(default_factory=list)


class DownloadResponse(BaseModel):
    url: str
    file_name: str


def get_lifecycle(request: Request) -> StudyLifecycleCoordinator:
    return request.app.state.lifecycle


def get_catalog(request: Request) -> StudyCatalogQuery:
    return request.app.state.catalog


def _to_response(record: StudyRecord, catalog: StudyCatalogQuery) -> StudyResponse:
    return StudyResponse(
        id=record.id,
        name=record.name,
        description=record.description,
        storage_path=record.storage_path,
        file_name=record.file_name,
        created_at=record.created_at,
        updated_at=record.updated_at,
        download_url=catalog.download_url(record),
    )


async def _read_upload(file: UploadFile | None) -> UploadPayload | None:
    """Read an upload into memory, refusing anything over the size limit."""
    if file is None:
        return None

    settings = get_settings()
    max_upload_bytes = settings.max_upload_bytes
    data = bytearray()
    try:
        while True:
            chunk = await file.read(CHUNK_SIZE)
            if not chunk:
                break
            data.extend(chunk)
            if len(data) > max_upload_bytes:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"Upload exceeds max size of {settings.max_upload_mb}MB",
                )
    finally:
        await file.close()

    # Browsers submit an empty, unnamed part for an untouched file input
    if not file.filename and not data:
        return None

    return UploadPayload(
        file_name=file.filename or "",
        content_type=file.content_type,
        data=bytes(data),
    )


@router.get("", response_model=StudyListResponse)
async def list_studies(
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
    catalog: Annotated[StudyCatalogQuery, Depends(get_catalog)],
    time_filter: str = Query("all", description="all, today, last_week or last_month"),
    q: str | None = Query(None, description="Case-insensitive search on the study name"),
) -> StudyListResponse:
    """List studies, newest first."""
    parsed = TimeFilter.parse(time_filter)
    records = await catalog.list_studies(parsed, q)
    return StudyListResponse(
        total=len(records),
        time_filter=parsed.value,
        studies=[_to_response(record, catalog) for record in records],
    )


@router.post("", response_model=StudyResponse, status_code=status.HTTP_201_CREATED)
async def create_study(
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
    lifecycle: Annotated[StudyLifecycleCoordinator, Depends(get_lifecycle)],
    catalog: Annotated[StudyCatalogQuery, Depends(get_catalog)],
    name: Annotated[str | None, Form()] = None,
    description: Annotated[str | None, Form()] = None,
    file: UploadFile | None = File(None, description="DICOM file"),
) -> StudyResponse:
    """Upload a DICOM file and catalog it."""
    payload = await _read_upload(file)
    try:
        record = await lifecycle.create_study(name, description, payload)
    except StudyCatalogError as e:
        audit_logger.log_access(
            user_id=current_user.user_id,
            resource_type="study",
            resource_id="new",
            action="CREATE",
            success=False,
            details={"error": e.kind},
        )
        raise

    audit_logger.log_access(
        user_id=current_user.user_id,
        resource_type="study",
        resource_id=str(record.id),
        action="CREATE",
    )
    return _to_response(record, catalog)


@router.get("/{study_id}", response_model=StudyResponse)
async def get_study(
    study_id: int,
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
    catalog: Annotated[StudyCatalogQuery, Depends(get_catalog)],
) -> StudyResponse:
    """Get one study."""
    record = await catalog.get_study(study_id)
    audit_logger.log_access(
        user_id=current_user.user_id,
        resource_type="study",
        resource_id=str(study_id),
        action="VIEW",
    )
    return _to_response(record, catalog)


@router.put("/{study_id}", response_model=StudyUpdateResponse)
async def update_study(
    study_id: int,
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
    lifecycle: Annotated[StudyLifecycleCoordinator, Depends(get_lifecycle)],
    catalog: Annotated[StudyCatalogQuery, Depends(get_catalog)],
    name: Annotated[str | None, Form()] = None,
    description: Annotated[str | None, Form()] = None,
    previous_storage_path: Annotated[str | None, Form()] = None,
    file: UploadFile | None = File(None, description="Replacement DICOM file"),
) -> StudyUpdateResponse:
    """Update study metadata, optionally replacing its DICOM file.

    Failing to remove the replaced file does not fail the request; it is
    reported in ``warnings``.
    """
    payload = await _read_upload(file)
    try:
        result = await lifecycle.update_study(
            study_id,
            name,
            description,
            replacement=payload,
            previous_storage_path=previous_storage_path or None,
        )
    except StudyCatalogError as e:
        audit_logger.log_access(
            user_id=current_user.user_id,
            resource_type="study",
            resource_id=str(study_id),
            action="UPDATE",
            success=False,
            details={"error": e.kind},
        )
        raise

    audit_logger.log_access(
        user_id=current_user.user_id,
        resource_type="study",
        resource_id=str(study_id),
        action="UPDATE",
        details={"file_replaced": payload is not None, "warnings": len(result.warnings)},
    )
    return StudyUpdateResponse(
        study=_to_response(result.record, catalog),
        warnings=list(result.warnings),
    )


@router.delete("/{study_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_study(
    study_id: int,
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
    lifecycle: Annotated[StudyLifecycleCoordinator, Depends(get_lifecycle)],
    storage_path: str | None = Query(None, description="Blob path expected for the study"),
) -> None:
    """Delete a study and its DICOM file.

    This action is logged for audit purposes.
    """
    try:
        await lifecycle.delete_study(study_id, storage_path or None)
    except StudyCatalogError as e:
        audit_logger.log_access(
            user_id=current_user.user_id,
            resource_type="study",
            resource_id=str(study_id),
            action="DELETE",
            success=False,
            details={"error": e.kind},
        )
        raise

    audit_logger.log_access(
        user_id=current_user.user_id,
        resource_type="study",
        resource_id=str(study_id),
        action="DELETE",
    )


@router.get("/{study_id}/download", response_model=DownloadResponse)
async def download_study(
    study_id: int,
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
    catalog: Annotated[StudyCatalogQuery, Depends(get_catalog)],
) -> DownloadResponse:
    """Resolve the download URL of a study's DICOM file."""
    record = await catalog.get_study(study_id)
    audit_logger.log_access(
        user_id=current_user.user_id,
        resource_type="study",
        resource_id=str(study_id),
        action="DOWNLOAD",
    )
    return DownloadResponse(url=catalog.download_url(record), file_name=record.file_name)
