"""Blob download endpoint backing the local blob store's public URLs."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse

from app.api.v1.endpoints.auth import get_current_active_user
from app.core.errors import NotFoundError
from app.core.security import TokenData
from app.services.studies.validation import DICOM_MEDIA_TYPE

router = APIRouter()


@router.get("/{path:path}")
async def get_file(
    path: str,
    request: Request,
    current_user: Annotated[TokenData, Depends(get_current_active_user)],
) -> FileResponse:
    """Stream a stored DICOM file."""
    blob_store = request.app.state.blob_store
    try:
        file_path = blob_store.resolve(path)
    except ValueError as e:
        raise NotFoundError(f"Blob not found: {path}", {"storage_path": path}) from e

    if not await blob_store.exists(path):
        raise NotFoundError(f"Blob not found: {path}", {"storage_path": path})

    return FileResponse(
        file_path,
        media_type=DICOM_MEDIA_TYPE,
        filename=file_path.name,
    )
