"""API v1 Router - Aggregates all API endpoints."""

from fastapi import APIRouter

from app.api.v1.endpoints import auth, files, studies

api_router = APIRouter()

# Authentication endpoints
api_router.include_router(
    auth.router,
    prefix="/auth",
    tags=["Authentication"],
)

# Study catalog
api_router.include_router(
    studies.router,
    prefix="/studies",
    tags=["Studies"],
)

# Stored DICOM files
api_router.include_router(
    files.router,
    prefix="/files",
    tags=["Files"],
)
