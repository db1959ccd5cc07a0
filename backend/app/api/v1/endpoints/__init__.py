"""API v1 endpoints."""

from app.api.v1.endpoints import auth, files, studies

__all__ = [
    "studies",
    "files",
    "auth",
]
