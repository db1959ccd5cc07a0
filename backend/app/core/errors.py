"""Typed errors raised by the study lifecycle and catalog services.

Each error carries a stable ``kind`` string and the HTTP status the API
layer answers with, so presentation code can show the error kind plus the
backend's human-readable message without inspecting exception types.
"""

from typing import Any


class StudyCatalogError(Exception):
    """Base class for every error the catalog reports to callers."""

    kind = "catalog_error"
    status_code = 500

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {"error": self.kind, "message": self.message, "detail": self.detail}


class ValidationError(StudyCatalogError):
    """Bad or missing input. Raised before any backend I/O."""

    kind = "validation_error"
    status_code = 422


class NotFoundError(StudyCatalogError):
    """The referenced study record does not exist."""

    kind = "not_found"
    status_code = 404


class StorageWriteError(StudyCatalogError):
    """The blob store rejected or failed an upload."""

    kind = "storage_write_error"
    status_code = 502


class StorageDeleteError(StudyCatalogError):
    """The blob store failed to remove a blob (or it was not there)."""

    kind = "storage_delete_error"
    status_code = 502


class MetadataWriteError(StudyCatalogError):
    """The metadata store failed an insert or update."""

    kind = "metadata_write_error"
    status_code = 502


class MetadataDeleteError(StudyCatalogError):
    """The metadata store failed to delete a record."""

    kind = "metadata_delete_error"
    status_code = 502


class QueryError(StudyCatalogError):
    """A listing query could not be executed."""

    kind = "query_error"
    status_code = 503


class BackendTimeoutError(StudyCatalogError, TimeoutError):
    """A backend call did not answer within the configured timeout."""

    kind = "timeout"
    status_code = 504
