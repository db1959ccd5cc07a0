"""Blob and metadata storage backends."""

from app.services.storage.blob_store import BlobStore, LocalBlobStore
from app.services.storage.metadata_store import MetadataStore, SqlAlchemyMetadataStore
from app.services.storage.records import BlobInfo, StudyFilter, StudyRecord

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "MetadataStore",
    "SqlAlchemyMetadataStore",
    "BlobInfo",
    "StudyFilter",
    "StudyRecord",
]
