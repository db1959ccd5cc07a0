"""Metadata store for study records.

Each operation runs in its own session and commits on its own, so the
lifecycle coordinator sees the metadata store as one more independently
failing backend, exactly like the blob store.
"""

from datetime import timezone
from typing import Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import (
    MetadataDeleteError,
    MetadataWriteError,
    NotFoundError,
    QueryError,
)
from app.core.logging import get_logger
from app.models.study import DicomStudy
from app.services.storage.records import StudyFilter, StudyRecord

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "description", "storage_path", "file_name"})


def escape_like(value: str, escape: str = "\\") -> str:
    """Escape LIKE wildcards so ``value`` matches literally."""
    return (
        value.replace(escape, escape * 2)
        .replace("%", f"{escape}%")
        .replace("_", f"{escape}_")
    )


@runtime_checkable
class MetadataStore(Protocol):
    """Row store for study records."""

    async def insert(
        self, *, name: str, description: str, storage_path: str, file_name: str
    ) -> StudyRecord:
        """Insert a record. Raises MetadataWriteError."""
        ...

    async def get(self, study_id: int) -> StudyRecord | None:
        """Fetch one record, None when absent. Raises QueryError."""
        ...

    async def update(self, study_id: int, **fields: str) -> StudyRecord:
        """Update the given fields. Raises NotFoundError, MetadataWriteError."""
        ...

    async def delete(self, study_id: int) -> None:
        """Delete a record. Raises NotFoundError, MetadataDeleteError."""
        ...

    async def query(self, filters: StudyFilter) -> list[StudyRecord]:
        """Records matching ``filters``, newest first. Raises QueryError."""
        ...

    async def storage_paths(self) -> dict[str, int]:
        """Map of every referenced storage path to its record id. Raises QueryError."""
        ...


class SqlAlchemyMetadataStore:
    """Metadata store over the ``dicom_studies`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def insert(
        self, *, name: str, description: str, storage_path: str, file_name: str
    ) -> StudyRecord:
        study = DicomStudy(
            name=name,
            description=description,
            storage_path=storage_path,
            file_name=file_name,
        )
        try:
            async with self.session_maker() as session:
                session.add(study)
                await session.commit()
                await session.refresh(study)
                return StudyRecord.from_model(study)
        except SQLAlchemyError as e:
            logger.error("Failed to insert study record", storage_path=storage_path, error=str(e))
            raise MetadataWriteError(
                f"Failed to save study metadata: {e}", {"storage_path": storage_path}
            ) from e

    async def get(self, study_id: int) -> StudyRecord | None:
        try:
            async with self.session_maker() as session:
                study = await session.get(DicomStudy, study_id)
                return StudyRecord.from_model(study) if study else None
        except SQLAlchemyError as e:
            raise QueryError(f"Failed to load study {study_id}: {e}") from e

    async def update(self, study_id: int, **fields: str) -> StudyRecord:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        try:
            async with self.session_maker() as session:
                study = await session.get(DicomStudy, study_id)
                if study is None:
                    raise NotFoundError(f"Study not found: {study_id}", {"study_id": study_id})
                for field_name, value in fields.items():
                    setattr(study, field_name, value)
                await session.commit()
                await session.refresh(study)
                return StudyRecord.from_model(study)
        except SQLAlchemyError as e:
            logger.error("Failed to update study record", study_id=study_id, error=str(e))
            raise MetadataWriteError(
                f"Failed to update study metadata: {e}", {"study_id": study_id}
            ) from e

    async def delete(self, study_id: int) -> None:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    delete(DicomStudy).where(DicomStudy.id == study_id)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to delete study record", study_id=study_id, error=str(e))
            raise MetadataDeleteError(
                f"Failed to delete study metadata: {e}", {"study_id": study_id}
            ) from e

        if result.rowcount == 0:
            raise NotFoundError(f"Study not found: {study_id}", {"study_id": study_id})

    async def query(self, filters: StudyFilter) -> list[StudyRecord]:
        query = select(DicomStudy).order_by(DicomStudy.created_at.desc(), DicomStudy.id.desc())

        if filters.created_after is not None:
            # SQLite keeps UTC wall time without an offset
            created_after = filters.created_after.astimezone(timezone.utc)
            query = query.where(DicomStudy.created_at >= created_after)

        if filters.name_contains:
            query = query.where(
                DicomStudy.name.ilike(f"%{escape_like(filters.name_contains)}%", escape="\\")
            )

        try:
            async with self.session_maker() as session:
                result = await session.execute(query)
                return [StudyRecord.from_model(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error("Study query failed", error=str(e))
            raise QueryError(f"Failed to list studies: {e}") from e

    async def storage_paths(self) -> dict[str, int]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(DicomStudy.storage_path, DicomStudy.id))
                return {path: study_id for path, study_id in result.all()}
        except SQLAlchemyError as e:
            raise QueryError(f"Failed to list storage paths: {e}") from e
