"""In-process representations of catalog rows handed across service seams."""

from dataclasses import dataclass
from datetime import datetime, timezone

from app.models.study import DicomStudy


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; everything is written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class StudyRecord:
    """One catalogued study as stored in the metadata store."""

    id: int
    name: str
    description: str
    storage_path: str
    file_name: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, row: DicomStudy) -> "StudyRecord":
        return cls(
            id=row.id,
            name=row.name,
            description=row.description,
            storage_path=row.storage_path,
            file_name=row.file_name,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )


@dataclass(frozen=True)
class StudyFilter:
    """Filters understood by ``MetadataStore.query``.

    ``created_after`` is an inclusive lower bound; ``name_contains`` is a
    case-insensitive substring match on the record name.
    """

    created_after: datetime | None = None
    name_contains: str | None = None


@dataclass(frozen=True)
class BlobInfo:
    """A blob present in the blob store."""

    path: str
    size: int
    modified_at: datetime
