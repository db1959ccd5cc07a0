"""
Study database model.

Represents one catalogued DICOM study: a display name, a free-text
description and the pointer to its binary file in the blob store.
"""

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class DicomStudy(TimestampMixin, Base):
    """
    Study model representing an uploaded DICOM file and its metadata.

    ``storage_path`` is unique: a blob path is never shared by two records.
    """

    __tablename__ = "dicom_studies"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Patient / study label shown in the catalog
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)

    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Key of the binary in the blob store
    storage_path: Mapped[str] = mapped_column(String(1024), unique=True, nullable=False)

    # Original upload name, used for download labelling
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)

    __table_args__ = (Index("ix_dicom_studies_created_at", "created_at"),)

    def __repr__(self) -> str:
        return f"<DicomStudy(id={self.id}, name='{self.name}', path='{self.storage_path}')>"
