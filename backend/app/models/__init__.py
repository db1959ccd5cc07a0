"""
Database models for the DICOM study catalog.

This module exports all SQLAlchemy models and database utilities.
"""

from app.models.base import Base, async_session_maker, engine
from app.models.study import DicomStudy

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "DicomStudy",
]
