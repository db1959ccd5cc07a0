"""
Declarative base, engine and session factory.

All models share the ``created_at``/``updated_at`` audit columns. Timestamps
are assigned in UTC by the application at flush time so every backend
(PostgreSQL or SQLite) stores comparable values.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.core.config import get_settings

# Constraint naming convention shared with the Alembic revisions
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all catalog models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class TimestampMixin:
    """Creation and modification timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


def _engine_options() -> dict[str, Any]:
    db_settings = get_settings().database
    options: dict[str, Any] = {"echo": db_settings.echo}
    if not db_settings.is_sqlite:
        options["pool_size"] = db_settings.pool_size
        options["max_overflow"] = db_settings.max_overflow
        options["pool_pre_ping"] = True
    return options


engine = create_async_engine(get_settings().database.url, **_engine_options())

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_all_tables() -> None:
    """Create every table known to the metadata (development and tests)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
