"""Pytest configuration and shared fixtures for the DICOM study catalog tests.

This module provides a temporary SQLite metadata store, a blob store in a
temporary directory, fault-injecting wrappers around both backends, and a
controllable clock.
"""

import asyncio
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.models.base import Base
from app.models.study import DicomStudy
from app.services.storage.blob_store import LocalBlobStore
from app.services.storage.metadata_store import SqlAlchemyMetadataStore
from app.services.studies.catalog import StudyCatalogQuery
from app.services.studies.lifecycle import StudyLifecycleCoordinator
from app.services.studies.path_namer import PathNamer
from app.services.studies.validation import UploadPayload

CALL_TIMEOUT = 0.2
SLOW_CALL = 1.0

# Minimal DICOM Part 10 header: 128-byte preamble plus magic
DICOM_BYTES = b"\0" * 128 + b"DICM" + b"\x02\x00\x10\x00UI\x14\x001.2.840.10008.1.2.1\0"


class FakeClock:
    """Callable clock returning a settable local time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeTimer:
    """Monotonic timer under test control."""

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class FaultInjector:
    """Delegating wrapper that can fail or stall chosen operations."""

    def __init__(self, inner: Any):
        self.inner = inner
        self.calls: list[str] = []
        self._failures: dict[str, list[Exception]] = {}
        self._delays: dict[str, float] = {}
        self._late_delays: dict[str, float] = {}

    def fail(self, operation: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    def stall(self, operation: str, seconds: float = SLOW_CALL) -> None:
        self._delays[operation] = seconds

    def stall_after(self, operation: str, seconds: float = SLOW_CALL) -> None:
        """Let the inner call complete, then hang before returning."""
        self._late_delays[operation] = seconds

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    async def _before(self, operation: str) -> None:
        self.calls.append(operation)
        delay = self._delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def _after(self, operation: str) -> None:
        delay = self._late_delays.get(operation)
        if delay:
            await asyncio.sleep(delay)


class FaultyBlobStore(FaultInjector):
    async def upload(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        await self._before("upload")
        await self.inner.upload(path, data, overwrite=overwrite)

    async def remove(self, path: str) -> None:
        await self._before("remove")
        await self.inner.remove(path)

    async def exists(self, path: str) -> bool:
        await self._before("exists")
        return await self.inner.exists(path)

    async def read(self, path: str) -> bytes:
        await self._before("read")
        return await self.inner.read(path)

    async def list_blobs(self, prefix: str = ""):
        await self._before("list_blobs")
        return await self.inner.list_blobs(prefix)

    def public_url(self, path: str) -> str:
        return self.inner.public_url(path)


class FaultyMetadataStore(FaultInjector):
    async def insert(self, **fields: str):
        await self._before("insert")
        record = await self.inner.insert(**fields)
        await self._after("insert")
        return record

    async def get(self, study_id: int):
        await self._before("get")
        return await self.inner.get(study_id)

    async def update(self, study_id: int, **fields: str):
        await self._before("update")
        record = await self.inner.update(study_id, **fields)
        await self._after("update")
        return record

    async def delete(self, study_id: int) -> None:
        await self._before("delete")
        await self.inner.delete(study_id)

    async def query(self, filters):
        await self._before("query")
        return await self.inner.query(filters)

    async def storage_paths(self) -> dict[str, int]:
        await self._before("storage_paths")
        return await self.inner.storage_paths()


def make_upload(
    file_name: str = "scan.dcm",
    content_type: str | None = "application/dicom",
    data: bytes = DICOM_BYTES,
) -> UploadPayload:
    return UploadPayload(file_name=file_name, content_type=content_type, data=data)


@pytest.fixture
def upload_factory():
    """Build upload payloads."""
    return make_upload


@pytest.fixture
async def session_maker(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh SQLite file database."""
    db_file = tmp_path / "test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest.fixture
async def local_blob_store(tmp_path: Path) -> LocalBlobStore:
    store = LocalBlobStore(tmp_path / "blobs")
    await store.initialize()
    return store


@pytest.fixture
def sql_metadata_store(session_maker) -> SqlAlchemyMetadataStore:
    return SqlAlchemyMetadataStore(session_maker)


@pytest.fixture
def blob_store(local_blob_store) -> FaultyBlobStore:
    """Blob store that can be told to fail or stall."""
    return FaultyBlobStore(local_blob_store)


@pytest.fixture
def metadata_store(sql_metadata_store) -> FaultyMetadataStore:
    """Metadata store that can be told to fail or stall."""
    return FaultyMetadataStore(sql_metadata_store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 15, 12, 0, 0).astimezone())


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def catalog(metadata_store, blob_store, clock, timer) -> StudyCatalogQuery:
    return StudyCatalogQuery(
        metadata_store,
        blob_store,
        cache_ttl=30.0,
        retries=2,
        backoff=0,
        call_timeout=CALL_TIMEOUT,
        clock=clock,
        timer=timer,
    )


@pytest.fixture
def lifecycle(blob_store, metadata_store, clock, catalog) -> StudyLifecycleCoordinator:
    return StudyLifecycleCoordinator(
        blob_store,
        metadata_store,
        PathNamer("dicom_files"),
        call_timeout=CALL_TIMEOUT,
        clock=clock,
        on_change=catalog.invalidate,
    )


@pytest.fixture
def backdate(session_maker):
    """Overwrite a record's ``created_at`` (stored as UTC)."""

    async def _backdate(study_id: int, created_at: datetime) -> None:
        async with session_maker() as session:
            await session.execute(
                update(DicomStudy)
                .where(DicomStudy.id == study_id)
                .values(created_at=created_at.astimezone(timezone.utc))
            )
            await session.commit()

    return _backdate
