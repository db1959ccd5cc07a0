"""Filtered, searchable study listing."""

import asyncio
import calendar
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TypeVar

from app.core.errors import BackendTimeoutError, NotFoundError, QueryError, ValidationError
from app.core.logging import get_logger
from app.services.storage.blob_store import BlobStore
from app.services.storage.metadata_store import MetadataStore
from app.services.storage.records import StudyFilter, StudyRecord
from app.services.studies.lifecycle import local_now

logger = get_logger(__name__)

T = TypeVar("T")


class TimeFilter(str, Enum):
    """Creation-time windows offered by the study list."""

    ALL = "all"
    TODAY = "today"
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"

    @classmethod
    def parse(cls, value: "str | TimeFilter | None") -> "TimeFilter":
        """Parse a filter name; ``week`` and ``month`` are accepted as aliases."""
        if isinstance(value, cls):
            return value
        if value is None or not value.strip():
            return cls.ALL
        key = value.strip().lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValidationError(
                f"Unknown time filter: {value}",
                {"time_filter": value, "allowed": [member.value for member in cls]},
            ) from None


_ALIASES = {"week": "last_week", "month": "last_month"}


def subtract_one_month(moment: datetime) -> datetime:
    """Same wall time one calendar month earlier, day clamped to month length."""
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def local_midnight(now: datetime) -> datetime:
    """Start of ``now``'s calendar day, with the UTC offset in force at midnight."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if isinstance(now.tzinfo, timezone) and now.utcoffset() == now.astimezone().utcoffset():
        # A fixed offset from astimezone() is the offset at ``now``, not at midnight
        return midnight.replace(tzinfo=None).astimezone()
    return midnight


def lower_bound(time_filter: TimeFilter, now: datetime) -> datetime | None:
    """Inclusive lower bound on ``created_at`` for a filter, in ``now``'s zone."""
    if time_filter is TimeFilter.TODAY:
        return local_midnight(now)
    if time_filter is TimeFilter.LAST_WEEK:
        return now - timedelta(days=7)
    if time_filter is TimeFilter.LAST_MONTH:
        return subtract_one_month(now)
    return None


class StudyCatalogQuery:
    """Read side of the catalog.

    Listings are cached per ``(time_filter, search text, bound date)`` for
    ``cache_ttl`` seconds. Writers call ``invalidate()`` after every successful mutation;
    a query that was already running when the cache was invalidated does not
    store its result.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        blob_store: BlobStore,
        *,
        cache_ttl: float = 30.0,
        retries: int = 2,
        backoff: float = 0.2,
        call_timeout: float = 10.0,
        clock: Callable[[], datetime] = local_now,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.metadata_store = metadata_store
        self.blob_store = blob_store
        self.cache_ttl = cache_ttl
        self.retries = max(0, retries)
        self.backoff = backoff
        self.call_timeout = call_timeout
        self.clock = clock
        self.timer = timer
        self._cache: dict[tuple[str, str, str], tuple[float, tuple[StudyRecord, ...]]] = {}
        self._generation = 0

    def invalidate(self) -> None:
        """Drop every cached listing."""
        self._generation += 1
        if self._cache:
            logger.debug("Catalog cache invalidated", entries=len(self._cache))
        self._cache.clear()

    async def _call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        except BackendTimeoutError:
            raise
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(
                f"Catalog query did not complete within {self.call_timeout}s",
                {"step": "metadata_query"},
            ) from e

    async def _query_with_retry(self, filters: StudyFilter) -> list[StudyRecord]:
        attempt = 0
        while True:
            try:
                return await self._call(self.metadata_store.query(filters))
            except (QueryError, BackendTimeoutError) as e:
                if attempt >= self.retries:
                    logger.error(
                        "Study listing failed",
                        attempts=attempt + 1,
                        error=e.message,
                        error_kind=e.kind,
                    )
                    raise
                attempt += 1
                logger.warning(
                    "Study listing failed, retrying",
                    attempt=attempt,
                    error=e.message,
                )
                await asyncio.sleep(self.backoff)

    async def list_studies(
        self,
        time_filter: "str | TimeFilter | None" = TimeFilter.ALL,
        name_contains: str | None = None,
    ) -> list[StudyRecord]:
        """List records, newest first.

        Args:
            time_filter: One of ``all``, ``today``, ``last_week``, ``last_month``
            name_contains: Case-insensitive substring of the record name

        Raises:
            ValidationError: unknown time filter
            QueryError: the metadata store kept failing
            BackendTimeoutError: the metadata store kept timing out

        """
        parsed = TimeFilter.parse(time_filter)
        needle = (name_contains or "").strip() or None
        bound = lower_bound(parsed, self.clock())
        # Bounded listings roll over at midnight even inside the TTL
        key = (
            parsed.value,
            needle.lower() if needle else "",
            bound.date().isoformat() if bound else "",
        )

        cached = self._cache.get(key)
        if cached is not None:
            expires_at, records = cached
            if self.timer() < expires_at:
                return list(records)
            del self._cache[key]

        generation = self._generation
        try:
            records = await self._query_with_retry(
                StudyFilter(created_after=bound, name_contains=needle)
            )
        except (QueryError, BackendTimeoutError):
            self._cache.pop(key, None)
            raise

        if generation == self._generation:
            self._cache[key] = (self.timer() + self.cache_ttl, tuple(records))
        logger.debug(
            "Listed studies",
            time_filter=parsed.value,
            searched=needle is not None,
            count=len(records),
        )
        return records

    async def get_study(self, study_id: int) -> StudyRecord:
        """Fetch one record. Raises NotFoundError."""
        record = await self._call(self.metadata_store.get(study_id))
        if record is None:
            raise NotFoundError(f"Study not found: {study_id}", {"study_id": study_id})
        return record

    def download_url(self, record: StudyRecord) -> str:
        return self.blob_store.public_url(record.storage_path)
