"""Tests for study listing, filtering and caching."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import BackendTimeoutError, NotFoundError, QueryError, ValidationError
from app.services.storage.metadata_store import escape_like
from app.services.studies.catalog import TimeFilter, lower_bound, subtract_one_month
from tests.conftest import make_upload


class TestTimeFilter:
    """Test filter parsing and bounds."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            (None, TimeFilter.ALL),
            ("", TimeFilter.ALL),
            ("all", TimeFilter.ALL),
            ("today", TimeFilter.TODAY),
            ("last_week", TimeFilter.LAST_WEEK),
            ("week", TimeFilter.LAST_WEEK),
            ("Month", TimeFilter.LAST_MONTH),
            (TimeFilter.LAST_MONTH, TimeFilter.LAST_MONTH),
        ],
    )
    def test_parse(self, raw, expected):
        assert TimeFilter.parse(raw) is expected

    def test_unknown_filter(self):
        with pytest.raises(ValidationError) as exc_info:
            TimeFilter.parse("yesterday")

        assert "last_month" in exc_info.value.detail["allowed"]

    def test_today_starts_at_local_midnight(self):
        now = datetime(2026, 3, 15, 17, 42, 3).astimezone()
        assert lower_bound(TimeFilter.TODAY, now) == datetime(2026, 3, 15).astimezone()

    @pytest.mark.skipif(not hasattr(time, "tzset"), reason="needs time.tzset")
    def test_today_on_daylight_saving_change(self, monkeypatch):
        monkeypatch.setenv("TZ", "America/New_York")
        time.tzset()
        try:
            if "EDT" not in time.tzname:
                pytest.skip("zoneinfo database not available")
            # Clocks sprang forward at 02:00; midnight was still EST
            now = datetime(2026, 3, 8, 12, 0).astimezone()
            bound = lower_bound(TimeFilter.TODAY, now)
        finally:
            monkeypatch.undo()
            time.tzset()

        assert bound.utcoffset() == timedelta(hours=-5)
        assert bound == datetime(2026, 3, 8, 5, 0, tzinfo=timezone.utc)

    def test_last_week(self):
        now = datetime(2026, 3, 15, 12, 0).astimezone()
        assert lower_bound(TimeFilter.LAST_WEEK, now) == now - timedelta(days=7)

    def test_all_has_no_bound(self):
        assert lower_bound(TimeFilter.ALL, datetime.now().astimezone()) is None

    @pytest.mark.parametrize(
        "moment,expected",
        [
            (datetime(2026, 3, 15, 9, 30), datetime(2026, 2, 15, 9, 30)),
            (datetime(2026, 3, 31), datetime(2026, 2, 28)),
            (datetime(2024, 3, 30), datetime(2024, 2, 29)),
            (datetime(2026, 1, 10), datetime(2025, 12, 10)),
        ],
    )
    def test_subtract_one_month(self, moment, expected):
        assert subtract_one_month(moment) == expected


class TestEscapeLike:
    def test_wildcards_escaped(self):
        assert escape_like("50%_a\\b") == "50\\%\\_a\\\\b"


class TestListStudies:
    """Test listing against a populated catalog."""

    @pytest.fixture
    async def studies(self, lifecycle, clock, backdate):
        """Four studies spread over the last two months."""
        now = clock()
        ages = {
            "Jane Doe": timedelta(hours=1),
            "Janet Smith": timedelta(days=3),
            "John Roe": timedelta(days=20),
            "JANE ARCHIVE": timedelta(days=60),
        }
        created = {}
        for name, age in ages.items():
            record = await lifecycle.create_study(name, f"{name} study", make_upload())
            await backdate(record.id, now - age)
            created[name] = record.id
        return created

    @pytest.mark.asyncio
    async def test_all_newest_first(self, catalog, studies):
        records = await catalog.list_studies("all")

        assert [r.name for r in records] == ["Jane Doe", "Janet Smith", "John Roe", "JANE ARCHIVE"]
        assert records == sorted(records, key=lambda r: r.created_at, reverse=True)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "time_filter,names",
        [
            ("today", ["Jane Doe"]),
            ("last_week", ["Jane Doe", "Janet Smith"]),
            ("last_month", ["Jane Doe", "Janet Smith", "John Roe"]),
        ],
    )
    async def test_time_filters(self, catalog, studies, time_filter, names):
        records = await catalog.list_studies(time_filter)
        assert [r.name for r in records] == names

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive(self, catalog, studies):
        records = await catalog.list_studies("all", "jane")
        assert [r.name for r in records] == ["Jane Doe", "Janet Smith", "JANE ARCHIVE"]

    @pytest.mark.asyncio
    async def test_today_combined_with_search(self, catalog, studies):
        records = await catalog.list_studies("today", "JANE")
        assert [r.name for r in records] == ["Jane Doe"]

        assert await catalog.list_studies("today", "john") == []

    @pytest.mark.asyncio
    async def test_blank_search_matches_everything(self, catalog, studies):
        assert len(await catalog.list_studies("all", "   ")) == 4

    @pytest.mark.asyncio
    async def test_wildcards_match_literally(self, catalog, lifecycle, studies):
        await lifecycle.create_study("100% contrast", "ct", make_upload())

        assert [r.name for r in await catalog.list_studies("all", "%")] == ["100% contrast"]
        assert await catalog.list_studies("all", "J_n") == []

    @pytest.mark.asyncio
    async def test_empty_catalog(self, catalog):
        assert await catalog.list_studies("last_week") == []


class TestCache:
    """Test cached listings and invalidation."""

    @pytest.mark.asyncio
    async def test_repeat_query_is_cached(self, catalog, metadata_store, lifecycle):
        await lifecycle.create_study("Jane Doe", "chest xray", make_upload())

        await catalog.list_studies("all", "Jane")
        await catalog.list_studies("all", "jane")

        assert metadata_store.count("query") == 1

    @pytest.mark.asyncio
    async def test_entry_expires(self, catalog, metadata_store, timer):
        await catalog.list_studies()
        timer.value += 31

        await catalog.list_studies()

        assert metadata_store.count("query") == 2

    @pytest.mark.asyncio
    async def test_today_entry_rolls_over_at_midnight(
        self, catalog, metadata_store, lifecycle, backdate, clock
    ):
        record = await lifecycle.create_study("Jane Doe", "chest xray", make_upload())
        await backdate(record.id, clock.now - timedelta(hours=1))
        assert [r.id for r in await catalog.list_studies("today")] == [record.id]

        clock.advance(hours=13)

        assert await catalog.list_studies("today") == []
        assert metadata_store.count("query") == 2

    @pytest.mark.asyncio
    async def test_mutation_invalidates(self, catalog, metadata_store, lifecycle, clock):
        record = await lifecycle.create_study("Jane Doe", "chest xray", make_upload())
        assert len(await catalog.list_studies()) == 1

        clock.advance(seconds=1)
        await lifecycle.update_study(record.id, "Jane Doe", "edited")
        assert (await catalog.list_studies())[0].description == "edited"

        await lifecycle.delete_study(record.id)
        assert await catalog.list_studies() == []

    @pytest.mark.asyncio
    async def test_invalidation_during_query_discards_result(
        self, catalog, metadata_store, lifecycle
    ):
        original_query = metadata_store.inner.query

        async def query_then_invalidate(filters):
            result = await original_query(filters)
            catalog.invalidate()
            return result

        metadata_store.inner.query = query_then_invalidate
        await catalog.list_studies()
        metadata_store.inner.query = original_query

        await catalog.list_studies()

        assert metadata_store.count("query") == 2


class TestRetry:
    """Test read retries."""

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, catalog, metadata_store):
        metadata_store.fail("query", QueryError("connection reset"), times=2)

        assert await catalog.list_studies() == []
        assert metadata_store.count("query") == 3

    @pytest.mark.asyncio
    async def test_persistent_failure_raises(self, catalog, metadata_store):
        metadata_store.fail("query", QueryError("connection reset"), times=3)

        with pytest.raises(QueryError):
            await catalog.list_studies()

        assert metadata_store.count("query") == 3

    @pytest.mark.asyncio
    async def test_failure_does_not_serve_stale_entry(self, catalog, metadata_store, timer):
        await catalog.list_studies()
        timer.value += 31
        metadata_store.fail("query", QueryError("connection reset"), times=3)

        with pytest.raises(QueryError):
            await catalog.list_studies()

        await catalog.list_studies()
        assert metadata_store.count("query") == 5

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_then_raised(self, catalog, metadata_store):
        metadata_store.stall("query", 0.5)

        with pytest.raises(BackendTimeoutError):
            await catalog.list_studies()

        assert metadata_store.count("query") == 3


class TestGetStudy:
    @pytest.mark.asyncio
    async def test_get_and_download_url(self, catalog, lifecycle):
        record = await lifecycle.create_study("Jane Doe", "chest xray", make_upload("a b.dcm"))

        assert await catalog.get_study(record.id) == record
        url = catalog.download_url(record)
        assert url.startswith("/api/v1/files/dicom_files/Jane_Doe-")
        assert url.endswith("/a%20b.dcm")

    @pytest.mark.asyncio
    async def test_missing(self, catalog):
        with pytest.raises(NotFoundError):
            await catalog.get_study(42)
