"""Tests for SchemaSynchronizer."""

import pytest

from core.errors.exceptions import SchemaSyncFailure
from core.resilience.retry import RetryConfig
from core.types import ErrorCategory
from loadpipe.schema_sync import WIDE_TEXT_TYPE, SchemaSynchronizer, sanitize_column_name
from loadpipe.warehouse import InMemoryWarehouse

NO_DELAY = RetryConfig(max_attempts=2, base_delay=0)


class CountingWarehouse(InMemoryWarehouse):

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.list_calls = 0

    async def list_columns(self, table):
        self.list_calls += 1
        return await super().list_columns(table)


def _make_sync(columns=("id",)):
    warehouse = CountingWarehouse(columns={"public.events": set(columns)})
    return SchemaSynchronizer(warehouse, retry_config=NO_DELAY), warehouse


class TestSanitizeColumnName:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Event Name", "event_name"),
            ("1st-value!!", "_1st_value_"),
            ("already_ok", "already_ok"),
            ("a..b", "a_b"),
            ("", None),
            ("!!!", None),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_column_name(raw) == expected

    def test_truncated_to_identifier_limit(self):
        assert len(sanitize_column_name("x" * 300)) == 127


class TestSync:

    async def test_adds_missing_columns(self):
        sync, warehouse = _make_sync()

        added = await sync.sync("public.events", {"id", "Event Name", "user"})

        assert added == ["event_name", "user"]
        assert warehouse.added_columns == [
            ("public.events", "event_name", WIDE_TEXT_TYPE),
            ("public.events", "user", WIDE_TEXT_TYPE),
        ]

    async def test_nothing_missing(self):
        sync, warehouse = _make_sync(columns=("id", "user"))

        assert await sync.sync("public.events", {"ID", "user"}) == []
        assert warehouse.added_columns == []

    async def test_no_usable_fields_skips_warehouse(self):
        sync, warehouse = _make_sync()

        assert await sync.sync("public.events", {"!!!"}) == []
        assert warehouse.list_calls == 0

    async def test_cache_hit_skips_read(self):
        sync, warehouse = _make_sync()
        await sync.sync("public.events", {"user"})

        await sync.sync("public.events", {"user", "id"})

        assert warehouse.list_calls == 1

    async def test_cache_miss_refreshes_before_adding(self):
        sync, warehouse = _make_sync()
        await sync.sync("public.events", {"user"})
        # another consumer adds a column behind our back
        warehouse.columns["public.events"].add("source")

        added = await sync.sync("public.events", {"source"})

        assert added == []
        assert warehouse.list_calls == 2
        assert [c[1] for c in warehouse.added_columns] == ["user"]

    async def test_duplicate_column_treated_as_present(self):
        sync, warehouse = _make_sync()
        warehouse.add_column_error = RuntimeError('column "user" already exists')

        assert await sync.sync("public.events", {"user"}) == []
        snapshot = await sync.snapshot("public.events")
        assert "user" in snapshot.columns

    async def test_custom_column_type(self):
        warehouse = InMemoryWarehouse(columns={"public.events": {"id"}})
        sync = SchemaSynchronizer(warehouse, retry_config=NO_DELAY, column_type="SUPER")

        await sync.sync("public.events", {"props"})

        assert warehouse.added_columns == [("public.events", "props", "SUPER")]

    async def test_invalidate_forces_reread(self):
        sync, warehouse = _make_sync()
        await sync.snapshot("public.events")

        sync.invalidate("public.events")
        await sync.snapshot("public.events")
        sync.invalidate()
        await sync.snapshot("public.events")

        assert warehouse.list_calls == 3


class TestFailures:

    async def test_transient_read_failure(self):
        sync, warehouse = _make_sync()
        warehouse.list_columns_error = ConnectionError("connection reset by peer")

        with pytest.raises(SchemaSyncFailure) as exc_info:
            await sync.sync("public.events", {"user"})

        assert exc_info.value.category == ErrorCategory.TRANSIENT
        assert warehouse.list_calls == NO_DELAY.max_attempts
        assert "read columns" in str(exc_info.value)

    async def test_permanent_add_failure(self):
        sync, warehouse = _make_sync()
        warehouse.add_column_error = RuntimeError('syntax error at or near "user"')

        with pytest.raises(SchemaSyncFailure) as exc_info:
            await sync.sync("public.events", {"user"})

        assert exc_info.value.category == ErrorCategory.PERMANENT
        assert exc_info.value.context["table"] == "public.events"

    async def test_failure_keeps_columns_added_so_far(self):

        class FailOnSecond(CountingWarehouse):
            async def add_column(self, table, name, column_type):
                if name == "b":
                    raise RuntimeError('syntax error at or near "b"')
                await super().add_column(table, name, column_type)

        warehouse = FailOnSecond(columns={"public.events": {"id"}})
        sync = SchemaSynchronizer(warehouse, retry_config=NO_DELAY)

        with pytest.raises(SchemaSyncFailure):
            await sync.sync("public.events", {"a", "b"})

        snapshot = await sync.snapshot("public.events")
        assert "a" in snapshot.columns
        assert "b" not in snapshot.columns
