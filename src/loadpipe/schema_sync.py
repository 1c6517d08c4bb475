"""
Forward-only schema evolution for warehouse tables.

New payload fields become new wide-text columns before a load, so a bulk
load never silently drops data because the table is behind the producers.
Columns are only ever added; nothing is removed or retyped.
"""

import logging
import re
from collections.abc import Iterable

from core.errors.exceptions import SchemaSyncFailure, WarehouseError, classify_exception
from core.resilience.retry import DEFAULT_RETRY, RetryConfig, with_retry_async
from core.types import ErrorCategory
from loadpipe.types import SchemaSnapshot
from loadpipe.warehouse.base import WarehouseClient

logger = logging.getLogger(__name__)

WIDE_TEXT_TYPE = "VARCHAR(65535)"
MAX_IDENTIFIER_LENGTH = 127

_DISALLOWED_CHARS = re.compile(r"[^a-zA-Z0-9_]")
_REPEATED_UNDERSCORES = re.compile(r"_+")


def sanitize_column_name(name: str) -> str | None:
    """
    Turn an arbitrary payload key into a valid column identifier.

    Disallowed characters become ``_``, a leading digit gets a ``_`` prefix,
    runs of ``_`` collapse to one and the result is lower-cased. Returns
    None when nothing usable is left (empty or a lone ``_``).

    >>> sanitize_column_name("Event Name")
    'event_name'
    >>> sanitize_column_name("1st-value!!")
    '_1st_value_'
    """
    cleaned = _DISALLOWED_CHARS.sub("_", str(name))
    if cleaned[:1].isdigit():
        cleaned = f"_{cleaned}"
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned).lower()[:MAX_IDENTIFIER_LENGTH]
    if not cleaned or cleaned == "_":
        return None
    return cleaned


def is_duplicate_column_error(error: Exception) -> bool:
    return "already exists" in str(error).lower()


class SchemaSynchronizer:
    """
    Adds missing columns to one warehouse's tables.

    Column sets are cached per table as a SchemaSnapshot. A cache hit that
    covers every observed field skips the warehouse round trip; any miss
    refreshes from the warehouse first, since another consumer may already
    have added the column.
    """

    def __init__(
        self,
        warehouse: WarehouseClient,
        retry_config: RetryConfig | None = None,
        column_type: str = WIDE_TEXT_TYPE,
    ):
        self.warehouse = warehouse
        self.column_type = column_type
        self._retry = retry_config or DEFAULT_RETRY
        self._snapshots: dict[str, SchemaSnapshot] = {}

    async def snapshot(self, table: str, refresh: bool = False) -> SchemaSnapshot:
        if not refresh and table in self._snapshots:
            return self._snapshots[table]

        @with_retry_async(config=self._retry, default_error=WarehouseError)
        async def list_columns() -> list[str]:
            return await self.warehouse.list_columns(table)

        columns = await list_columns()
        snapshot = SchemaSnapshot(table_name=table, columns=frozenset(c.lower() for c in columns))
        self._snapshots[table] = snapshot
        return snapshot

    async def sync(self, table: str, observed_fields: Iterable[str]) -> list[str]:
        """
        Add a column for every observed field the table does not have.

        Returns:
            Columns added by this call (already-existing columns excluded)

        Raises:
            SchemaSyncFailure: TRANSIENT when retries were exhausted on a
                retryable error, PERMANENT otherwise
        """
        candidates = {
            sanitized
            for sanitized in (sanitize_column_name(f) for f in observed_fields)
            if sanitized is not None
        }
        if not candidates:
            return []

        cached = table in self._snapshots
        try:
            snapshot = await self.snapshot(table)
            missing = snapshot.missing(candidates)
            if missing and cached:
                snapshot = await self.snapshot(table, refresh=True)
                missing = snapshot.missing(candidates)
        except Exception as e:
            raise self._failure(table, "read columns", e) from e

        if not missing:
            return []

        added: list[str] = []
        present: list[str] = []
        try:
            for column in missing:
                if await self._add_column(table, column):
                    added.append(column)
                else:
                    present.append(column)
        except Exception as e:
            self._snapshots[table] = snapshot.with_columns(added + present)
            raise self._failure(table, f"add column {column}", e) from e

        self._snapshots[table] = snapshot.with_columns(missing)

        if added:
            logger.info(
                "Added columns to warehouse table",
                extra={"table": table, "columns_added": added, "columns": len(snapshot.columns)},
            )
        return added

    async def _add_column(self, table: str, column: str) -> bool:
        @with_retry_async(config=self._retry, default_error=WarehouseError)
        async def add_column() -> bool:
            try:
                await self.warehouse.add_column(table, column, self.column_type)
            except Exception as e:
                if is_duplicate_column_error(e):
                    logger.debug(
                        "Column already exists, treating as added",
                        extra={"table": table, "columns": [column]},
                    )
                    return False
                raise
            return True

        return await add_column()

    def invalidate(self, table: str | None = None) -> None:
        if table is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(table, None)

    @staticmethod
    def _failure(table: str, action: str, error: Exception) -> SchemaSyncFailure:
        category = classify_exception(error)
        if category != ErrorCategory.PERMANENT:
            category = ErrorCategory.TRANSIENT
        return SchemaSyncFailure(
            f"Schema sync failed to {action} on {table}",
            category=category,
            cause=error,
            context={"table": table},
        )
