"""
Staging lifecycle for bulk loads.

A batch is written as newline-delimited JSON parts under a per-target,
per-batch prefix. When it spans more than one part a manifest lists them so
a single load statement can reference the whole batch. Staged objects are
deleted right away after a failed load and after a retention window after a
successful one, which keeps recent loads replayable.

Deferred deletions are tracked in memory, and every purge also scans the
staging prefix for objects older than the retention window, so objects left
behind by a restart or crash are removed as well.
"""

import json
import logging
import time
from collections import Counter
from collections.abc import Callable
from datetime import UTC
from typing import Any

from core.errors.exceptions import CleanupFailure, StageFailure, wrap_exception
from core.utils.json_serializers import json_serializer
from loadpipe.schema_sync import sanitize_column_name
from loadpipe.staging.base import ObjectStore
from loadpipe.types import Batch, StagedBatch

logger = logging.getLogger(__name__)

# Minimum age before the storage scan deletes an object, whatever the retention.
# Must exceed the longest load so in-flight batches keep their files.
MIN_ORPHAN_AGE_SECONDS = 3600.0


def serialize_record(payload: dict[str, Any], collisions: Counter[str] | None = None) -> str:
    """
    Serialize one payload as a JSON line with column-safe keys.

    Keys are sanitized the same way the schema synchronizer names columns,
    so the warehouse's JSON auto-mapping finds them. Nested objects and
    arrays are stored as JSON text.

    When two keys sanitize to the same column the first one wins and the
    column is counted in ``collisions``.
    """
    record: dict[str, Any] = {}
    for key, value in payload.items():
        column = sanitize_column_name(key)
        if column is None:
            continue
        if column in record:
            if collisions is not None:
                collisions[column] += 1
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, default=json_serializer, ensure_ascii=False)
        record[column] = value
    return json.dumps(record, default=json_serializer, ensure_ascii=False)


def build_manifest(urls: list[str]) -> bytes:
    entries = [{"url": url, "mandatory": True} for url in urls]
    return json.dumps({"entries": entries}, indent=2).encode("utf-8")


class StagingArea:
    """Writes, describes and deletes the staged form of batches."""

    def __init__(
        self,
        store: ObjectStore,
        prefix: str = "staging",
        max_records_per_part: int = 50000,
        retention_seconds: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        min_orphan_age_seconds: float = MIN_ORPHAN_AGE_SECONDS,
    ):
        self.store = store
        self.prefix = prefix.strip("/")
        self.max_records_per_part = max_records_per_part
        self.retention_seconds = retention_seconds
        self.min_orphan_age_seconds = min_orphan_age_seconds
        self._clock = clock
        # compared against the store's last-modified times
        self._wall_clock = wall_clock
        # (due time, staged batch) awaiting deferred deletion
        self._scheduled: list[tuple[float, StagedBatch]] = []

    def _batch_prefix(self, batch: Batch, target_name: str) -> str:
        day = batch.created_at.astimezone(UTC).strftime("%Y/%m/%d")
        return f"{self.prefix}/{target_name}/{day}/{batch.id}"

    def _manifest_key(self, batch: Batch, target_name: str) -> str:
        return f"{self.prefix}/manifests/copy-{batch.id}-{target_name}.json"

    async def stage(self, batch: Batch, target_name: str) -> StagedBatch:
        """
        Write a batch for one target.

        Raises:
            StageFailure: if any part or the manifest cannot be written.
                Parts already written are removed on a best-effort basis.
        """
        collisions: Counter[str] = Counter()
        lines = [serialize_record(item.payload, collisions) for item in batch.items]
        if collisions:
            logger.warning(
                "Payload keys map to the same column, keeping the first value",
                extra={
                    "batch_id": batch.id,
                    "target": target_name,
                    "columns": sorted(collisions),
                },
            )
        base = self._batch_prefix(batch, target_name)

        written: list[str] = []
        urls: list[str] = []
        bytes_written = 0
        manifest_key: str | None = None
        try:
            for part, start in enumerate(range(0, len(lines), self.max_records_per_part)):
                key = f"{base}/part-{part:05d}.jsonl"
                data = ("\n".join(lines[start : start + self.max_records_per_part]) + "\n").encode(
                    "utf-8"
                )
                urls.append(await self.store.put(key, data))
                written.append(key)
                bytes_written += len(data)

            if len(written) > 1:
                manifest_key = self._manifest_key(batch, target_name)
                location = await self.store.put(
                    manifest_key, build_manifest(urls), content_type="application/json"
                )
                written.append(manifest_key)
            else:
                location = urls[0]
        except Exception as e:
            await self._delete_keys(written)
            raise wrap_exception(
                e,
                default_class=StageFailure,
                context={"batch_id": batch.id, "target": target_name},
            ) from e

        staged = StagedBatch(
            location=location,
            keys=tuple(k for k in written if k != manifest_key),
            record_count=len(lines),
            bytes_written=bytes_written,
            manifest_key=manifest_key,
        )
        logger.debug(
            "Staged batch",
            extra={
                "batch_id": batch.id,
                "target": target_name,
                "staging_location": location,
                "part_count": len(staged.keys),
                "bytes_written": bytes_written,
                "manifest": staged.uses_manifest,
            },
        )
        return staged

    async def release(self, staged: StagedBatch) -> int:
        """Delete a staged batch now. Failures are logged, never raised."""
        return await self._delete_keys(list(staged.all_keys))

    async def schedule_release(self, staged: StagedBatch) -> None:
        """Delete after the retention window (immediately when it is zero)."""
        if self.retention_seconds <= 0:
            await self.release(staged)
            return
        self._scheduled.append((self._clock() + self.retention_seconds, staged))

    async def purge_expired(self) -> int:
        """
        Delete every staged object whose retention has elapsed.

        Scheduled batches that are due go first. The staging prefix is then
        listed and anything older than the retention window (and never
        younger than ``min_orphan_age_seconds``) that is not still scheduled
        is deleted too. Listing failures are logged, never raised.
        """
        now = self._clock()
        due = [staged for due_at, staged in self._scheduled if due_at <= now]
        self._scheduled = [(d, s) for d, s in self._scheduled if d > now]

        deleted = 0
        for staged in due:
            deleted += await self.release(staged)
        orphans = await self._delete_orphans()

        if deleted or orphans:
            logger.info(
                "Purged expired staging objects",
                extra={
                    "objects_deleted": deleted + orphans,
                    "pending_deletions": len(self._scheduled),
                },
            )
        return deleted + orphans

    async def _delete_orphans(self) -> int:
        cutoff = self._wall_clock() - max(self.retention_seconds, self.min_orphan_age_seconds)
        held = {key for _, staged in self._scheduled for key in staged.all_keys}
        try:
            objects = await self.store.list_objects(f"{self.prefix}/")
        except Exception as e:
            failure = CleanupFailure(
                f"Failed to list staging prefix {self.prefix}/", cause=e, context={"key": self.prefix}
            )
            logger.warning(
                str(failure),
                extra={
                    "error_category": failure.category.value,
                    "error_message": str(e)[:200],
                },
            )
            return 0

        stale = [obj.key for obj in objects if obj.last_modified <= cutoff and obj.key not in held]
        if stale:
            logger.info(
                "Deleting staging objects past retention that were not scheduled",
                extra={"objects_deleted": len(stale)},
            )
        return await self._delete_keys(stale)

    @property
    def pending_deletions(self) -> int:
        return len(self._scheduled)

    async def _delete_keys(self, keys: list[str]) -> int:
        deleted = 0
        for key in keys:
            try:
                await self.store.delete(key)
                deleted += 1
            except Exception as e:
                failure = CleanupFailure(
                    f"Failed to delete staged object {key}", cause=e, context={"key": key}
                )
                logger.warning(
                    str(failure),
                    extra={
                        "staging_location": self.store.location(key),
                        "error_category": failure.category.value,
                        "error_message": str(e)[:200],
                    },
                )
        return deleted
