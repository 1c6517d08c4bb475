"""
Bulk loader: stage, sync schema, submit, poll, clean up.

One call to load() drives a single (batch, target) LoadJob through its
state machine and always returns it in a terminal state. Errors become the
job's FAILED/TIMED_OUT status so the caller only ever inspects outcomes.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from core.errors.exceptions import (
    LoadFailure,
    PipelineError,
    SchemaSyncFailure,
    WarehouseError,
    classify_exception,
)
from core.logging.context import set_log_context
from core.resilience.retry import DEFAULT_RETRY, RetryConfig, with_retry_async
from core.types import ErrorCategory
from loadpipe.metrics import PipelineMetrics
from loadpipe.schema_sync import SchemaSynchronizer
from loadpipe.staging.area import StagingArea
from loadpipe.types import (
    Batch,
    LoadJob,
    LoadJobStatus,
    SinkTarget,
    StagedBatch,
    StatementDescription,
)
from loadpipe.warehouse.statements import build_copy_statement

logger = logging.getLogger(__name__)


class BulkLoader:
    """
    Loads batches into sink targets through the staging area.

    Schema synchronizers are created lazily, one per target, so each
    warehouse keeps its own column cache.
    """

    def __init__(
        self,
        staging: StagingArea,
        retry_config: RetryConfig | None = None,
        metrics: PipelineMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.staging = staging
        self._retry = retry_config or DEFAULT_RETRY
        self.metrics = metrics or PipelineMetrics()
        self._sleep = sleep
        self._clock = clock
        self._synchronizers: dict[str, SchemaSynchronizer] = {}

    def synchronizer_for(self, target: SinkTarget) -> SchemaSynchronizer:
        synchronizer = self._synchronizers.get(target.name)
        if synchronizer is None:
            synchronizer = SchemaSynchronizer(target.warehouse, retry_config=self._retry)
            self._synchronizers[target.name] = synchronizer
        return synchronizer

    async def load(self, batch: Batch, target: SinkTarget) -> LoadJob:
        set_log_context(batch_id=batch.id, target=target.name)
        job = LoadJob(target=target, batch=batch)
        staged: StagedBatch | None = None

        try:
            staged = await self.staging.stage(batch, target.name)
            job.staging_location = staged.location
            job.transition(LoadJobStatus.STAGED)

            if target.schema_evolution and not await self._sync_schema(job):
                return await self._finish(job, staged)

            await self._submit(job, staged)
            await self._poll(job)
            if job.status == LoadJobStatus.FAILED and target.schema_evolution:
                # the table may have changed under the cached columns
                self.synchronizer_for(target).invalidate(target.table_name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not job.status.is_terminal:
                job.fail(str(e))
            logger.error(
                "Load job failed",
                extra={
                    "job_id": job.id,
                    "batch_id": batch.id,
                    "target": target.name,
                    "status": job.status.value,
                    "error_category": _category(e),
                    "error_message": str(e)[:500],
                },
                exc_info=not isinstance(e, PipelineError),
            )

        return await self._finish(job, staged)

    async def _sync_schema(self, job: LoadJob) -> bool:
        """Returns False when the job was failed by a permanent schema error."""
        target = job.target
        try:
            job.columns_added = await self.synchronizer_for(target).sync(
                target.table_name, job.batch.observed_fields()
            )
        except SchemaSyncFailure as e:
            if e.category == ErrorCategory.PERMANENT:
                job.fail(f"Schema sync failed: {e}")
                logger.error(
                    "Schema sync failed permanently, retaining batch",
                    extra={
                        "job_id": job.id,
                        "target": target.name,
                        "table": target.table_name,
                        "error_category": e.category.value,
                        "error_message": str(e)[:500],
                    },
                )
                return False
            logger.warning(
                "Schema sync failed after retries, loading with current columns",
                extra={
                    "job_id": job.id,
                    "target": target.name,
                    "table": target.table_name,
                    "error_category": e.category.value,
                    "error_message": str(e)[:500],
                },
            )
        return True

    async def _submit(self, job: LoadJob, staged: StagedBatch) -> None:
        target = job.target
        statement = build_copy_statement(
            target.table_name,
            staged.location,
            target.credentials,
            manifest=staged.uses_manifest,
        )

        @with_retry_async(config=self._retry, default_error=LoadFailure)
        async def submit() -> str:
            return await target.warehouse.submit(statement)

        job.external_job_id = await submit()
        job.transition(LoadJobStatus.SUBMITTED)
        logger.debug(
            "Submitted load job",
            extra={
                "job_id": job.id,
                "external_job_id": job.external_job_id,
                "target": target.name,
                "table": target.table_name,
                "manifest": staged.uses_manifest,
            },
        )

    async def _describe(self, job: LoadJob) -> StatementDescription:
        @with_retry_async(config=self._retry, default_error=WarehouseError)
        async def describe() -> StatementDescription:
            return await job.target.warehouse.describe(job.external_job_id)

        return await describe()

    async def _poll(self, job: LoadJob) -> None:
        target = job.target
        deadline = self._clock() + target.max_wait_seconds
        poll_count = 0

        while True:
            description = await self._describe(job)
            poll_count += 1

            if description.status == LoadJobStatus.FINISHED:
                self._record_rows(job, description.rows_affected)
                job.transition(LoadJobStatus.FINISHED)
                return
            if description.status.is_terminal:
                job.fail(description.error or f"Load job ended {description.status.value}")
                return
            if description.status == LoadJobStatus.RUNNING:
                job.transition(LoadJobStatus.RUNNING)

            if self._clock() >= deadline:
                job.fail(
                    f"Load job did not finish within {target.max_wait_seconds}s "
                    f"after {poll_count} polls",
                    status=LoadJobStatus.TIMED_OUT,
                )
                return
            await self._sleep(target.poll_interval_seconds)

    def _record_rows(self, job: LoadJob, reported: int | None) -> None:
        # Bulk loads commonly report zero rows on success; FINISHED is authoritative
        if reported:
            job.rows_loaded = reported
            job.rows_verified = True
        else:
            job.rows_loaded = len(job.batch)
            job.rows_verified = False
            logger.debug(
                "Row count not reported, using batch size",
                extra={
                    "job_id": job.id,
                    "target": job.target.name,
                    "rows_reported": reported,
                    "rows_loaded": job.rows_loaded,
                },
            )

    async def _finish(self, job: LoadJob, staged: StagedBatch | None) -> LoadJob:
        if staged is not None:
            if job.succeeded:
                await self.staging.schedule_release(staged)
            else:
                await self.staging.release(staged)

        name = job.target.name
        self.metrics.increment("load_jobs", target=name, status=job.status.value)
        if job.succeeded:
            self.metrics.increment("rows_loaded", job.rows_loaded, target=name)
        if job.columns_added:
            self.metrics.increment("columns_added", len(job.columns_added), target=name)

        log = logger.info if job.succeeded else logger.warning
        log(
            "Load job %s",
            job.status.value,
            extra={
                "job_id": job.id,
                "external_job_id": job.external_job_id,
                "batch_id": job.batch.id,
                "target": name,
                "status": job.status.value,
                "rows_loaded": job.rows_loaded,
                "rows_verified": job.rows_verified,
                "duration_ms": job.duration_ms,
                "error_message": job.error,
            },
        )
        return job


def _category(error: Exception) -> str:
    return classify_exception(error).value
