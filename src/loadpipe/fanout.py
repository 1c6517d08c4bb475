"""
Fan-out of a batch to the primary and optional secondary sink targets.

Both legs run concurrently and are joined before the commit decision.
Only the primary's outcome decides acknowledgement: a secondary failure,
or even an exception escaping the secondary leg, is recorded and logged
but never fails the commit.
"""

import asyncio
import logging

from core.errors.exceptions import classify_exception
from loadpipe.backpressure import BackpressureController
from loadpipe.loader import BulkLoader
from loadpipe.metrics import PipelineMetrics
from loadpipe.types import (
    Batch,
    CommitResult,
    CommitStatus,
    LoadJob,
    LoadJobStatus,
    SinkTarget,
)

logger = logging.getLogger(__name__)


class FanoutCoordinator:
    """
    Commits batches to a primary target and, when enabled, a secondary one.

    The primary is gated by the pipeline driver before commit_batch is
    called. The secondary passes its own backpressure gate inside its leg,
    so a busy secondary delays only itself.
    """

    def __init__(
        self,
        loader: BulkLoader,
        primary: SinkTarget,
        secondary: SinkTarget | None = None,
        secondary_gate: BackpressureController | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        self.loader = loader
        self.primary = primary
        self.secondary = secondary
        self.secondary_gate = secondary_gate
        self.metrics = metrics or loader.metrics

    @property
    def secondary_enabled(self) -> bool:
        return self.secondary is not None and self.secondary.enabled

    async def _load_secondary(self, batch: Batch, target: SinkTarget) -> LoadJob:
        if self.secondary_gate is not None:
            delay = await self.secondary_gate.wait_for_admission(target)
            self.metrics.gauge("backpressure_delay_seconds", delay, target=target.name)
            self.metrics.gauge(
                "concurrent_jobs",
                self.secondary_gate.last_job_count.get(target.name),
                target=target.name,
            )
        return await self.loader.load(batch, target)

    async def commit_batch(self, batch: Batch) -> CommitResult:
        secondary_target = self.secondary if self.secondary_enabled else None
        legs = [self.loader.load(batch, self.primary)]
        if secondary_target is not None:
            legs.append(self._load_secondary(batch, secondary_target))

        results = await asyncio.gather(*legs, return_exceptions=True)

        primary = self._job_from_result(results[0], batch, self.primary)
        secondary = None
        if secondary_target is not None:
            secondary = self._job_from_result(results[1], batch, secondary_target)

        if not primary.succeeded:
            status = CommitStatus.FAILED
        elif secondary is not None and not secondary.succeeded:
            status = CommitStatus.PARTIAL_SUCCESS
            logger.warning(
                "Secondary target diverged from primary",
                extra={
                    "batch_id": batch.id,
                    "target": secondary_target.name,
                    "status": secondary.status.value,
                    "error_message": secondary.error,
                },
            )
        else:
            status = CommitStatus.COMMITTED

        self.metrics.increment("batches_committed", status=status.value)
        return CommitResult(batch=batch, status=status, primary=primary, secondary=secondary)

    def _job_from_result(
        self, result: LoadJob | BaseException, batch: Batch, target: SinkTarget
    ) -> LoadJob:
        if isinstance(result, LoadJob):
            return result
        if isinstance(result, asyncio.CancelledError):
            raise result

        job = LoadJob(target=target, batch=batch)
        job.fail(f"Load raised {type(result).__name__}: {result}")
        logger.error(
            "Load leg raised unexpectedly",
            extra={
                "batch_id": batch.id,
                "target": target.name,
                "error_category": classify_exception(result).value
                if isinstance(result, Exception)
                else "unknown",
                "error_message": str(result)[:500],
            },
            exc_info=(type(result), result, result.__traceback__),
        )
        self.metrics.increment("load_jobs", target=target.name, status=LoadJobStatus.FAILED.value)
        return job
