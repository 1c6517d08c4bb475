"""
Pipeline driver: receive, accumulate, gate, commit, acknowledge.

The driver is the only owner of the batch accumulator, so batching needs no
locking. Acknowledgement is a conditional delete of the batch's receipt
tokens and happens only when the primary target finished loading the batch.
A failed batch is simply not deleted; the queue redelivers its messages
after their visibility timeout.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from core.errors.exceptions import ParseFailure, classify_exception
from core.logging.context import set_log_context
from loadpipe.accumulator import BatchAccumulator
from loadpipe.backpressure import BackpressureController
from loadpipe.fanout import FanoutCoordinator
from loadpipe.metrics import PipelineMetrics
from loadpipe.parsing import parse_message
from loadpipe.queue.base import QueueAdapter
from loadpipe.staging.area import StagingArea
from loadpipe.types import Batch, CommitResult, QueueMessage, TriggerReason

logger = logging.getLogger(__name__)


class DriverState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    ACCUMULATING = "accumulating"
    GATING = "gating"
    COMMITTING = "committing"
    AWAITING_RETRY = "awaiting_retry"
    STOPPED = "stopped"


class PipelineDriver:
    """
    Top-level loop of one pipeline process.

    Scale-out is by running more processes against the same queue; they
    coordinate only through message visibility.

    Args:
        queue: Source queue adapter
        accumulator: Batch accumulator owned by this driver
        gate: Backpressure controller for the primary target
        fanout: Commits flushed batches to the sink targets
        staging: Staging area whose expired objects are purged periodically
        metrics: Per-driver metrics accumulator
        max_messages: Messages requested per receive
        max_receive_wait_seconds: Long-poll ceiling per receive
        delete_unparseable: Delete malformed messages instead of letting them cycle
        retry_backoff_seconds: Pause after a failed commit before receiving again
        flush_on_shutdown: Load buffered messages on shutdown instead of leaving
            them for redelivery
        cleanup_interval_seconds: Minimum time between staging purges
    """

    def __init__(
        self,
        queue: QueueAdapter,
        accumulator: BatchAccumulator,
        gate: BackpressureController,
        fanout: FanoutCoordinator,
        staging: StagingArea | None = None,
        metrics: PipelineMetrics | None = None,
        max_messages: int = 10,
        max_receive_wait_seconds: float = 20.0,
        delete_unparseable: bool = True,
        retry_backoff_seconds: float = 5.0,
        flush_on_shutdown: bool = True,
        cleanup_interval_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.accumulator = accumulator
        self.gate = gate
        self.fanout = fanout
        self.staging = staging
        self.metrics = metrics or fanout.metrics
        self.max_messages = max_messages
        self.max_receive_wait_seconds = max_receive_wait_seconds
        self.delete_unparseable = delete_unparseable
        self.retry_backoff_seconds = retry_backoff_seconds
        self.flush_on_shutdown = flush_on_shutdown
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._sleep = sleep

        self.state = DriverState.IDLE
        self.last_result: CommitResult | None = None
        self._stop_event = asyncio.Event()
        self._running = False
        self._last_cleanup = clock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request a cooperative stop; the current cycle finishes first."""
        if not self._stop_event.is_set():
            logger.info("Stop requested, finishing current cycle")
        self._stop_event.set()

    async def run(self) -> None:
        """Run cycles until stop() is called, then drain and shut down."""
        self._running = True
        logger.info(
            "Pipeline driver started",
            extra={
                "batch_size": self.accumulator.target_batch_size,
                "target": self.fanout.primary.name,
            },
        )
        try:
            while not self._stop_event.is_set():
                await self.run_once()
            await self.shutdown()
        finally:
            self._running = False
            self.state = DriverState.STOPPED

    async def run_once(self) -> list[CommitResult]:
        """
        One receive/accumulate/flush cycle.

        Every batch that is due after receiving is committed before the
        cycle returns. A failed commit is followed by the retry backoff.
        """
        if not self._stop_event.is_set():
            messages = await self._receive()
            self.state = DriverState.ACCUMULATING
            await self._accumulate(messages)

        results: list[CommitResult] = []
        while self.accumulator.should_flush():
            batch = self.accumulator.flush()
            if batch is None:
                break
            results.append(await self._commit(batch))

        await self._purge_if_due()

        if any(not r.should_acknowledge for r in results) and not self._stop_event.is_set():
            self.state = DriverState.AWAITING_RETRY
            await self._sleep(self.retry_backoff_seconds)

        self.state = DriverState.IDLE
        return results

    async def shutdown(self) -> list[CommitResult]:
        """Drain the buffer, run a final purge and flush metrics."""
        results: list[CommitResult] = []
        buffered = len(self.accumulator)
        if buffered and self.flush_on_shutdown:
            logger.info("Draining buffered messages", extra={"buffered": buffered})
            while len(self.accumulator):
                batch = self.accumulator.flush(TriggerReason.SHUTDOWN)
                results.append(await self._commit(batch))
        elif buffered:
            logger.info(
                "Leaving buffered messages for redelivery",
                extra={"buffered": buffered},
            )

        await self._purge_if_due(force=True)
        self.metrics.flush()
        logger.info(
            "Pipeline driver stopped",
            extra={"metrics": self.metrics.totals()},
        )
        return results

    def _receive_wait(self) -> float:
        if len(self.accumulator):
            return min(self.max_receive_wait_seconds, self.accumulator.seconds_until_due())
        return self.max_receive_wait_seconds

    async def _receive(self) -> list[QueueMessage]:
        self.state = DriverState.RECEIVING
        try:
            messages = await self.queue.receive(self.max_messages, self._receive_wait())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Queue receive failed",
                extra={
                    "error_category": classify_exception(e).value,
                    "error_message": str(e)[:200],
                },
            )
            self.state = DriverState.AWAITING_RETRY
            await self._sleep(self.retry_backoff_seconds)
            return []

        if messages:
            self.metrics.increment("messages_received", len(messages))
        return messages

    async def _accumulate(self, messages: list[QueueMessage]) -> None:
        unparseable: list[str] = []
        for message in messages:
            try:
                self.accumulator.offer(parse_message(message))
            except ParseFailure as e:
                self.metrics.increment("messages_parse_failed")
                unparseable.append(message.receipt_token)
                logger.warning(
                    "Dropping unparseable message",
                    extra={
                        "message_id": e.message_id,
                        "error_category": e.category.value,
                        "error_message": str(e)[:200],
                    },
                )
        if unparseable and self.delete_unparseable:
            # Redelivery would only fail to parse again
            await self._delete(unparseable)

    async def _commit(self, batch: Batch) -> CommitResult:
        set_log_context(batch_id=batch.id)
        self.metrics.increment("batches_flushed", trigger=batch.trigger_reason.value)
        primary = self.fanout.primary

        self.state = DriverState.GATING
        delay = await self.gate.wait_for_admission(primary)
        self.metrics.gauge("backpressure_delay_seconds", delay, target=primary.name)
        self.metrics.gauge(
            "concurrent_jobs", self.gate.last_job_count.get(primary.name), target=primary.name
        )

        self.state = DriverState.COMMITTING
        result = await self.fanout.commit_batch(batch)
        self.last_result = result

        if result.should_acknowledge:
            await self._acknowledge(batch)
        else:
            self.metrics.increment("messages_retained", len(batch))
            logger.warning(
                "Primary load did not finish, batch will be redelivered",
                extra={
                    "batch_id": batch.id,
                    "batch_size": len(batch),
                    "status": result.primary.status.value,
                    "commit_status": result.status.value,
                    "error_message": result.primary.error,
                },
            )

        set_log_context(batch_id="")
        return result

    async def _acknowledge(self, batch: Batch) -> None:
        failed = await self._delete(batch.receipt_tokens)
        acked = len(batch) - failed
        self.metrics.increment("messages_acked", acked)
        self.metrics.increment("ack_failures", failed)
        logger.info(
            "Committed batch",
            extra={
                "batch_id": batch.id,
                "batch_size": len(batch),
                "trigger_reason": batch.trigger_reason.value,
                "records_acked": acked,
                "ack_failures": failed,
            },
        )

    async def _delete(self, receipt_tokens: list[str]) -> int:
        """Delete deliveries; failures are counted, the messages will reappear."""
        try:
            failed = await self.queue.delete(receipt_tokens)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "Queue delete failed, messages will be redelivered",
                extra={
                    "records_failed": len(receipt_tokens),
                    "error_category": classify_exception(e).value,
                    "error_message": str(e)[:200],
                },
            )
            return len(receipt_tokens)
        if failed:
            logger.warning(
                "Some queue deletes failed, messages will be redelivered",
                extra={"ack_failures": failed, "records_acked": len(receipt_tokens) - failed},
            )
        return failed

    async def _purge_if_due(self, force: bool = False) -> None:
        if self.staging is None:
            return
        now = self._clock()
        if force or now - self._last_cleanup >= self.cleanup_interval_seconds:
            self._last_cleanup = now
            await self.staging.purge_expired()
        self.metrics.gauge("staging_pending_deletions", self.staging.pending_deletions)

    def cycle_stats(self, cycle: int) -> dict[str, Any]:
        """
        Flush metrics and return the counts for the periodic cycle log.

        Passed to PeriodicStatsLogger as its ``get_stats`` callback.
        """
        self.metrics.flush()
        totals = self.metrics.totals()
        return {
            "messages_acked": int(totals.get("messages_acked", 0)),
            "messages_retained": int(totals.get("messages_retained", 0)),
            "messages_dropped": int(totals.get("messages_parse_failed", 0)),
            "state": self.state.value,
            "buffered": len(self.accumulator),
            "metrics": totals,
        }
