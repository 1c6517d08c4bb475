"""Periodic statistics logging utility for workers."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from core.logging.utilities import format_cycle_output

logger = logging.getLogger(__name__)

_COUNT_KEYS = {
    "succeeded": "messages_acked",
    "failed": "messages_retained",
    "skipped": "messages_dropped",
}


class PeriodicStatsLogger:
    """
    Periodic statistics logging with delta tracking.

    The worker supplies a callback returning cumulative counts; the logger
    computes per-cycle deltas and a message rate. The callback runs once
    per cycle, which makes it a convenient place for other periodic work
    such as flushing metrics.
    """

    def __init__(
        self,
        interval_seconds: float,
        get_stats: Callable[[int], dict[str, Any]],
        stage: str,
        worker_id: str,
    ):
        """
        Args:
            interval_seconds: Logging interval in seconds
            get_stats: Callback that takes cycle_count and returns extra fields
                containing cumulative ``messages_acked``, ``messages_retained``
                and ``messages_dropped`` counts
            stage: Stage name for logging context
            worker_id: Worker identifier
        """
        self.interval_seconds = interval_seconds
        self.get_stats = get_stats
        self.stage = stage
        self.worker_id = worker_id
        self._task: asyncio.Task | None = None
        self._cycle_count = 0
        self._previous_stats: dict[str, int] = {}

    def start(self) -> None:
        if self._task is not None:
            logger.warning("Periodic logger already running")
            return

        self._previous_stats = {}
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and emit one final cycle so nothing is left unreported."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.log_cycle()

    def _current_counts(self, extra: dict[str, Any]) -> dict[str, int]:
        return {key: int(extra.get(source, 0)) for key, source in _COUNT_KEYS.items()}

    def log_cycle(self) -> None:
        """Collect stats and log one cycle line."""
        self._cycle_count += 1
        extra = self.get_stats(self._cycle_count)
        current = self._current_counts(extra)

        deltas = {
            key: current[key] - self._previous_stats.get(key, 0) for key in current
        }
        msg = format_cycle_output(
            cycle_count=self._cycle_count,
            succeeded=current["succeeded"],
            failed=current["failed"],
            skipped=current["skipped"],
            since_last=deltas,
            interval_seconds=self.interval_seconds,
        )
        self._previous_stats = current

        logger.info(
            msg,
            extra={
                "stage": self.stage,
                "cycle": self._cycle_count,
                "cycle_interval_seconds": self.interval_seconds,
                **extra,
            },
        )

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                self.log_cycle()
        except asyncio.CancelledError:
            logger.debug("Periodic stats logger task cancelled")
            raise
