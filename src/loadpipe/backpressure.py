"""
Admission control for bulk-load submissions.

The warehouse reports how many jobs are currently running; the policy maps
that count to a delay before the next submission. Delays grow in discrete
steps as the count approaches the warehouse's concurrency limit, so load is
shed gradually instead of failing at the limit.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from core.errors.exceptions import ConfigurationError, classify_exception
from loadpipe.types import SinkTarget

logger = logging.getLogger(__name__)


@dataclass
class BackpressurePolicy:
    """
    Step function from concurrent job count to admission delay.

    Counts below ``low_water_mark`` are admitted immediately, counts at or
    above ``saturation_mark`` wait ``saturation_delay_seconds``, and in
    between the highest step whose job threshold is reached applies. A
    target's own ``concurrency_limit`` counts as saturation when it is lower
    than ``saturation_mark``.
    """

    low_water_mark: int = 5
    steps: list[tuple[int, float]] = field(
        default_factory=lambda: [(5, 1.0), (8, 3.0), (11, 8.0)]
    )
    saturation_mark: int = 13
    saturation_delay_seconds: float = 30.0
    unknown_delay_seconds: float = 1.0

    def __post_init__(self):
        self.steps = sorted((int(jobs), float(delay)) for jobs, delay in self.steps)

    def validate(self) -> None:
        """Raise ConfigurationError unless the delay never decreases with load."""
        if self.low_water_mark < 0:
            raise ConfigurationError(f"low_water_mark must be >= 0, got {self.low_water_mark}")
        if self.saturation_mark < self.low_water_mark:
            raise ConfigurationError(
                f"saturation_mark ({self.saturation_mark}) must be >= "
                f"low_water_mark ({self.low_water_mark})"
            )
        if self.unknown_delay_seconds < 0:
            raise ConfigurationError("unknown_delay_seconds must be >= 0")

        previous = 0.0
        for jobs, delay in self.steps:
            if jobs < self.low_water_mark or jobs >= self.saturation_mark:
                raise ConfigurationError(
                    f"Backpressure step at {jobs} jobs is outside "
                    f"[{self.low_water_mark}, {self.saturation_mark})"
                )
            if delay < previous:
                raise ConfigurationError(
                    f"Backpressure delays must not decrease: {delay}s at {jobs} jobs "
                    f"after {previous}s"
                )
            previous = delay
        if self.saturation_delay_seconds < previous:
            raise ConfigurationError(
                f"saturation_delay_seconds ({self.saturation_delay_seconds}) must be >= "
                f"the highest step delay ({previous})"
            )

    def delay_for(self, job_count: int, concurrency_limit: int | None = None) -> float:
        if self.is_saturated(job_count, concurrency_limit):
            return self.saturation_delay_seconds
        if job_count < self.low_water_mark:
            return 0.0
        delay = 0.0
        for jobs, step_delay in self.steps:
            if job_count >= jobs:
                delay = step_delay
        return delay

    def is_saturated(self, job_count: int, concurrency_limit: int | None = None) -> bool:
        if concurrency_limit is not None and job_count >= concurrency_limit:
            return True
        return job_count >= self.saturation_mark


class BackpressureController:
    """
    Gates submissions on the target warehouse's current job count.

    Keeps the last observed count and delay per target for metrics.
    """

    def __init__(
        self,
        policy: BackpressurePolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.policy = policy
        self._sleep = sleep
        self.last_job_count: dict[str, int | None] = {}
        self.last_delay: dict[str, float] = {}

    async def _read_job_count(self, target: SinkTarget) -> int | None:
        try:
            count = await target.warehouse.concurrent_job_count()
        except Exception as e:
            logger.warning(
                "Could not read concurrent job count, applying default delay",
                extra={
                    "target": target.name,
                    "delay_seconds": self.policy.unknown_delay_seconds,
                    "error_category": classify_exception(e).value,
                    "error_message": str(e)[:200],
                },
            )
            self.last_job_count[target.name] = None
            return None
        self.last_job_count[target.name] = count
        return count

    def _delay(self, target: SinkTarget, count: int | None) -> float:
        if count is None:
            return self.policy.unknown_delay_seconds
        return self.policy.delay_for(count, target.concurrency_limit)

    async def admission_delay(self, target: SinkTarget) -> float:
        """Delay the target's current load calls for, without sleeping."""
        delay = self._delay(target, await self._read_job_count(target))
        self.last_delay[target.name] = delay
        return delay

    async def wait_for_admission(self, target: SinkTarget) -> float:
        """
        Sleep until a submission to the target is admitted.

        At saturation the count is read once more after the first sleep and
        the resulting delay is applied as well.

        Returns:
            Total seconds slept
        """
        count = await self._read_job_count(target)
        delay = self._delay(target, count)
        total = delay

        if delay > 0:
            logger.info(
                "Backpressure delaying submission",
                extra={
                    "target": target.name,
                    "concurrent_jobs": count,
                    "delay_seconds": delay,
                },
            )
            await self._sleep(delay)

        if count is not None and self.policy.is_saturated(count, target.concurrency_limit):
            count = await self._read_job_count(target)
            delay = self._delay(target, count)
            if delay > 0:
                logger.warning(
                    "Warehouse still busy after saturation delay",
                    extra={
                        "target": target.name,
                        "concurrent_jobs": count,
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
                total += delay

        self.last_delay[target.name] = total
        return total
