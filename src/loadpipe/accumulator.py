"""
Size- and time-triggered batching of inbound messages.

A batch is flushed when the buffer reaches the target size or when the
oldest unflushed data has waited for the maximum wait, whichever comes
first. The wait runs from the last flush while messages carry over, and
from the first offer when the buffer was empty. Flushing copies the buffer
into an immutable Batch, so the accumulator can keep filling while a
flushed batch is being loaded.
"""

import logging
import time
from collections.abc import Callable

from loadpipe.types import Batch, InboundMessage, TriggerReason

logger = logging.getLogger(__name__)


class BatchAccumulator:
    """
    Buffers messages until a size or time trigger fires.

    Not thread-safe; owned by a single pipeline driver.

    Args:
        target_batch_size: Flush when this many messages are buffered
        max_wait_seconds: Flush a non-empty buffer this long after the window opened
        clock: Monotonic time source in seconds
    """

    def __init__(
        self,
        target_batch_size: int,
        max_wait_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if target_batch_size < 1:
            raise ValueError(f"target_batch_size must be >= 1, got {target_batch_size}")
        if max_wait_seconds <= 0:
            raise ValueError(f"max_wait_seconds must be > 0, got {max_wait_seconds}")

        self.target_batch_size = target_batch_size
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._buffer: list[InboundMessage] = []
        self._window_start = clock()

    def __len__(self) -> int:
        return len(self._buffer)

    def offer(self, message: InboundMessage) -> None:
        if not self._buffer:
            self._window_start = self._clock()
        self._buffer.append(message)

    def trigger_reason(self) -> TriggerReason | None:
        """Which trigger is currently satisfied. Size wins when both are."""
        if len(self._buffer) >= self.target_batch_size:
            return TriggerReason.SIZE
        if self._buffer and self._clock() - self._window_start >= self.max_wait_seconds:
            return TriggerReason.TIMEOUT
        return None

    def should_flush(self) -> bool:
        return self.trigger_reason() is not None

    def seconds_until_due(self) -> float:
        """Time left before the time trigger fires, never negative."""
        return max(0.0, self.max_wait_seconds - (self._clock() - self._window_start))

    def flush(self, reason: TriggerReason | None = None) -> Batch | None:
        """
        Take up to target_batch_size messages as a new Batch.

        Messages beyond the target size stay buffered for the next flush.
        An empty buffer returns None and leaves the flush clock untouched.

        Args:
            reason: Recorded trigger; defaults to the currently satisfied
                trigger, or TIMEOUT when none is (forced flush)
        """
        if not self._buffer:
            return None

        if reason is None:
            reason = self.trigger_reason() or TriggerReason.TIMEOUT

        items = tuple(self._buffer[: self.target_batch_size])
        del self._buffer[: self.target_batch_size]
        self._window_start = self._clock()

        batch = Batch(items=items, trigger_reason=reason)
        logger.debug(
            "Flushed batch",
            extra={
                "batch_id": batch.id,
                "batch_size": len(batch),
                "trigger_reason": reason.value,
                "buffered": len(self._buffer),
            },
        )
        return batch
