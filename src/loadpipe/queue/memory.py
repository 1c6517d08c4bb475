"""In-memory queue with visibility-timeout semantics.

Used for tests and dry runs. Several drivers can share one instance to act
as competing consumers: a received message is hidden from everyone until
its visibility timeout passes or it is deleted with the receipt token of
its current delivery.
"""

import asyncio
import json
import time
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from loadpipe.types import QueueMessage


@dataclass
class _StoredMessage:
    message_id: str
    body: str
    enqueued_at: datetime
    visible_at: float = 0.0
    receipt_token: str | None = None


class InMemoryQueue:

    def __init__(
        self,
        visibility_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "memory",
    ):
        self.name = name
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._clock = clock
        self._messages: dict[str, _StoredMessage] = {}
        self.receive_counts: Counter[str] = Counter()
        self.delete_counts: Counter[str] = Counter()
        self.stale_deletes = 0

    def send(self, body: str | dict[str, Any], message_id: str | None = None) -> str:
        """Enqueue a message; dict bodies are JSON-encoded."""
        if not isinstance(body, str):
            body = json.dumps(body)
        message_id = message_id or uuid.uuid4().hex
        self._messages[message_id] = _StoredMessage(
            message_id=message_id,
            body=body,
            enqueued_at=datetime.now(UTC),
        )
        return message_id

    async def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        # Yield to the loop the way a network call would
        await asyncio.sleep(0)
        delivered = self._deliver(max_messages)
        if not delivered and wait_seconds > 0:
            # Long poll: wait once, then look again
            await asyncio.sleep(wait_seconds)
            delivered = self._deliver(max_messages)
        return delivered

    def _deliver(self, max_messages: int) -> list[QueueMessage]:
        now = self._clock()
        delivered: list[QueueMessage] = []
        for stored in self._messages.values():
            if len(delivered) >= max_messages:
                break
            if stored.visible_at > now:
                continue
            stored.receipt_token = uuid.uuid4().hex
            stored.visible_at = now + self.visibility_timeout_seconds
            self.receive_counts[stored.message_id] += 1
            delivered.append(
                QueueMessage(
                    message_id=stored.message_id,
                    receipt_token=stored.receipt_token,
                    body=stored.body,
                    enqueued_at=stored.enqueued_at,
                )
            )
        return delivered

    async def delete(self, receipt_tokens: list[str]) -> int:
        await asyncio.sleep(0)
        by_token = {
            stored.receipt_token: stored
            for stored in self._messages.values()
            if stored.receipt_token is not None
        }
        failed = 0
        for token in receipt_tokens:
            stored = by_token.pop(token, None)
            if stored is None:
                # Token from an older delivery or an already-deleted message
                self.stale_deletes += 1
                failed += 1
                continue
            del self._messages[stored.message_id]
            self.delete_counts[stored.message_id] += 1
        return failed

    def expire_visibility(self) -> None:
        """Make every in-flight message visible again, as if its timeout passed."""
        for stored in self._messages.values():
            stored.visible_at = 0.0

    @property
    def remaining(self) -> int:
        """Messages not yet deleted, visible or in flight."""
        return len(self._messages)

    @property
    def in_flight(self) -> int:
        now = self._clock()
        return sum(1 for stored in self._messages.values() if stored.visible_at > now)

    def __len__(self) -> int:
        return self.remaining

    async def close(self) -> None:
        return None
