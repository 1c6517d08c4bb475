"""Queue adapter protocol."""

from typing import Protocol

from loadpipe.types import QueueMessage


class QueueAdapter(Protocol):
    """
    Durable queue the pipeline consumes from.

    Acknowledgement is a conditional delete: a receipt token only deletes the
    delivery it was issued for. Messages that are never deleted reappear
    after the queue's visibility timeout.
    """

    name: str

    async def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        """Long-poll for up to ``max_messages``, waiting at most ``wait_seconds``."""
        ...

    async def delete(self, receipt_tokens: list[str]) -> int:
        """
        Delete (acknowledge) deliveries.

        Chunking to the provider's batch limit is handled by the adapter.

        Returns:
            Number of deliveries that could not be deleted
        """
        ...

    async def close(self) -> None:
        ...
