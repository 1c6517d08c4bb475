"""Queue adapters: the durable source of inbound messages."""

from loadpipe.queue.base import QueueAdapter
from loadpipe.queue.memory import InMemoryQueue
from loadpipe.queue.sqs import SqsQueueAdapter

__all__ = ["QueueAdapter", "InMemoryQueue", "SqsQueueAdapter"]
