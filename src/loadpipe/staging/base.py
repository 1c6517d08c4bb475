"""Object store protocol used for staging."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class StoredObject:
    key: str
    # Epoch seconds of the last write
    last_modified: float


class ObjectStore(Protocol):

    def location(self, key: str) -> str:
        """URL the warehouse uses to read ``key`` (e.g. ``s3://bucket/key``)."""
        ...

    async def put(self, key: str, data: bytes, content_type: str = "application/x-ndjson") -> str:
        """Write ``data`` under ``key`` and return its location."""
        ...

    async def delete(self, key: str) -> None:
        ...

    async def list(self, prefix: str) -> list[str]:
        ...

    async def list_objects(self, prefix: str) -> list[StoredObject]:
        """Keys under ``prefix`` with their last-modified times."""
        ...
