"""In-memory object store for tests and dry runs."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from loadpipe.staging.base import StoredObject


class InMemoryObjectStore:

    def __init__(self, bucket: str = "memory", clock: Callable[[], float] = time.time):
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.modified: dict[str, float] = {}
        self.fail_puts = False
        self.fail_deletes = False
        self.fail_lists = False
        self.put_count = 0
        self._clock = clock

    def location(self, key: str) -> str:
        return f"memory://{self.bucket}/{key}"

    async def put(self, key: str, data: bytes, content_type: str = "application/x-ndjson") -> str:
        await asyncio.sleep(0)
        if self.fail_puts:
            raise ConnectionError(f"simulated put failure for {key}")
        self.objects[key] = data
        self.modified[key] = self._clock()
        self.put_count += 1
        return self.location(key)

    async def delete(self, key: str) -> None:
        await asyncio.sleep(0)
        if self.fail_deletes:
            raise ConnectionError(f"simulated delete failure for {key}")
        self.objects.pop(key, None)
        self.modified.pop(key, None)

    async def list(self, prefix: str) -> list[str]:
        return [obj.key for obj in await self.list_objects(prefix)]

    async def list_objects(self, prefix: str) -> list[StoredObject]:
        await asyncio.sleep(0)
        if self.fail_lists:
            raise ConnectionError(f"simulated list failure for {prefix}")
        return [
            StoredObject(key=key, last_modified=self.modified[key])
            for key in sorted(self.objects)
            if key.startswith(prefix)
        ]

    def read_lines(self, key: str) -> list[str]:
        return self.objects[key].decode("utf-8").splitlines()
