"""Amazon S3 object store."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import boto3

from core.errors.exceptions import StageFailure, wrap_exception
from loadpipe.staging.base import StoredObject

logger = logging.getLogger(__name__)


class S3ObjectStore:
    """Object store over boto3's S3 client, run off the event loop via threads."""

    def __init__(self, bucket: str, region: str | None = None, client: Any | None = None):
        self.bucket = bucket
        self._client = client or boto3.client("s3", region_name=region or None)

    def location(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    async def put(self, key: str, data: bytes, content_type: str = "application/x-ndjson") -> str:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            raise wrap_exception(
                e, default_class=StageFailure, context={"operation": "put_object", "key": key}
            ) from e
        return self.location(key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)

    async def list(self, prefix: str) -> list[str]:
        return [obj.key for obj in await self.list_objects(prefix)]

    async def list_objects(self, prefix: str) -> list[StoredObject]:
        def _list() -> list[StoredObject]:
            paginator = self._client.get_paginator("list_objects_v2")
            found: list[StoredObject] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    modified = obj.get("LastModified")
                    found.append(
                        StoredObject(
                            key=obj["Key"],
                            last_modified=modified.timestamp() if modified else time.time(),
                        )
                    )
            return found

        return await asyncio.to_thread(_list)
