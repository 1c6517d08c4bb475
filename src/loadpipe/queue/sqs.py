"""Amazon SQS queue adapter."""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

import boto3

from core.errors.exceptions import QueueError, wrap_exception
from loadpipe.types import QueueMessage

logger = logging.getLogger(__name__)

# Service limits for ReceiveMessage / DeleteMessageBatch
SQS_MAX_MESSAGES = 10
SQS_MAX_WAIT_SECONDS = 20
SQS_DELETE_BATCH_SIZE = 10


class SqsQueueAdapter:
    """Queue adapter over boto3's SQS client, run off the event loop via threads."""

    def __init__(
        self,
        queue_url: str,
        region: str | None = None,
        visibility_timeout_seconds: int | None = None,
        client: Any | None = None,
    ):
        self.queue_url = queue_url
        self.name = queue_url.rsplit("/", 1)[-1] or "sqs"
        self.visibility_timeout_seconds = visibility_timeout_seconds
        self._client = client or boto3.client("sqs", region_name=region or None)

    async def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        params: dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MaxNumberOfMessages": max(1, min(int(max_messages), SQS_MAX_MESSAGES)),
            "WaitTimeSeconds": max(0, min(int(wait_seconds), SQS_MAX_WAIT_SECONDS)),
            "AttributeNames": ["SentTimestamp"],
        }
        if self.visibility_timeout_seconds:
            params["VisibilityTimeout"] = int(self.visibility_timeout_seconds)

        try:
            response = await asyncio.to_thread(self._client.receive_message, **params)
        except Exception as e:
            raise wrap_exception(
                e, default_class=QueueError, context={"operation": "receive_message"}
            ) from e

        return [self._to_message(raw) for raw in response.get("Messages", [])]

    @staticmethod
    def _to_message(raw: dict[str, Any]) -> QueueMessage:
        sent = raw.get("Attributes", {}).get("SentTimestamp")
        enqueued_at = (
            datetime.fromtimestamp(int(sent) / 1000, tz=UTC) if sent else datetime.now(UTC)
        )
        return QueueMessage(
            message_id=raw["MessageId"],
            receipt_token=raw["ReceiptHandle"],
            body=raw.get("Body", ""),
            enqueued_at=enqueued_at,
        )

    async def delete(self, receipt_tokens: list[str]) -> int:
        failed = 0
        for start in range(0, len(receipt_tokens), SQS_DELETE_BATCH_SIZE):
            chunk = receipt_tokens[start : start + SQS_DELETE_BATCH_SIZE]
            entries = [
                {"Id": str(index), "ReceiptHandle": token}
                for index, token in enumerate(chunk)
            ]
            try:
                response = await asyncio.to_thread(
                    self._client.delete_message_batch,
                    QueueUrl=self.queue_url,
                    Entries=entries,
                )
            except Exception as e:
                raise wrap_exception(
                    e, default_class=QueueError, context={"operation": "delete_message_batch"}
                ) from e

            for failure in response.get("Failed", []):
                failed += 1
                logger.warning(
                    "Failed to delete message from queue",
                    extra={
                        "error_code": failure.get("Code"),
                        "error_message": failure.get("Message"),
                        "queue_url": self.queue_url,
                    },
                )
        return failed

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
