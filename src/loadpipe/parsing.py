"""
Queue message parsing.

Producers either wrap events in an envelope ``{"id", "timestamp", "data"}``
or publish the event object directly. Both become an InboundMessage; any
other body is a ParseFailure.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.errors.exceptions import ParseFailure
from loadpipe.types import InboundMessage, QueueMessage


class QueueEnvelope(BaseModel):
    """Envelope written by the ingestion endpoint around each event.

    Attributes:
        id: Producer-assigned event id; falls back to the queue message id
        timestamp: When the event was accepted by the producer
        data: The event payload loaded into the warehouse
    """

    model_config = ConfigDict(extra="ignore")

    id: str | int | None = Field(default=None, description="Producer event id")
    timestamp: datetime | str | None = Field(default=None, description="Producer timestamp")
    data: dict[str, Any] = Field(..., description="Event payload")


def _is_envelope(body: dict[str, Any]) -> bool:
    return "data" in body and isinstance(body.get("data"), dict)


def parse_message(message: QueueMessage) -> InboundMessage:
    """
    Parse a raw queue message.

    Raises:
        ParseFailure: body is not JSON, not an object, or an envelope whose
            payload is empty or malformed
    """
    try:
        body = json.loads(message.body)
    except (TypeError, ValueError) as e:
        raise ParseFailure(
            "Message body is not valid JSON", message_id=message.message_id, cause=e
        ) from e

    if not isinstance(body, dict):
        raise ParseFailure(
            f"Message body is a JSON {type(body).__name__}, expected an object",
            message_id=message.message_id,
        )

    if _is_envelope(body):
        try:
            envelope = QueueEnvelope.model_validate(body)
        except ValidationError as e:
            raise ParseFailure(
                "Invalid message envelope", message_id=message.message_id, cause=e
            ) from e
        payload = envelope.data
        message_id = str(envelope.id) if envelope.id is not None else message.message_id
    else:
        payload = body
        message_id = message.message_id

    if not payload:
        raise ParseFailure("Message payload is empty", message_id=message.message_id)

    return InboundMessage(
        id=message_id,
        receipt_token=message.receipt_token,
        payload=payload,
        enqueued_at=message.enqueued_at,
    )
