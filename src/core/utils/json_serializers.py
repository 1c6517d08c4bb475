"""Shared JSON serialization utilities for type-safe JSON encoding."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID


def json_serializer(obj: Any) -> Any:
    """
    Type-safe JSON serializer.

    Keeps numbers numeric instead of converting everything to strings:
    - datetime/date -> ISO 8601 string
    - Decimal -> float
    - Path, UUID -> string
    - Enums -> value
    - Everything else -> string (fallback)

    Used both for log records and for staged NDJSON rows, where a stringified
    number would land in the warehouse as text.
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (Path, UUID)):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


__all__ = ["json_serializer"]
