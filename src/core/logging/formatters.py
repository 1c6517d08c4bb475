"""Log formatters for JSON and console output."""

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any

from core.logging.context import get_log_context
from core.utils.json_serializers import json_serializer


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Redacts credentials embedded in statements and URLs.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Correlation
        "batch_id",
        "job_id",
        "external_job_id",
        "message_id",
        "duration_ms",
        # Errors
        "error_category",
        "error_message",
        "error_code",
        "error",
        "error_type",
        # Batching
        "batch_size",
        "trigger_reason",
        "records_received",
        "records_parsed",
        "records_failed",
        "records_acked",
        "ack_failures",
        "buffered",
        # Load jobs
        "target",
        "table",
        "status",
        "commit_status",
        "rows_loaded",
        "rows_reported",
        "rows_verified",
        "columns_added",
        "columns",
        "poll_count",
        # Staging
        "staging_location",
        "manifest",
        "part_count",
        "bytes_written",
        "objects_deleted",
        "pending_deletions",
        # Backpressure
        "concurrent_jobs",
        "delay_seconds",
        "delay_source",
        "saturated",
        # Resilience
        "attempt",
        "max_attempts",
        "total_attempts",
        "server_retry_after",
        # Operation tracking
        "operation",
        "state",
        "queue_url",
        "database",
        "statement",
        # Periodic stats
        "cycle",
        "cycle_interval_seconds",
        "metrics",
        "metric",
        "metric_value",
        "labels",
    ]

    # Type mapping for numeric fields so they are never serialized as strings
    NUMERIC_FIELDS = {
        "duration_ms": float,
        "delay_seconds": float,
        "server_retry_after": float,
        "attempt": int,
        "max_attempts": int,
        "total_attempts": int,
        "batch_size": int,
        "records_received": int,
        "records_parsed": int,
        "records_failed": int,
        "records_acked": int,
        "ack_failures": int,
        "buffered": int,
        "rows_loaded": int,
        "rows_reported": int,
        "poll_count": int,
        "part_count": int,
        "bytes_written": int,
        "objects_deleted": int,
        "pending_deletions": int,
        "concurrent_jobs": int,
        "cycle": int,
    }

    # Fields that may carry credentials
    SENSITIVE_FIELDS = ["statement", "staging_location", "queue_url"]

    SENSITIVE_PATTERN = re.compile(
        r"(ACCESS_KEY_ID|SECRET_ACCESS_KEY|SESSION_TOKEN|CREDENTIALS)\s+'[^']*'",
        re.IGNORECASE,
    )

    def _redact(self, text: str) -> str:
        return self.SENSITIVE_PATTERN.sub(r"\1 '[REDACTED]'", text)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        if key in self.SENSITIVE_FIELDS and isinstance(value, str):
            return self._redact(value)
        return value

    def _ensure_type(self, field: str, value: Any) -> Any:
        """Coerce numeric fields to their declared type, or None if impossible."""
        if field not in self.NUMERIC_FIELDS or value is None:
            return value

        expected_type = self.NUMERIC_FIELDS[field]
        try:
            return expected_type(value)
        except (ValueError, TypeError):
            return None

    @staticmethod
    def _base_log_entry(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    @staticmethod
    def _inject_context(log_entry: dict[str, Any], log_context: dict[str, Any]) -> None:
        for field in ("stage", "cycle_id", "worker_id", "batch_id", "target"):
            if log_context.get(field):
                log_entry[field] = log_context[field]

    @staticmethod
    def _should_include_source_location(record: logging.LogRecord) -> bool:
        return record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL)

    def _inject_extra_fields(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                typed_value = self._ensure_type(field, value)
                log_entry[field] = self._sanitize_value(field, typed_value)

    def _inject_exception(self, log_entry: dict[str, Any], record: logging.LogRecord) -> None:
        if not record.exc_info:
            return

        exc_type, exc_value, _ = record.exc_info
        log_entry["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stacktrace": self.formatException(record.exc_info),
        }

    def format(self, record: logging.LogRecord) -> str:
        log_entry = self._base_log_entry(record)
        self._inject_context(log_entry, get_log_context())

        if self._should_include_source_location(record):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        self._inject_extra_fields(log_entry, record)
        self._inject_exception(log_entry, record)

        return json.dumps(log_entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with color-coded log levels.

    Colors are auto-disabled when output is not a TTY (pipes, files).
    """

    COLORS = {
        logging.DEBUG: "\033[36m",  # Cyan
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _format_level_name(self, record: logging.LogRecord) -> str:
        level_name = record.levelname
        if not self._use_colors:
            return level_name

        color = self.COLORS.get(record.levelno, "")
        if not color:
            return level_name

        return f"{color}{level_name}{self.RESET}"

    @staticmethod
    def _build_prefix(level_name: str, log_context: dict[str, Any]) -> str:
        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            level_name,
        ]
        if log_context.get("stage"):
            parts.append(f"[{log_context['stage']}]")
        return " - ".join(parts)

    @staticmethod
    def _build_tags(record: logging.LogRecord, log_context: dict[str, Any]) -> list[str]:
        batch_id = getattr(record, "batch_id", None) or log_context.get("batch_id")
        target = getattr(record, "target", None) or log_context.get("target")

        tags = []
        if batch_id:
            tags.append(f"[batch:{batch_id[:8]}]")
        if target:
            tags.append(f"[{target}]")
        return tags

    def format(self, record: logging.LogRecord) -> str:
        log_context = get_log_context()

        level_name = self._format_level_name(record)
        prefix = self._build_prefix(level_name, log_context)
        tags = self._build_tags(record, log_context)

        if tags:
            message = f"{prefix} - {' '.join(tags)} {record.getMessage()}"
        else:
            message = f"{prefix} - {record.getMessage()}"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
