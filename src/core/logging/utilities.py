"""Logging utility functions."""

import logging
from typing import Any


def format_cycle_output(
    cycle_count: int,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
) -> str:
    """
    Format standardized cycle output with delta tracking.

    Counts are messages: succeeded were acknowledged after a primary load,
    failed were left for redelivery, skipped were dropped as unparseable.

    Example:
        >>> format_cycle_output(1, 1200, 30, 5)
        'Cycle 1: processed=1235, acked=1200, retained=30, dropped=5'
        >>> format_cycle_output(5, 1200, 0, 0, {"succeeded": 240, "failed": 0, "skipped": 0}, 30)
        'Cycle 5: +240 this cycle | total: 1200 acked | 8.0 msg/s'
    """
    if since_last is not None:
        delta_total = (
            since_last.get("succeeded", 0)
            + since_last.get("failed", 0)
            + since_last.get("skipped", 0)
        )
        rate = delta_total / interval_seconds if interval_seconds > 0 else 0

        total_parts = [f"{succeeded} acked"]
        if failed > 0:
            total_parts.append(f"{failed} retained")
        if skipped > 0:
            total_parts.append(f"{skipped} dropped")

        parts = [
            f"+{delta_total} this cycle",
            f"total: {', '.join(total_parts)}",
            f"{rate:.1f} msg/s",
        ]
        return f"Cycle {cycle_count}: {' | '.join(parts)}"

    parts = [
        f"processed={succeeded + failed + skipped}",
        f"acked={succeeded}",
        f"retained={failed}",
    ]
    if skipped > 0:
        parts.append(f"dropped={skipped}")
    return f"Cycle {cycle_count}: {', '.join(parts)}"


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("worker_id", "Worker:       {}"),
    ("queue", "Queue:        {}"),
    ("primary", "Primary:      {}"),
    ("secondary", "Secondary:    {}"),
    ("batch", "Batching:     {}"),
    ("health_port", "Health:       http://localhost:{}"),
    ("metrics_port", "Metrics:      http://localhost:{}"),
]


def log_startup_banner(
    logger: logging.Logger,
    worker_name: str,
    **kwargs: Any,
) -> None:
    """
    Log startup banner with worker configuration.

    Example:
        log_startup_banner(
            logger,
            worker_name="Bulk Load Pipeline",
            worker_id="loadpipe-swift-blue-falcon",
            queue="https://sqs.us-east-1.amazonaws.com/123/events",
            primary="analytics.events",
        )
    """
    separator = "=" * 50
    lines = ["", separator, worker_name]

    version = kwargs.get("version")
    if version:
        lines.append(f"Version: {version}")
    lines.append(separator)

    for field_name, fmt in _BANNER_FIELDS:
        value = kwargs.get(field_name)
        if value:
            lines.append(fmt.format(value))

    lines.append(separator)
    lines.append("")

    logger.info("\n".join(lines))


def log_worker_error(
    logger: logging.Logger,
    error_message: str,
    error_category: str | None = None,
    exc: Exception | None = None,
    **context: Any,
) -> None:
    """
    Log worker error with standardized context.

    Args:
        logger: Logger instance
        error_message: Human-readable error description
        error_category: Error category (transient, permanent, auth, ...)
        exc: Exception object (traceback included when provided)
        **context: Additional context fields (batch_id, target, ...)
    """
    extra = dict(context)

    if error_category is None and exc is not None and hasattr(exc, "category"):
        cat = exc.category
        error_category = cat.value if hasattr(cat, "value") else str(cat)
    if error_category:
        extra["error_category"] = error_category

    extra["error_message"] = error_message

    if exc:
        logger.error(error_message, extra=extra, exc_info=exc)
    else:
        logger.error(error_message, extra=extra)
