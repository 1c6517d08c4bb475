"""
Retry for warehouse and staging calls.

Decisions come from the exception hierarchy:
- Transient and throttling errors back off and retry
- Auth errors retry (boto3 refreshes session credentials on the next call)
- Permanent errors are raised on the first occurrence
"""

import asyncio
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from functools import wraps
from typing import Any

from core.errors.exceptions import (
    ConfigurationError,
    PipelineError,
    ThrottlingError,
    classify_exception,
    wrap_exception,
)
from core.types import ErrorCategory

logger = logging.getLogger(__name__)

_RETRYABLE_CATEGORIES = (
    ErrorCategory.TRANSIENT,
    ErrorCategory.AUTH,
    ErrorCategory.UNKNOWN,
)


def _category_of(error: Exception) -> ErrorCategory:
    if isinstance(error, PipelineError):
        return error.category
    return classify_exception(error)


@dataclass
class RetryConfig:
    """Backoff schedule and retry policy for one class of calls."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    # Permanent errors stop the loop even with attempts left
    respect_permanent: bool = True

    # ThrottlingError.retry_after replaces the computed backoff
    respect_retry_after: bool = True

    # Type overrides, checked before classification
    always_retry: set[type[Exception]] = field(default_factory=set)
    never_retry: set[type[Exception]] = field(default_factory=set)

    def __post_init__(self):
        # YAML with ${ENV} expansion hands numbers over as strings
        self.max_attempts = int(self.max_attempts)
        self.base_delay = float(self.base_delay)
        self.max_delay = float(self.max_delay)
        self.exponential_base = float(self.exponential_base)
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] | None) -> "RetryConfig":
        """Build from a config section, rejecting keys that are not fields."""
        values = dict(values or {})
        known = {f.name for f in fields(cls)} - {"always_retry", "never_retry"}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown retry settings: {', '.join(unknown)}",
                context={"section": "retry", "keys": unknown},
            )
        try:
            return cls(**values)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid retry settings: {e}", context={"section": "retry"}, cause=e
            ) from e

    def backoff(self, attempt: int) -> float:
        """Exponential delay for a 0-indexed attempt with equal jitter."""
        ceiling = self.base_delay * (self.exponential_base**attempt)
        half = ceiling / 2
        return min(half + random.uniform(0, half), self.max_delay)

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        if (
            self.respect_retry_after
            and isinstance(error, ThrottlingError)
            and error.retry_after
        ):
            return min(error.retry_after, self.max_delay)
        return self.backoff(attempt)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """True when another attempt is allowed after ``attempt`` (0-indexed) failed."""
        if attempt + 1 >= self.max_attempts:
            return False
        if self.never_retry and isinstance(error, tuple(self.never_retry)):
            return False
        if self.always_retry and isinstance(error, tuple(self.always_retry)):
            return True

        if isinstance(error, PipelineError):
            return error.is_retryable

        category = classify_exception(error)
        if self.respect_permanent and category == ErrorCategory.PERMANENT:
            return False
        return category in _RETRYABLE_CATEGORIES


DEFAULT_RETRY = RetryConfig(max_attempts=3, base_delay=1.0)


def _notify(
    on_retry: Callable[[Exception, int, float], None],
    error: Exception,
    attempt: int,
    delay: float,
    operation: str,
) -> None:
    try:
        on_retry(error, attempt, delay)
    except Exception as cb_err:
        logger.warning(
            "on_retry callback failed for %s: %s",
            operation,
            str(cb_err)[:100],
            extra={"operation": operation},
        )


def with_retry_async(
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
    wrap_errors: bool = True,
    default_error: type[PipelineError] = PipelineError,
):
    """
    Retry a coroutine function with jittered exponential backoff.

    Exceptions that are not PipelineErrors are wrapped through
    wrap_exception, using default_error for anything transient or
    unclassified, and the wrapped error is what the caller finally sees.

    Args:
        config: Retry schedule (DEFAULT_RETRY when omitted)
        on_retry: Called as (error, attempt, delay) before each sleep
        wrap_errors: Raise the original exception instead when False
        default_error: PipelineError subclass for wrapped transient errors

    Usage:
        @with_retry_async(config=RetryConfig(max_attempts=5), default_error=LoadFailure)
        async def submit(statement):
            ...
    """
    config = config or DEFAULT_RETRY

    def decorator(func: Callable):
        operation = func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    error = e
                    if wrap_errors and not isinstance(e, PipelineError):
                        error = wrap_exception(e, default_class=default_error)
                    category = _category_of(error).value
                    log_extra = {
                        "operation": operation,
                        "attempt": attempt + 1,
                        "max_attempts": config.max_attempts,
                        "error_type": type(error).__name__,
                        "error_category": category,
                        "error_message": str(e)[:200],
                    }

                    if not config.should_retry(error, attempt):
                        if isinstance(error, PipelineError) and not error.is_retryable:
                            logger.warning(
                                "Not retrying %s: %s", operation, str(e)[:200], extra=log_extra
                            )
                        else:
                            logger.error(
                                "Giving up on %s after %d attempt(s): %s",
                                operation,
                                attempt + 1,
                                str(e)[:200],
                                extra=log_extra,
                            )
                        if error is e:
                            raise
                        raise error from e

                    delay = config.get_delay(attempt, error)
                    server_delay = (
                        config.respect_retry_after
                        and isinstance(error, ThrottlingError)
                        and error.retry_after is not None
                    )
                    log_extra["delay_seconds"] = round(delay, 2)
                    log_extra["delay_source"] = "server" if server_delay else "backoff"
                    logger.warning("Retrying %s", operation, extra=log_extra)

                    if on_retry:
                        _notify(on_retry, error, attempt, delay, operation)
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue

                if attempt:
                    logger.info(
                        "%s succeeded on attempt %d",
                        operation,
                        attempt + 1,
                        extra={"operation": operation, "attempt": attempt + 1},
                    )
                return result

        return wrapper

    return decorator


__all__ = [
    "RetryConfig",
    "with_retry_async",
    "DEFAULT_RETRY",
]
