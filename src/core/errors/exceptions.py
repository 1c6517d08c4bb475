"""
Unified exception hierarchy for the bulk-load pipeline.

Provides typed exceptions with retry classification so that every stage
(parsing, staging, schema sync, loading, cleanup) can decide whether a
failure is retried, logged, or fatal to the batch.
"""

# Import ErrorCategory from canonical source to avoid duplicate enum issues
# (comparing enums from different classes always returns False)
from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.category in (
            ErrorCategory.TRANSIENT,
            ErrorCategory.AUTH,
            ErrorCategory.UNKNOWN,
        )

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {self.cause}")
        return " | ".join(parts)


# =============================================================================
# Base categories
# =============================================================================


class AuthError(PipelineError):
    """Expired or invalid credentials."""

    category = ErrorCategory.AUTH


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class ThrottlingError(TransientError):
    """Rate limited by the service - should back off."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.retry_after = retry_after  # Seconds to wait if provided


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Invalid or incomplete configuration."""

    pass


# =============================================================================
# Domain-Specific Errors
# =============================================================================


class ParseFailure(PermanentError):
    """Malformed queue message. Dropped and counted, never blocks a batch."""

    def __init__(
        self,
        message: str,
        message_id: str | None = None,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.message_id = message_id


class QueueError(TransientError):
    """Error from queue receive/delete operations."""

    pass


class StageFailure(TransientError):
    """Writing a batch to the staging store failed."""

    pass


class SchemaSyncFailure(PipelineError):
    """
    Additive schema migration failed.

    The category is taken from the underlying cause: exhausted transient
    retries stay TRANSIENT (the load may proceed), anything else is
    PERMANENT (the batch is retained for retry).
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        super().__init__(message, cause, context)
        self.category = category


class WarehouseError(TransientError):
    """Error returned by a warehouse statement or API call."""

    pass


class LoadFailure(TransientError):
    """Bulk-load job failed on the target."""

    pass


class LoadTimeoutError(LoadFailure):
    """Bulk-load job did not reach a terminal state within the max wait."""

    pass


class CleanupFailure(TransientError):
    """Deleting staged objects failed. Logged, never propagated."""

    pass


# =============================================================================
# Error Classification Utilities
# =============================================================================

# Markers for string-based detection (fallback for non-PipelineError exceptions)
AUTH_ERROR_MARKERS = frozenset(
    {
        "401",
        "unauthorized",
        "expiredtoken",
        "token expired",
        "security token included in the request is expired",
        "invalidclienttokenid",
        "signaturedoesnotmatch",
    }
)

TRANSIENT_ERROR_MARKERS = frozenset(
    {
        "429",
        "503",
        "502",
        "504",
        "timeout",
        "timed out",
        "connection",
        "throttl",
        "rate exceeded",
        "slow down",
        "temporarily unavailable",
        "service unavailable",
    }
)


def is_auth_error(exc: Exception) -> bool:
    """Check if exception is credential-related."""
    if isinstance(exc, PipelineError):
        return exc.category == ErrorCategory.AUTH

    error_str = str(exc).lower()
    return any(marker in error_str for marker in AUTH_ERROR_MARKERS)


def is_transient_error(exc: Exception) -> bool:
    """Check if exception is transient (retriable)."""
    if isinstance(exc, PipelineError):
        return exc.category == ErrorCategory.TRANSIENT

    error_str = str(exc).lower()
    return any(marker in error_str for marker in TRANSIENT_ERROR_MARKERS)


def is_retryable_error(exc: Exception) -> bool:
    """
    Check if exception should be retried.

    Retryable errors include transient, auth and unknown errors.
    Permanent errors (access denied, validation, bad SQL) are not.
    """
    if isinstance(exc, PipelineError):
        return exc.is_retryable

    category = classify_exception(exc)
    return category in (
        ErrorCategory.TRANSIENT,
        ErrorCategory.AUTH,
        ErrorCategory.UNKNOWN,
    )


def classify_exception(exc: Exception) -> ErrorCategory:
    """Classify an exception into error category."""
    if isinstance(exc, PipelineError):
        return exc.category

    # botocore ClientError carries a structured error code
    error_code = _extract_client_error_code(exc)
    if error_code:
        # Imported lazily: classifiers imports this module
        from core.errors.classifiers import classify_aws_error_code

        category = classify_aws_error_code(error_code)
        if category is not None:
            return category

    exc_type = type(exc).__name__.lower()
    exc_str = str(exc).lower()

    connection_markers = (
        "connectionerror",
        "connection refused",
        "connection reset",
        "connection aborted",
        "endpointconnectionerror",
        "name resolution",
        "broken pipe",
    )
    if any(m in exc_type or m in exc_str for m in connection_markers):
        return ErrorCategory.TRANSIENT

    if "timeout" in exc_type or "timeout" in exc_str:
        return ErrorCategory.TRANSIENT

    if any(m in exc_str for m in AUTH_ERROR_MARKERS):
        return ErrorCategory.AUTH

    if "429" in exc_str or "throttl" in exc_str or "rate exceeded" in exc_str:
        return ErrorCategory.TRANSIENT

    if "503" in exc_str or "502" in exc_str or "504" in exc_str:
        return ErrorCategory.TRANSIENT

    if "403" in exc_str or "access denied" in exc_str or "permission denied" in exc_str:
        return ErrorCategory.PERMANENT

    if "404" in exc_str or "does not exist" in exc_str or "not found" in exc_str:
        return ErrorCategory.PERMANENT

    if "syntax error" in exc_str or "validation" in exc_str:
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def _extract_client_error_code(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return None
    return response.get("Error", {}).get("Code")


def wrap_exception(
    exc: Exception,
    default_class: type = PipelineError,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a generic exception in appropriate PipelineError subclass."""
    if isinstance(exc, PipelineError):
        if context:
            exc.context.update(context)
        return exc

    category = classify_exception(exc)
    exc_str = str(exc).lower()
    context = context or {}

    error_code = _extract_client_error_code(exc)
    if error_code:
        context["error_code"] = error_code
    elif "timeout" in exc_str:
        context["error_type"] = "timeout"
    elif "throttl" in exc_str or "429" in exc_str:
        context["error_type"] = "throttling"

    if category == ErrorCategory.AUTH:
        return AuthError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.TRANSIENT:
        from core.errors.classifiers import is_throttling_code

        throttled = error_code is not None and is_throttling_code(error_code)
        if throttled or "throttl" in exc_str or "429" in exc_str or "rate exceeded" in exc_str:
            return ThrottlingError(str(exc), cause=exc, context=context)
        if issubclass(default_class, TransientError):
            return default_class(str(exc), cause=exc, context=context)
        return TransientError(str(exc), cause=exc, context=context)

    if category == ErrorCategory.PERMANENT:
        return PermanentError(str(exc), cause=exc, context=context)

    return default_class(str(exc), cause=exc, context=context)
