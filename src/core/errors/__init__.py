"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- PipelineError hierarchy for typed exceptions
- Classification utilities for error handling
- AWS error code classification
"""

from core.errors.classifiers import (
    AWS_ERROR_CODES,
    classify_aws_error_code,
)
from core.errors.exceptions import (
    AuthError,
    CleanupFailure,
    ConfigurationError,
    ErrorCategory,
    LoadFailure,
    LoadTimeoutError,
    ParseFailure,
    PermanentError,
    PipelineError,
    QueueError,
    SchemaSyncFailure,
    StageFailure,
    ThrottlingError,
    TransientError,
    WarehouseError,
    classify_exception,
    is_auth_error,
    is_retryable_error,
    is_transient_error,
    wrap_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base classes
    "PipelineError",
    "AuthError",
    "TransientError",
    "PermanentError",
    "ThrottlingError",
    "ConfigurationError",
    # Pipeline errors
    "ParseFailure",
    "QueueError",
    "StageFailure",
    "SchemaSyncFailure",
    "WarehouseError",
    "LoadFailure",
    "LoadTimeoutError",
    "CleanupFailure",
    # Classification utilities
    "is_auth_error",
    "is_transient_error",
    "is_retryable_error",
    "classify_exception",
    "wrap_exception",
    # AWS classifiers
    "AWS_ERROR_CODES",
    "classify_aws_error_code",
]
