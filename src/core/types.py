"""
Core types shared across modules.

Kept dependency-free so that errors, retry and the pipeline can all import
the same enum without circular imports.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., throttling, network timeouts, 5xx responses)
        AUTH: Credential failures that may succeed after a refresh
              (e.g., expired session tokens)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., access denied, malformed statements, bad input)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = ["ErrorCategory"]
