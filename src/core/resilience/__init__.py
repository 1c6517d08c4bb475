"""
Resilience patterns module.

Components:
    - RetryConfig: Exponential backoff configuration
    - @with_retry_async decorator: Retry with jitter for coroutines

Admission control against the warehouse lives in loadpipe.backpressure,
since it depends on the target's reported job count.
"""

from .retry import (
    DEFAULT_RETRY,
    RetryConfig,
    with_retry_async,
)

__all__ = [
    "RetryConfig",
    "with_retry_async",
    "DEFAULT_RETRY",
]
