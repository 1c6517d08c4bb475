"""
Core library: reusable, infrastructure-agnostic components.

Modules:
    errors      - Error classification and exception hierarchy
    resilience  - Retry with exponential backoff and jitter
    logging     - Structured JSON logging with context propagation
    utils       - JSON serialization and worker identifiers

Nothing in this package knows about queues, object stores or warehouses.
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = ["ErrorCategory"]
