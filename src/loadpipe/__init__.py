"""
Loadpipe: batch bulk-loading from a durable queue into data warehouses.

Messages are received from a queue, accumulated into batches, admitted
through a backpressure gate, staged as NDJSON and bulk-loaded into a
primary warehouse target and, optionally, a secondary one. A batch is
acknowledged only when the primary load finished.

Subpackages:
    queue      - Queue adapters (SQS, in-memory)
    staging    - Object stores (S3, in-memory) and the staging lifecycle
    warehouse  - Warehouse clients (Redshift Data API, in-memory) and COPY builders

Architecture:
    queue → BatchAccumulator → BackpressureController → FanoutCoordinator
                                                            ├─ BulkLoader → primary
                                                            └─ BulkLoader → secondary (optional)
          ← delete (ack) only when the primary load is FINISHED

Dependencies:
    - core.*: Errors, retry, logging and utilities
    - boto3: SQS, S3 and Redshift Data API clients
    - pydantic: Message envelope validation
"""

from config.config import LoaderConfig
from core import __version__

__all__ = ["LoaderConfig", "__version__"]
