"""Staging store adapters and the staging lifecycle."""

from loadpipe.staging.area import StagingArea, build_manifest, serialize_record
from loadpipe.staging.base import ObjectStore, StoredObject
from loadpipe.staging.memory import InMemoryObjectStore
from loadpipe.staging.s3 import S3ObjectStore

__all__ = [
    "ObjectStore",
    "StoredObject",
    "StagingArea",
    "InMemoryObjectStore",
    "S3ObjectStore",
    "build_manifest",
    "serialize_record",
]
