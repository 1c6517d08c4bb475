"""Pipeline data model: messages, batches, sink targets, load jobs and commits."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from loadpipe.warehouse.base import WarehouseClient


@dataclass(frozen=True)
class QueueMessage:
    """Raw message as delivered by a queue adapter, before parsing."""

    message_id: str
    receipt_token: str
    body: str
    enqueued_at: datetime


@dataclass(frozen=True)
class InboundMessage:
    """Parsed queue message. Belongs to at most one batch at a time."""

    id: str
    receipt_token: str
    payload: dict[str, Any]
    enqueued_at: datetime


class TriggerReason(str, Enum):
    SIZE = "size"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class Batch:
    """Immutable group of messages flushed together for one load attempt."""

    items: tuple[InboundMessage, ...]
    trigger_reason: TriggerReason
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __len__(self) -> int:
        return len(self.items)

    @property
    def receipt_tokens(self) -> list[str]:
        return [item.receipt_token for item in self.items]

    @property
    def message_ids(self) -> list[str]:
        return [item.id for item in self.items]

    def payloads(self) -> list[dict[str, Any]]:
        return [item.payload for item in self.items]

    def observed_fields(self) -> set[str]:
        """Union of top-level payload keys across the batch."""
        fields: set[str] = set()
        for item in self.items:
            fields.update(item.payload.keys())
        return fields


@dataclass(frozen=True)
class TargetCredentials:
    """Credentials for submitting statements and for the warehouse to read staging."""

    db_user: str = ""
    secret_arn: str = ""
    copy_iam_role: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""

    def __repr__(self) -> str:
        # Never print secrets in logs or tracebacks
        return (
            f"TargetCredentials(db_user={self.db_user!r}, "
            f"copy_iam_role={self.copy_iam_role!r}, has_keys={bool(self.access_key_id)})"
        )


@dataclass
class SinkTarget:
    """
    A warehouse sink target.

    Primary and secondary targets are the same type; only configuration and
    the warehouse client implementation differ.
    """

    name: str
    table_name: str
    warehouse: WarehouseClient
    endpoint: str = ""
    credentials: TargetCredentials = field(default_factory=TargetCredentials)
    concurrency_limit: int = 15
    enabled: bool = True
    schema_evolution: bool = False
    poll_interval_seconds: float = 2.0
    max_wait_seconds: float = 360.0


@dataclass(frozen=True)
class StagedBatch:
    """Where a batch was staged for one target."""

    location: str
    keys: tuple[str, ...]
    record_count: int
    bytes_written: int
    manifest_key: str | None = None

    @property
    def uses_manifest(self) -> bool:
        return self.manifest_key is not None

    @property
    def all_keys(self) -> tuple[str, ...]:
        if self.manifest_key is None:
            return self.keys
        return (*self.keys, self.manifest_key)


class LoadJobStatus(str, Enum):
    PENDING = "PENDING"
    STAGED = "STAGED"
    SUBMITTED = "SUBMITTED"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {LoadJobStatus.FINISHED, LoadJobStatus.FAILED, LoadJobStatus.TIMED_OUT}
)

_ALLOWED_TRANSITIONS: dict[LoadJobStatus, frozenset[LoadJobStatus]] = {
    LoadJobStatus.PENDING: frozenset({LoadJobStatus.STAGED, LoadJobStatus.FAILED}),
    LoadJobStatus.STAGED: frozenset({LoadJobStatus.SUBMITTED, LoadJobStatus.FAILED}),
    LoadJobStatus.SUBMITTED: frozenset(
        {
            LoadJobStatus.RUNNING,
            LoadJobStatus.FINISHED,
            LoadJobStatus.FAILED,
            LoadJobStatus.TIMED_OUT,
        }
    ),
    LoadJobStatus.RUNNING: frozenset(
        {LoadJobStatus.FINISHED, LoadJobStatus.FAILED, LoadJobStatus.TIMED_OUT}
    ),
    LoadJobStatus.FINISHED: frozenset(),
    LoadJobStatus.FAILED: frozenset(),
    LoadJobStatus.TIMED_OUT: frozenset(),
}


@dataclass
class LoadJob:
    """One (batch, target) load attempt and its state machine."""

    target: SinkTarget
    batch: Batch
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: LoadJobStatus = LoadJobStatus.PENDING
    staging_location: str | None = None
    external_job_id: str | None = None
    rows_loaded: int = 0
    rows_verified: bool = False
    columns_added: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    error: str | None = None

    def transition(self, new_status: LoadJobStatus) -> None:
        if new_status == self.status and new_status == LoadJobStatus.RUNNING:
            return
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal load job transition {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status.is_terminal:
            self.finished_at = datetime.now(UTC)

    def fail(self, error: str, status: LoadJobStatus = LoadJobStatus.FAILED) -> None:
        self.error = error
        self.transition(status)

    @property
    def succeeded(self) -> bool:
        return self.status == LoadJobStatus.FINISHED

    @property
    def duration_ms(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


@dataclass(frozen=True)
class StatementDescription:
    """Result of describing an external warehouse job."""

    status: LoadJobStatus
    rows_affected: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class SchemaSnapshot:
    """Known columns of a table, lower-cased."""

    table_name: str
    columns: frozenset[str]

    def missing(self, candidates: set[str]) -> list[str]:
        return sorted(c for c in candidates if c.lower() not in self.columns)

    def with_columns(self, added: list[str]) -> SchemaSnapshot:
        return SchemaSnapshot(
            table_name=self.table_name,
            columns=self.columns | {c.lower() for c in added},
        )


class CommitStatus(str, Enum):
    COMMITTED = "COMMITTED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True)
class CommitResult:
    """Outcome of fanning a batch out to its targets."""

    batch: Batch
    status: CommitStatus
    primary: LoadJob
    secondary: LoadJob | None = None

    @property
    def should_acknowledge(self) -> bool:
        """Only the primary target's outcome decides the acknowledgement."""
        return self.primary.status == LoadJobStatus.FINISHED
