"""
Scripted in-memory warehouse for tests and dry runs.

Load outcomes are queued per submitted statement; once the script runs out
every statement ends with ``default_outcome``. A RUNNING outcome never
finishes, which is how timeouts are exercised.
"""

import asyncio
import uuid
from collections import deque

from loadpipe.types import LoadJobStatus, StatementDescription
from loadpipe.warehouse.statements import split_table_name


class InMemoryWarehouse:

    def __init__(
        self,
        name: str = "memory",
        outcomes: list[LoadJobStatus] | None = None,
        default_outcome: LoadJobStatus = LoadJobStatus.FINISHED,
        rows_affected: int | None = None,
        running_polls: int = 0,
        columns: dict[str, set[str]] | None = None,
        job_count: int = 0,
    ):
        self.name = name
        self.outcomes: deque[LoadJobStatus] = deque(outcomes or [])
        self.default_outcome = default_outcome
        self.rows_affected = rows_affected
        self.running_polls = running_polls
        self.columns: dict[str, set[str]] = {
            table: {c.lower() for c in cols} for table, cols in (columns or {}).items()
        }
        self.job_count = job_count
        # consumed one per read before falling back to job_count
        self.job_counts: deque[int] = deque()

        self.error_message = "simulated load failure"
        self.submit_failures = 0
        self.fail_job_count = False
        self.list_columns_error: Exception | None = None
        self.add_column_error: Exception | None = None

        self.statements: list[str] = []
        self.added_columns: list[tuple[str, str, str]] = []
        self.describe_calls = 0
        self.job_count_reads = 0
        self.closed = False
        self._jobs: dict[str, list] = {}

    async def submit(self, statement: str) -> str:
        await asyncio.sleep(0)
        if self.submit_failures > 0:
            self.submit_failures -= 1
            raise ConnectionError("simulated connection reset on submit")
        job_id = uuid.uuid4().hex
        outcome = self.outcomes.popleft() if self.outcomes else self.default_outcome
        self.statements.append(statement)
        # [final outcome, RUNNING polls left]
        self._jobs[job_id] = [outcome, self.running_polls]
        return job_id

    async def describe(self, job_id: str) -> StatementDescription:
        await asyncio.sleep(0)
        self.describe_calls += 1
        job = self._jobs[job_id]
        outcome, polls_left = job
        if outcome == LoadJobStatus.RUNNING or polls_left > 0:
            job[1] = max(polls_left - 1, 0)
            return StatementDescription(status=LoadJobStatus.RUNNING)
        if outcome == LoadJobStatus.FINISHED:
            return StatementDescription(status=outcome, rows_affected=self.rows_affected)
        return StatementDescription(status=outcome, error=self.error_message)

    def _table(self, table: str) -> set[str]:
        schema, name = split_table_name(table)
        return self.columns.setdefault(f"{schema}.{name}", set())

    async def list_columns(self, table: str) -> list[str]:
        await asyncio.sleep(0)
        if self.list_columns_error is not None:
            raise self.list_columns_error
        return sorted(self._table(table))

    async def add_column(self, table: str, name: str, column_type: str) -> None:
        await asyncio.sleep(0)
        if self.add_column_error is not None:
            raise self.add_column_error
        existing = self._table(table)
        if name.lower() in existing:
            raise RuntimeError(f'column "{name}" of relation "{table}" already exists')
        existing.add(name.lower())
        self.added_columns.append((table, name, column_type))

    async def concurrent_job_count(self) -> int:
        await asyncio.sleep(0)
        self.job_count_reads += 1
        if self.fail_job_count:
            raise ConnectionError("simulated failure reading job count")
        if self.job_counts:
            return self.job_counts.popleft()
        return self.job_count

    async def close(self) -> None:
        self.closed = True
