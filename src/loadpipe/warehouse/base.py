"""Warehouse client protocol: bulk-load submission and schema introspection."""

from typing import Protocol

from loadpipe.types import StatementDescription


class WarehouseClient(Protocol):

    async def submit(self, statement: str) -> str:
        """Submit a statement asynchronously and return its external job id."""
        ...

    async def describe(self, job_id: str) -> StatementDescription:
        ...

    async def list_columns(self, table: str) -> list[str]:
        ...

    async def add_column(self, table: str, name: str, column_type: str) -> None:
        """Add one column. Raises if the column already exists."""
        ...

    async def concurrent_job_count(self) -> int:
        """Jobs currently running on the warehouse (eventually consistent)."""
        ...

    async def close(self) -> None:
        ...
