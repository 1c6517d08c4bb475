"""Amazon Redshift client over the Redshift Data API."""

import asyncio
import logging
import time
from typing import Any

import boto3

from core.errors.exceptions import (
    PermanentError,
    PipelineError,
    WarehouseError,
    classify_exception,
    wrap_exception,
)
from core.types import ErrorCategory
from loadpipe.types import LoadJobStatus, StatementDescription
from loadpipe.warehouse.statements import split_table_name

logger = logging.getLogger(__name__)

# Data API statement states -> load job states
_STATUS_MAP = {
    "SUBMITTED": LoadJobStatus.SUBMITTED,
    "PICKED": LoadJobStatus.SUBMITTED,
    "STARTED": LoadJobStatus.RUNNING,
    "FINISHED": LoadJobStatus.FINISHED,
    "FAILED": LoadJobStatus.FAILED,
    "ABORTED": LoadJobStatus.FAILED,
}

_VALUE_KEYS = ("stringValue", "longValue", "doubleValue", "booleanValue")

DEFAULT_JOB_COUNT_QUERY = "SELECT COUNT(*) FROM stv_inflight"


def _statement_error(message: str, job_id: str) -> PipelineError:
    """Failed statements carry only error text; classify it like any other error."""
    context = {"external_job_id": job_id}
    if classify_exception(Exception(message)) == ErrorCategory.PERMANENT:
        return PermanentError(message, context=context)
    return WarehouseError(message, context=context)


def _field_value(cell: dict[str, Any]) -> Any:
    if cell.get("isNull"):
        return None
    for key in _VALUE_KEYS:
        if key in cell:
            return cell[key]
    return None


class RedshiftDataWarehouse:
    """
    Warehouse client for a provisioned cluster or a serverless workgroup.

    Every call goes through the Data API, which is asynchronous: statements
    are submitted, then described until they finish. Load statements are
    polled by the bulk loader; the short introspection statements issued
    here are awaited internally.
    """

    def __init__(
        self,
        database: str,
        cluster_identifier: str = "",
        workgroup_name: str = "",
        db_user: str = "",
        secret_arn: str = "",
        region: str | None = None,
        job_count_query: str = DEFAULT_JOB_COUNT_QUERY,
        statement_poll_seconds: float = 0.5,
        statement_timeout_seconds: float = 120.0,
        client: Any | None = None,
    ):
        if not (cluster_identifier or workgroup_name):
            raise ValueError("cluster_identifier or workgroup_name is required")
        self.database = database
        self.cluster_identifier = cluster_identifier
        self.workgroup_name = workgroup_name
        self.db_user = db_user
        self.secret_arn = secret_arn
        self.job_count_query = job_count_query
        self.statement_poll_seconds = statement_poll_seconds
        self.statement_timeout_seconds = statement_timeout_seconds
        self._client = client or boto3.client("redshift-data", region_name=region or None)

    def _connection_params(self) -> dict[str, str]:
        params = {"Database": self.database}
        if self.workgroup_name:
            params["WorkgroupName"] = self.workgroup_name
        else:
            params["ClusterIdentifier"] = self.cluster_identifier
        if self.secret_arn:
            params["SecretArn"] = self.secret_arn
        elif self.db_user:
            params["DbUser"] = self.db_user
        return params

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self._client, operation), **kwargs)
        except Exception as e:
            raise wrap_exception(
                e, default_class=WarehouseError, context={"operation": operation}
            ) from e

    async def submit(self, statement: str, parameters: list[dict[str, str]] | None = None) -> str:
        kwargs: dict[str, Any] = {"Sql": statement, **self._connection_params()}
        if parameters:
            kwargs["Parameters"] = parameters
        response = await self._call("execute_statement", **kwargs)
        logger.debug(
            "Submitted statement",
            extra={"external_job_id": response["Id"], "statement": statement[:500]},
        )
        return response["Id"]

    async def describe(self, job_id: str) -> StatementDescription:
        response = await self._call("describe_statement", Id=job_id)
        raw_status = response.get("Status", "")
        status = _STATUS_MAP.get(raw_status)
        if status is None:
            raise WarehouseError(
                f"Unknown statement status '{raw_status}'", context={"external_job_id": job_id}
            )
        rows = response.get("ResultRows")
        return StatementDescription(
            status=status,
            # -1 means the statement returns no result set
            rows_affected=rows if isinstance(rows, int) and rows >= 0 else None,
            error=response.get("Error"),
        )

    async def _execute(
        self, statement: str, parameters: list[dict[str, str]] | None = None
    ) -> str:
        """Run a short statement to completion and return its id."""
        job_id = await self.submit(statement, parameters)
        deadline = time.monotonic() + self.statement_timeout_seconds
        while True:
            description = await self.describe(job_id)
            if description.status == LoadJobStatus.FINISHED:
                return job_id
            if description.status == LoadJobStatus.FAILED:
                raise _statement_error(description.error or "statement failed", job_id)
            if time.monotonic() >= deadline:
                raise WarehouseError(
                    f"Statement did not finish within {self.statement_timeout_seconds}s",
                    context={"external_job_id": job_id},
                )
            await asyncio.sleep(self.statement_poll_seconds)

    async def _query(
        self, statement: str, parameters: list[dict[str, str]] | None = None
    ) -> list[list[Any]]:
        job_id = await self._execute(statement, parameters)
        rows: list[list[Any]] = []
        next_token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"Id": job_id}
            if next_token:
                kwargs["NextToken"] = next_token
            response = await self._call("get_statement_result", **kwargs)
            rows.extend([_field_value(cell) for cell in record] for record in response.get("Records", []))
            next_token = response.get("NextToken")
            if not next_token:
                return rows

    async def list_columns(self, table: str) -> list[str]:
        schema, name = split_table_name(table)
        rows = await self._query(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = :schema AND table_name = :table",
            parameters=[
                {"name": "schema", "value": schema},
                {"name": "table", "value": name},
            ],
        )
        return [row[0] for row in rows if row and row[0]]

    async def add_column(self, table: str, name: str, column_type: str) -> None:
        await self._execute(f"ALTER TABLE {table} ADD COLUMN {name} {column_type}")

    async def concurrent_job_count(self) -> int:
        rows = await self._query(self.job_count_query)
        if not rows or rows[0][0] is None:
            return 0
        return int(rows[0][0])

    async def close(self) -> None:
        await asyncio.to_thread(self._client.close)
