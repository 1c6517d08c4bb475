"""
Pipeline assembly and execution.

Builds the queue, staging, warehouse and driver components from a
LoaderConfig and runs the driver until the shutdown event is set. With
``dry_run`` every external service is replaced by its in-memory fake.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from config.config import LoaderConfig, QueueConfig, StagingConfig, TargetConfig
from core.logging.context import set_log_context
from core.logging.periodic_logger import PeriodicStatsLogger
from core.resilience.retry import RetryConfig
from loadpipe.accumulator import BatchAccumulator
from loadpipe.backpressure import BackpressureController, BackpressurePolicy
from loadpipe.driver import PipelineDriver
from loadpipe.fanout import FanoutCoordinator
from loadpipe.health import HealthCheckServer
from loadpipe.loader import BulkLoader
from loadpipe.metrics import MetricsSink, PipelineMetrics
from loadpipe.queue import InMemoryQueue, QueueAdapter, SqsQueueAdapter
from loadpipe.staging import InMemoryObjectStore, ObjectStore, S3ObjectStore, StagingArea
from loadpipe.types import SinkTarget, TargetCredentials
from loadpipe.warehouse import InMemoryWarehouse, RedshiftDataWarehouse

logger = logging.getLogger(__name__)

STAGE_NAME = "loadpipe"

# Stand-in role so COPY statements can be built against the in-memory warehouse
DRY_RUN_IAM_ROLE = "arn:aws:iam::000000000000:role/loadpipe-dry-run"


@dataclass
class Pipeline:
    """Assembled components of one pipeline process."""

    driver: PipelineDriver
    queue: QueueAdapter
    staging: StagingArea
    primary: SinkTarget
    secondary: SinkTarget | None
    metrics: PipelineMetrics

    async def close(self) -> None:
        await self.queue.close()
        await self.primary.warehouse.close()
        if self.secondary is not None:
            await self.secondary.warehouse.close()


def build_queue(config: QueueConfig, dry_run: bool = False) -> QueueAdapter:
    if dry_run or config.kind == "memory":
        return InMemoryQueue(visibility_timeout_seconds=config.visibility_timeout_seconds)
    return SqsQueueAdapter(
        queue_url=config.queue_url,
        region=config.region,
        visibility_timeout_seconds=config.visibility_timeout_seconds,
    )


def build_object_store(config: StagingConfig, dry_run: bool = False) -> ObjectStore:
    if dry_run or config.kind == "memory":
        return InMemoryObjectStore(bucket=config.bucket or "memory")
    return S3ObjectStore(bucket=config.bucket, region=config.region)


def build_target(config: TargetConfig, dry_run: bool = False) -> SinkTarget:
    in_memory = dry_run or config.kind == "memory"
    if in_memory:
        warehouse = InMemoryWarehouse(name=config.name)
    else:
        warehouse = RedshiftDataWarehouse(
            database=config.database,
            cluster_identifier=config.cluster_identifier,
            workgroup_name=config.workgroup_name,
            db_user=config.db_user,
            secret_arn=config.secret_arn,
            region=config.region,
            job_count_query=config.job_count_query,
        )

    copy_iam_role = config.copy_iam_role
    if in_memory and not (copy_iam_role or config.access_key_id):
        copy_iam_role = DRY_RUN_IAM_ROLE

    return SinkTarget(
        name=config.name,
        table_name=config.table_name,
        warehouse=warehouse,
        endpoint=config.endpoint,
        credentials=TargetCredentials(
            db_user=config.db_user,
            secret_arn=config.secret_arn,
            copy_iam_role=copy_iam_role,
            access_key_id=config.access_key_id,
            secret_access_key=config.secret_access_key,
        ),
        concurrency_limit=config.concurrency_limit,
        enabled=config.enabled,
        schema_evolution=config.schema_evolution,
        poll_interval_seconds=config.poll_interval_seconds,
        max_wait_seconds=config.max_wait_seconds,
    )


def build_pipeline(
    config: LoaderConfig,
    metrics_sinks: list[MetricsSink] | None = None,
    dry_run: bool = False,
) -> Pipeline:
    metrics = PipelineMetrics(metrics_sinks)
    retry = RetryConfig.from_mapping(config.retry)

    bp = config.backpressure
    policy = BackpressurePolicy(
        low_water_mark=bp.low_water_mark,
        steps=list(bp.steps),
        saturation_mark=bp.saturation_mark,
        saturation_delay_seconds=bp.saturation_delay_seconds,
        unknown_delay_seconds=bp.unknown_delay_seconds,
    )
    policy.validate()

    staging = StagingArea(
        build_object_store(config.staging, dry_run),
        prefix=config.staging.prefix,
        max_records_per_part=config.staging.max_records_per_part,
        retention_seconds=config.staging.retention_seconds,
    )

    primary = build_target(config.primary, dry_run)
    secondary = None
    if config.secondary_enabled:
        secondary = build_target(config.secondary, dry_run)

    loader = BulkLoader(staging, retry_config=retry, metrics=metrics)
    fanout = FanoutCoordinator(
        loader,
        primary,
        secondary=secondary,
        secondary_gate=BackpressureController(policy) if secondary else None,
        metrics=metrics,
    )

    queue = build_queue(config.queue, dry_run)
    driver = PipelineDriver(
        queue=queue,
        accumulator=BatchAccumulator(
            config.batch.target_batch_size, config.batch.max_wait_seconds
        ),
        gate=BackpressureController(policy),
        fanout=fanout,
        staging=staging,
        metrics=metrics,
        max_messages=config.queue.max_messages,
        max_receive_wait_seconds=config.queue.wait_time_seconds,
        delete_unparseable=config.queue.delete_unparseable,
        retry_backoff_seconds=config.batch.retry_backoff_seconds,
        flush_on_shutdown=config.batch.flush_on_shutdown,
        cleanup_interval_seconds=config.staging.cleanup_interval_seconds,
    )
    return Pipeline(
        driver=driver,
        queue=queue,
        staging=staging,
        primary=primary,
        secondary=secondary,
        metrics=metrics,
    )


def seed_sample_messages(queue: InMemoryQueue, count: int) -> None:
    """Enqueue synthetic events for a dry run."""
    for i in range(count):
        queue.send(
            {
                "id": f"sample-{i}",
                "timestamp": datetime.now(UTC).isoformat(),
                "data": {"event_name": "dry_run", "sequence": i},
            }
        )


async def run_pipeline(
    config: LoaderConfig,
    shutdown_event: asyncio.Event,
    worker_id: str,
    health_server: HealthCheckServer | None = None,
    metrics_sinks: list[MetricsSink] | None = None,
    dry_run: bool = False,
    sample_messages: int = 0,
) -> Pipeline:
    """
    Run the pipeline until shutdown_event is set.

    The driver finishes its in-flight commit and drains its buffer before
    this returns. Returns the pipeline so callers can inspect final state.
    """
    set_log_context(stage=STAGE_NAME, worker_id=worker_id)
    pipeline = build_pipeline(config, metrics_sinks=metrics_sinks, dry_run=dry_run)
    driver = pipeline.driver

    if dry_run and sample_messages and isinstance(pipeline.queue, InMemoryQueue):
        seed_sample_messages(pipeline.queue, sample_messages)

    if health_server is not None:
        health_server.set_readiness_probe(
            lambda: {
                "driver_running": driver.is_running,
                "accepting_work": not driver.stop_requested,
            }
        )

    stats_logger = PeriodicStatsLogger(
        interval_seconds=config.observability.metrics_flush_interval_seconds,
        get_stats=driver.cycle_stats,
        stage=STAGE_NAME,
        worker_id=worker_id,
    )

    async def stop_on_shutdown() -> None:
        await shutdown_event.wait()
        driver.stop()

    watcher = asyncio.create_task(stop_on_shutdown(), name="loadpipe-shutdown-watcher")
    stats_logger.start()
    try:
        await driver.run()
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        await stats_logger.stop()
        await pipeline.close()
        logger.info("Pipeline resources closed")

    return pipeline
