"""Tests for pipeline assembly and the run loop."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from config.config import _deep_merge, build_config
from core.errors.exceptions import ConfigurationError
from loadpipe.health import HealthCheckServer
from loadpipe.metrics import PrometheusMetricsSink
from loadpipe.queue import InMemoryQueue
from loadpipe.runner import (
    DRY_RUN_IAM_ROLE,
    build_object_store,
    build_pipeline,
    build_queue,
    build_target,
    run_pipeline,
    seed_sample_messages,
)
from loadpipe.staging import InMemoryObjectStore
from loadpipe.warehouse import InMemoryWarehouse


def _memory_config(**overrides):
    section = {
        "queue": {"kind": "memory", "wait_time_seconds": 0},
        "staging": {"kind": "memory", "bucket": "stage"},
        "targets": {"primary": {"kind": "memory", "table_name": "public.events"}},
        "batch": {"target_batch_size": 10, "max_wait_seconds": 0.05},
        "retry": {"max_attempts": 2, "base_delay": 0},
    }
    return build_config(_deep_merge(section, overrides))


def _redshift_target(**overrides):
    target = {
        "kind": "redshift",
        "table_name": "public.events",
        "cluster_identifier": "analytics",
        "database": "dev",
        "db_user": "loader",
        "copy_iam_role": "arn:aws:iam::123456789012:role/copy",
    }
    target.update(overrides)
    return target


class TestBuilders:

    def test_memory_queue(self):
        config = _memory_config(queue={"visibility_timeout_seconds": 45})
        queue = build_queue(config.queue)
        assert isinstance(queue, InMemoryQueue)
        assert queue.visibility_timeout_seconds == 45

    def test_sqs_queue(self):
        config = _memory_config(
            queue={"kind": "sqs", "queue_url": "https://sqs/123/events", "region": "eu-west-1"}
        )
        with patch("loadpipe.runner.SqsQueueAdapter") as adapter:
            build_queue(config.queue)
        adapter.assert_called_once_with(
            queue_url="https://sqs/123/events",
            region="eu-west-1",
            visibility_timeout_seconds=900,
        )

    def test_dry_run_forces_memory_queue(self):
        config = _memory_config(queue={"kind": "sqs", "queue_url": "https://sqs/123/events"})
        assert isinstance(build_queue(config.queue, dry_run=True), InMemoryQueue)

    def test_object_stores(self):
        config = _memory_config()
        assert isinstance(build_object_store(config.staging), InMemoryObjectStore)

        s3_config = _memory_config(staging={"kind": "s3", "bucket": "stage"})
        with patch("loadpipe.runner.S3ObjectStore") as store:
            build_object_store(s3_config.staging)
        store.assert_called_once_with(bucket="stage", region="")

    def test_memory_target_gets_placeholder_role(self):
        target = build_target(_memory_config().primary)

        assert isinstance(target.warehouse, InMemoryWarehouse)
        assert target.credentials.copy_iam_role == DRY_RUN_IAM_ROLE

    def test_redshift_target(self):
        config = _memory_config(targets={"primary": _redshift_target(schema_evolution=True)})

        with patch("loadpipe.runner.RedshiftDataWarehouse") as warehouse_cls:
            target = build_target(config.primary)

        assert target.warehouse is warehouse_cls.return_value
        assert warehouse_cls.call_args.kwargs["cluster_identifier"] == "analytics"
        assert target.endpoint == "analytics"
        assert target.schema_evolution is True
        assert target.credentials.copy_iam_role == "arn:aws:iam::123456789012:role/copy"

    def test_dry_run_replaces_redshift_target(self):
        config = _memory_config(targets={"primary": _redshift_target()})

        target = build_target(config.primary, dry_run=True)

        assert isinstance(target.warehouse, InMemoryWarehouse)
        # a configured role is kept
        assert target.credentials.copy_iam_role == "arn:aws:iam::123456789012:role/copy"

    def test_seed_sample_messages(self):
        queue = InMemoryQueue()
        seed_sample_messages(queue, 5)
        assert queue.remaining == 5


class TestBuildPipeline:

    def test_primary_only(self):
        pipeline = build_pipeline(_memory_config())

        assert pipeline.secondary is None
        assert pipeline.driver.fanout.secondary is None
        assert pipeline.driver.accumulator.target_batch_size == 10
        assert pipeline.driver.max_receive_wait_seconds == 0

    def test_secondary_enabled(self):
        config = _memory_config(
            targets={"secondary": {"kind": "memory", "table_name": "raw.events"}}
        )

        pipeline = build_pipeline(config)

        assert pipeline.secondary.name == "secondary"
        assert pipeline.driver.fanout.secondary_gate is not None
        assert pipeline.driver.gate is not pipeline.driver.fanout.secondary_gate

    def test_disabled_secondary_not_built(self):
        config = _memory_config(
            targets={"secondary": {"kind": "memory", "table_name": "raw.events", "enabled": False}}
        )
        assert build_pipeline(config).secondary is None

    def test_shared_metrics(self):
        pipeline = build_pipeline(_memory_config())
        assert pipeline.driver.metrics is pipeline.metrics
        assert pipeline.driver.fanout.loader.metrics is pipeline.metrics

    def test_invalid_backpressure_rejected(self):
        config = _memory_config()
        config.backpressure.saturation_delay_seconds = 2.0

        with pytest.raises(ConfigurationError):
            build_pipeline(config)

    async def test_close_closes_components(self):
        pipeline = build_pipeline(
            _memory_config(targets={"secondary": {"kind": "memory", "table_name": "raw.events"}})
        )
        await pipeline.close()
        assert pipeline.primary.warehouse.closed
        assert pipeline.secondary.warehouse.closed


class TestRunPipeline:

    async def test_dry_run_loads_samples_and_drains(self):
        registry = CollectorRegistry()
        shutdown = asyncio.Event()
        health = HealthCheckServer(port=None)

        task = asyncio.create_task(
            run_pipeline(
                _memory_config(),
                shutdown,
                "loadpipe-test",
                health_server=health,
                metrics_sinks=[PrometheusMetricsSink(registry)],
                dry_run=True,
                sample_messages=25,
            )
        )
        await asyncio.sleep(0.3)
        assert health.is_ready
        shutdown.set()
        pipeline = await asyncio.wait_for(task, timeout=5)

        assert pipeline.queue.remaining == 0
        assert pipeline.metrics.total("messages_acked") == 25
        assert registry.get_sample_value("loadpipe_messages_acked_total") == 25.0
        assert pipeline.primary.warehouse.closed
        assert not health.is_ready

    async def test_driver_failure_still_closes_resources(self):
        shutdown = asyncio.Event()
        failing_run = MagicMock(side_effect=RuntimeError("driver crashed"))

        with patch("loadpipe.runner.PipelineDriver.run", failing_run), \
             patch("loadpipe.runner.Pipeline.close") as close:
            with pytest.raises(RuntimeError, match="driver crashed"):
                await run_pipeline(_memory_config(), shutdown, "loadpipe-test")

        close.assert_awaited_once()
