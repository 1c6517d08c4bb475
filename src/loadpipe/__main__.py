"""Bulk-load pipeline process. Use --help for usage."""

import argparse
import asyncio
import logging
import os
import socket
import sys
from pathlib import Path

from dotenv import load_dotenv
from prometheus_client import CollectorRegistry, start_http_server

from config.config import load_config
from core import __version__
from core.logging.setup import setup_logging
from core.logging.utilities import log_startup_banner, log_worker_error
from core.utils import generate_worker_id
from loadpipe.health import HealthCheckServer
from loadpipe.metrics import PrometheusMetricsSink
from loadpipe.runner import STAGE_NAME, run_pipeline
from loadpipe.signals import setup_shutdown_signal_handlers

# __main__.py is at src/loadpipe/__main__.py, so the project root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

DRY_RUN_SAMPLE_MESSAGES = 25

logger = logging.getLogger(__name__)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").lower() in ("true", "1", "yes")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the batch bulk-load pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run against the configured queue and warehouse(s)
    python -m loadpipe

    # Use a custom config file
    python -m loadpipe --config /etc/loadpipe/config.yaml

    # Exercise the whole pipeline against in-memory fakes
    python -m loadpipe --dry-run --log-level DEBUG --log-to-stdout
        """,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: src/config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or config)",
    )
    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Port for Prometheus metrics server (default: from config)",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Port for health check server (default: from config)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Replace queue, staging and warehouses with in-memory fakes "
        f"seeded with {DRY_RUN_SAMPLE_MESSAGES} sample messages",
    )
    return parser.parse_args(argv)


def start_metrics_server(preferred_port: int, registry: CollectorRegistry) -> int:
    """Start Prometheus metrics server with automatic port fallback.
    Returns actual port number that the server is listening on."""
    try:
        start_http_server(preferred_port, registry=registry)
        return preferred_port
    except OSError as e:
        if e.errno != 98:
            raise
        logger.info(
            "Port already in use, finding available port",
            extra={"operation": "metrics_server"},
        )
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            available_port = s.getsockname()[1]
        start_http_server(available_port, registry=registry)
        return available_port


async def _serve(args: argparse.Namespace, config, worker_id: str) -> None:
    shutdown_event = asyncio.Event()
    setup_shutdown_signal_handlers(asyncio.get_running_loop(), shutdown_event.set)

    health_port = args.health_port if args.health_port is not None else config.observability.health_port
    health_server = HealthCheckServer(port=health_port, worker_name=STAGE_NAME)
    await health_server.start()

    registry = CollectorRegistry()
    metrics_port = args.metrics_port if args.metrics_port is not None else config.observability.metrics_port
    actual_metrics_port = start_metrics_server(metrics_port, registry)

    secondary = config.secondary
    log_startup_banner(
        logger,
        worker_name="Bulk Load Pipeline" + (" (dry run)" if args.dry_run else ""),
        version=__version__,
        worker_id=worker_id,
        queue=config.queue.queue_url or config.queue.kind,
        primary=f"{config.primary.table_name} @ {config.primary.endpoint or config.primary.kind}",
        secondary=f"{secondary.table_name} @ {secondary.endpoint or secondary.kind}"
        if config.secondary_enabled
        else "disabled",
        batch=f"{config.batch.target_batch_size} messages / {config.batch.max_wait_seconds}s",
        health_port=health_server.actual_port,
        metrics_port=actual_metrics_port,
    )

    try:
        await run_pipeline(
            config,
            shutdown_event,
            worker_id,
            health_server=health_server,
            metrics_sinks=[PrometheusMetricsSink(registry)],
            dry_run=args.dry_run,
            sample_messages=DRY_RUN_SAMPLE_MESSAGES if args.dry_run else 0,
        )
    except Exception as e:
        log_worker_error(logger, f"Pipeline failed: {e}", exc=e)
        health_server.set_error(f"Fatal error: {e}")
        raise
    finally:
        await health_server.stop()


def main(argv: list[str] | None = None) -> int:
    global logger

    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)
    worker_id = os.getenv("WORKER_ID") or generate_worker_id(STAGE_NAME)

    try:
        config = load_config(args.config, memory_only=args.dry_run)
    except (ValueError, FileNotFoundError, KeyError) as e:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger(__name__).error("Configuration error: %s", e)
        return 2

    log_dir = Path(args.log_dir or os.getenv("LOG_DIR") or config.observability.log_dir)
    setup_logging(
        name=STAGE_NAME,
        stage=STAGE_NAME,
        log_dir=log_dir,
        json_format=config.observability.json_logs,
        console_level=getattr(logging, args.log_level),
        worker_id=worker_id,
        log_to_stdout=args.log_to_stdout or _env_flag("LOG_TO_STDOUT"),
    )
    logger = logging.getLogger(__name__)

    try:
        asyncio.run(_serve(args, config, worker_id))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except Exception:
        return 1
    logger.info("Pipeline shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
