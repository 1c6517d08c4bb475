"""
Health check endpoints for the pipeline process.

Kubernetes-compatible probes served by aiohttp on the pipeline's event loop:
- /health/live - Liveness probe (is the process serving requests?)
- /health/ready - Readiness probe (is the driver running and not draining?)

Usage:
    health = HealthCheckServer(port=8080, worker_name="loadpipe")
    health.set_readiness_probe(lambda: {"driver_running": driver.is_running})
    await health.start()
    ...
    await health.stop()
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from aiohttp import web

logger = logging.getLogger(__name__)

# Port in use: errno 98 (Linux), 48 (macOS), 10048 (Windows)
_ADDRESS_IN_USE = (98, 48, 10048)


class HealthCheckServer:
    """
    HTTP server for liveness and readiness probes.

    Readiness is computed on each request from a probe callback returning
    named boolean checks; the process is ready when every check passes and
    no error state is set.
    """

    def __init__(
        self,
        port: int | None = 8080,
        worker_name: str = "loadpipe",
        enabled: bool = True,
    ):
        """
        Args:
            port: HTTP port to listen on. Use 0 for dynamic port assignment,
                  or None to disable the server
            worker_name: Name of the worker for logging and responses
            enabled: If False, start() and stop() are no-ops
        """
        self.port = port
        self.worker_name = worker_name
        self._enabled = enabled and port is not None
        self._started_at = datetime.now(UTC)
        self._probe: Callable[[], dict[str, bool]] = lambda: {"started": False}
        self._error_message: str | None = None
        self._actual_port: int | None = None

        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def set_readiness_probe(self, probe: Callable[[], dict[str, bool]]) -> None:
        self._probe = probe

    def set_error(self, error_message: str) -> None:
        """Report not-ready with a reason, e.g. after a startup failure."""
        self._error_message = error_message
        logger.error(
            f"Health check error state set: {error_message}",
            extra={"error": error_message},
        )

    def clear_error(self) -> None:
        self._error_message = None

    def _checks(self) -> dict[str, bool]:
        try:
            return dict(self._probe())
        except Exception as e:
            logger.warning(
                "Readiness probe raised",
                extra={"error_message": str(e)[:200]},
            )
            return {"probe": False}

    @property
    def is_ready(self) -> bool:
        checks = self._checks()
        return self._error_message is None and bool(checks) and all(checks.values())

    async def handle_liveness(self, request: web.Request) -> web.Response:
        uptime_seconds = int((datetime.now(UTC) - self._started_at).total_seconds())
        return web.json_response(
            {
                "status": "alive",
                "worker": self.worker_name,
                "uptime_seconds": uptime_seconds,
                "timestamp": datetime.now(UTC).isoformat(),
            },
            status=200,
        )

    async def handle_readiness(self, request: web.Request) -> web.Response:
        checks = self._checks()

        if self._error_message:
            return web.json_response(
                {
                    "status": "error",
                    "worker": self.worker_name,
                    "error": self._error_message,
                    "checks": checks,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
                status=503,
            )

        ready = bool(checks) and all(checks.values())
        body = {
            "status": "ready" if ready else "not_ready",
            "worker": self.worker_name,
            "checks": checks,
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if not ready:
            body["reasons"] = [name for name, ok in checks.items() if not ok]
        return web.json_response(body, status=200 if ready else 503)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health/live", self.handle_liveness)
        app.router.add_get("/health/ready", self.handle_readiness)
        return app

    async def _try_start_on_port(self, port: int) -> bool:
        try:
            self._runner = web.AppRunner(self.create_app())
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, "0.0.0.0", port, reuse_address=True)
            await self._site.start()
        except OSError as e:
            if e.errno in _ADDRESS_IN_USE:
                if self._runner:
                    await self._runner.cleanup()
                self._runner = None
                self._site = None
                return False
            raise

        server = self._site._server
        if server is not None and getattr(server, "sockets", None):
            self._actual_port = server.sockets[0].getsockname()[1]
        else:
            self._actual_port = port
        return True

    async def start(self) -> None:
        """
        Start listening. Falls back to a dynamic port when the configured one
        is taken; any other startup failure disables health checks.
        """
        if not self._enabled or self._runner is not None:
            return

        try:
            started = await self._try_start_on_port(self.port)
            if not started and self.port != 0:
                logger.warning(
                    f"Port {self.port} in use, falling back to dynamic port assignment",
                )
                started = await self._try_start_on_port(0)
        except Exception as e:
            logger.error(
                f"Failed to start health check server: {e}",
                exc_info=True,
            )
            started = False

        if not started:
            logger.warning("Continuing without health checks")
            self._enabled = False
            return

        logger.info(
            "Health check server started",
            extra={
                "operation": "health_server",
                "liveness_endpoint": f"http://localhost:{self._actual_port}/health/live",
                "readiness_endpoint": f"http://localhost:{self._actual_port}/health/ready",
            },
        )

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        self._site = None
        self._actual_port = None
        logger.info("Health check server stopped")

    @property
    def actual_port(self) -> int | None:
        return self._actual_port

    @property
    def is_enabled(self) -> bool:
        return self._enabled


__all__ = ["HealthCheckServer"]
