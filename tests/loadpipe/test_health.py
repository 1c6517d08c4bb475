"""
Unit tests for HealthCheckServer.

Test Coverage:
    - Initialization and disabled configurations
    - Lifecycle (start/stop) on a dynamic port
    - Liveness and readiness endpoints over real HTTP
    - Readiness probe callbacks and error state

No infrastructure required - all tests use real HTTP endpoints.
"""

import aiohttp
import pytest

from loadpipe.health import HealthCheckServer


async def _get(server, path):
    async with (
        aiohttp.ClientSession() as session,
        session.get(f"http://localhost:{server.actual_port}{path}") as resp,
    ):
        return resp.status, await resp.json()


@pytest.fixture
async def server():
    health = HealthCheckServer(port=0, worker_name="test-worker")
    await health.start()
    yield health
    await health.stop()


class TestInitialization:

    def test_defaults(self):
        health = HealthCheckServer(port=8080, worker_name="test-worker")

        assert health.port == 8080
        assert health.is_enabled is True
        assert health.is_ready is False
        assert health.actual_port is None

    def test_port_none_disables_server(self):
        assert HealthCheckServer(port=None).is_enabled is False

    def test_enabled_false(self):
        assert HealthCheckServer(port=8080, enabled=False).is_enabled is False

    async def test_disabled_start_is_noop(self):
        health = HealthCheckServer(port=None)
        await health.start()
        assert health.actual_port is None
        await health.stop()


class TestLifecycle:

    async def test_dynamic_port_assigned(self, server):
        assert server.actual_port is not None
        assert server.actual_port > 0

    async def test_stop_clears_port(self):
        health = HealthCheckServer(port=0)
        await health.start()
        await health.stop()
        assert health.actual_port is None

    async def test_start_twice_is_noop(self, server):
        port = server.actual_port
        await server.start()
        assert server.actual_port == port


class TestLiveness:

    async def test_alive(self, server):
        status, body = await _get(server, "/health/live")

        assert status == 200
        assert body["status"] == "alive"
        assert body["worker"] == "test-worker"
        assert body["uptime_seconds"] >= 0


class TestReadiness:

    async def test_not_ready_before_probe_set(self, server):
        status, body = await _get(server, "/health/ready")

        assert status == 503
        assert body["status"] == "not_ready"
        assert body["reasons"] == ["started"]

    async def test_ready_when_all_checks_pass(self, server):
        server.set_readiness_probe(lambda: {"driver_running": True, "accepting_work": True})

        status, body = await _get(server, "/health/ready")

        assert status == 200
        assert body["status"] == "ready"
        assert body["checks"] == {"driver_running": True, "accepting_work": True}
        assert server.is_ready

    async def test_draining_is_not_ready(self, server):
        server.set_readiness_probe(lambda: {"driver_running": True, "accepting_work": False})

        status, body = await _get(server, "/health/ready")

        assert status == 503
        assert body["reasons"] == ["accepting_work"]

    async def test_error_state(self, server):
        server.set_readiness_probe(lambda: {"driver_running": True})
        server.set_error("Fatal error: warehouse unreachable")

        status, body = await _get(server, "/health/ready")

        assert status == 503
        assert body["status"] == "error"
        assert body["error"] == "Fatal error: warehouse unreachable"
        assert not server.is_ready

        server.clear_error()
        assert server.is_ready

    async def test_probe_exception_reports_not_ready(self, server):
        def broken():
            raise RuntimeError("probe failed")

        server.set_readiness_probe(broken)

        status, body = await _get(server, "/health/ready")

        assert status == 503
        assert body["checks"] == {"probe": False}
