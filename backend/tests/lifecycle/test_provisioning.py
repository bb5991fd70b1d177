"""
NaaP Runtime - Provisioning Tests
=================================

The plugin backend is a MockTransport; with default settings a plugin on
port 4301 is checked at http://localhost:4301/healthz.
"""

from typing import Optional

import httpx
import pytest

from naap_runtime.core.lifecycle import provisioning
from naap_runtime.core.lifecycle.port_allocator import PortAllocator
from naap_runtime.core.lifecycle.provisioning import (
    Component,
    HealthCheckPolicy,
    PluginProvisioner,
    ProvisionResult,
    ProvisionStatus,
)

MANIFEST = {"backend": {"port": 4301}, "database": {"type": "postgres"}}


class BackendStub:
    """Scripted health endpoint: one outcome per call, repeating the last."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [(200, {"status": "ok"})]
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        status_code, body = outcome
        return httpx.Response(status_code, json=body)


class FailingOrchestrator:
    async def deploy(self, plugin_name: str, image: str, port: Optional[int]) -> str:
        return f"container-{plugin_name}"

    async def stop(self, container_id: str) -> None:
        raise RuntimeError("docker daemon gone")

    async def remove(self, container_id: str) -> None:
        pass

    async def restart(self, plugin_name: str) -> None:
        pass


class RecordingDatabaseManager:
    def __init__(self, fail_drop: bool = False):
        self.created: list[str] = []
        self.dropped: list[str] = []
        self.fail_drop = fail_drop

    async def create_database(self, name: str) -> None:
        self.created.append(name)

    async def drop_database(self, name: str) -> None:
        if self.fail_drop:
            raise RuntimeError("database in use")
        self.dropped.append(name)


class BrokenDeployOrchestrator(FailingOrchestrator):
    async def deploy(self, plugin_name: str, image: str, port: Optional[int]) -> str:
        raise RuntimeError("image pull failed")


class FailingDatabaseManager:
    async def create_database(self, name: str) -> None:
        raise RuntimeError("permission denied")

    async def drop_database(self, name: str) -> None:
        pass


class LogRecorder:
    def __init__(self):
        self.entries: list[tuple[str, dict]] = []

    def _record(self, event: str, **context) -> None:
        self.entries.append((event, context))

    info = warning = error = debug = _record


@pytest.fixture
def allocator() -> PortAllocator:
    return PortAllocator(min_port=4301, max_port=4310, reserved_ports=set())


def make_provisioner(allocator: PortAllocator, backend: BackendStub, **kwargs) -> PluginProvisioner:
    return PluginProvisioner(
        allocator,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(backend)),
        health_policy=HealthCheckPolicy(max_attempts=3, delay_seconds=0.01, timeout_seconds=1),
        **kwargs,
    )


# ==========================================================================
# Provisioning
# ==========================================================================

class TestProvisionInfrastructure:
    """Tests for provision_plugin_infrastructure."""

    async def test_allocates_port_and_database(self, allocator: PortAllocator):
        provisioner = make_provisioner(allocator, BackendStub())

        result = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)

        assert result.status == ProvisionStatus.PROVISIONED
        assert result.container_port == 4301
        assert result.database_name == "plugin_weather_widget"
        assert result.container_id is None

    async def test_image_deploys_container(self, allocator: PortAllocator):
        provisioner = make_provisioner(allocator, BackendStub())

        result = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST, "registry/weather:1")

        assert result.container_id.startswith("container_weather-widget_")

    async def test_frontend_only_plugin_gets_no_port(self, allocator: PortAllocator):
        provisioner = make_provisioner(allocator, BackendStub())

        result = await provisioner.provision_plugin_infrastructure("static-widget", {"frontend": {}})

        assert result.container_port is None
        assert allocator.get_pool_status()["allocated"] == 0

    async def test_failure_releases_port(self, allocator: PortAllocator):
        provisioner = make_provisioner(allocator, BackendStub(), database_manager=FailingDatabaseManager())

        result = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)

        assert result.status == ProvisionStatus.FAILED
        assert result.error == "permission denied"
        assert allocator.get_port_allocation("weather-widget") is None

    async def test_failed_deploy_drops_created_database(self, allocator: PortAllocator):
        databases = RecordingDatabaseManager()
        provisioner = make_provisioner(
            allocator, BackendStub(), orchestrator=BrokenDeployOrchestrator(), database_manager=databases
        )

        result = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST, "registry/weather:1")

        assert result.status == ProvisionStatus.FAILED
        assert result.error == "image pull failed"
        assert databases.created == databases.dropped == ["plugin_weather_widget"]
        assert result.database_name is None
        assert allocator.get_port_allocation("weather-widget") is None

    async def test_undroppable_database_stays_on_result(self, allocator: PortAllocator):
        provisioner = make_provisioner(
            allocator,
            BackendStub(),
            orchestrator=BrokenDeployOrchestrator(),
            database_manager=RecordingDatabaseManager(fail_drop=True),
        )

        result = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST, "registry/weather:1")

        assert result.status == ProvisionStatus.FAILED
        assert result.database_name == "plugin_weather_widget"
        assert allocator.get_port_allocation("weather-widget") is None

    async def test_failure_keeps_port_held_before_attempt(self, allocator: PortAllocator):
        assert await allocator.allocate_port("weather-widget") == 4301
        provisioner = make_provisioner(allocator, BackendStub(), database_manager=FailingDatabaseManager())

        result = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)

        assert result.status == ProvisionStatus.FAILED
        assert allocator.get_port_allocation("weather-widget") == 4301


# ==========================================================================
# Post-install Health
# ==========================================================================

class TestPostInstallHealthCheck:
    """Tests for perform_post_install_health_check."""

    async def test_healthy_backend_succeeds(self, allocator: PortAllocator):
        backend = BackendStub((200, {"status": "ok"}))
        provisioner = make_provisioner(allocator, backend)
        provision = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)

        health = await provisioner.perform_post_install_health_check("weather-widget", provision)

        assert health.success is True
        assert str(backend.calls[0].url) == "http://localhost:4301/healthz"
        backend_check, database_check = health.checks
        assert backend_check.component == Component.BACKEND
        assert backend_check.healthy is True
        # database connectivity is not checked yet
        assert database_check.component == Component.DATABASE
        assert database_check.verified is False

    async def test_http_error_fails_without_retry(self, allocator: PortAllocator):
        backend = BackendStub((500, {"status": "error"}))
        provisioner = make_provisioner(allocator, backend)
        provision = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)

        health = await provisioner.perform_post_install_health_check("weather-widget", provision)

        assert health.success is False
        assert health.error == "Backend health check failed"
        assert health.checks[0].message == "Backend unhealthy: HTTP 500"
        assert len(backend.calls) == 1

    async def test_network_errors_are_retried(self, allocator: PortAllocator):
        request = httpx.Request("GET", "http://localhost:4301/healthz")
        backend = BackendStub(
            httpx.ConnectError("connection refused", request=request),
            httpx.ConnectError("connection refused", request=request),
            (200, {"status": "healthy"}),
        )
        provisioner = make_provisioner(allocator, backend)

        check = await provisioner.check_backend_health("http://localhost:4301/healthz")

        assert check.healthy is True
        assert len(backend.calls) == 3

    async def test_gives_up_after_max_attempts(self, allocator: PortAllocator):
        backend = BackendStub((200, {"status": "starting"}))
        provisioner = make_provisioner(allocator, backend)

        check = await provisioner.check_backend_health("http://localhost:4301/healthz")

        assert check.healthy is False
        assert check.message == "Backend not responding after 3 attempts (status=starting)"
        assert len(backend.calls) == 3


# ==========================================================================
# Rollback
# ==========================================================================

class TestRollback:
    """Tests for rollback_installation."""

    async def test_failed_install_leaks_no_port(self, allocator: PortAllocator):
        backend = BackendStub((500, None))
        provisioner = make_provisioner(allocator, backend)
        provision = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)
        health = await provisioner.perform_post_install_health_check("weather-widget", provision)
        assert health.success is False

        failed = await provisioner.rollback_installation("weather-widget", provision)

        assert failed == []
        assert allocator.get_port_allocation("weather-widget") is None
        assert not allocator.is_port_allocated(4301)

    async def test_every_step_attempted_after_failure(self, allocator: PortAllocator):
        provisioner = make_provisioner(allocator, BackendStub(), orchestrator=FailingOrchestrator())
        await allocator.allocate_port("weather-widget")
        provision = ProvisionResult(
            plugin_name="weather-widget",
            status=ProvisionStatus.PROVISIONED,
            container_port=4301,
            database_name="plugin_weather_widget",
            container_id="container-weather-widget",
        )

        failed = await provisioner.rollback_installation("weather-widget", provision)

        assert failed == ["container"]
        assert allocator.get_port_allocation("weather-widget") is None

    async def test_rollback_keeps_port_held_before_attempt(self, allocator: PortAllocator):
        await allocator.allocate_port("weather-widget")
        provisioner = make_provisioner(allocator, BackendStub((500, None)))
        provision = await provisioner.provision_plugin_infrastructure("weather-widget", MANIFEST)
        assert provision.port_preallocated is True

        failed = await provisioner.rollback_installation("weather-widget", provision)

        assert failed == []
        assert allocator.get_port_allocation("weather-widget") == 4301

    async def test_rollback_is_idempotent(self, allocator: PortAllocator):
        provisioner = make_provisioner(allocator, BackendStub())

        assert await provisioner.rollback_installation("never-installed") == []
        assert await provisioner.rollback_installation("never-installed") == []

    async def test_rollback_logs_steps_with_context(self, allocator: PortAllocator, monkeypatch: pytest.MonkeyPatch):
        recorder = LogRecorder()
        monkeypatch.setattr(provisioning, "logger", recorder)
        provisioner = make_provisioner(allocator, BackendStub())

        await provisioner.rollback_installation("weather-widget")

        events = [(event, context.get("plugin_name")) for event, context in recorder.entries]
        assert ("Rolling back installation", "weather-widget") in events
        assert ("Rollback completed", "weather-widget") in events
