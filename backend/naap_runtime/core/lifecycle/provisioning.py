"""
Plugin Provisioning - Infrastructure for a plugin installation.

Allocates the backend port, derives the database namespace and records
the container for one installation attempt, verifies the result with a
bounded post-install health check, and reverses everything on failure.

Container and database work is delegated to injected collaborators. The
defaults only log what they would do, so the runtime works on hosts
without an orchestrator.
"""

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
import structlog

from naap_runtime.core.config import settings
from naap_runtime.core.lifecycle.port_allocator import PortAllocator

logger = structlog.get_logger()


class ProvisionStatus(str, enum.Enum):
    PROVISIONED = "provisioned"
    FAILED = "failed"


class Component(str, enum.Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"


@dataclass
class ProvisionResult:
    plugin_name: str
    status: ProvisionStatus
    container_port: Optional[int] = None
    database_name: Optional[str] = None
    container_id: Optional[str] = None
    error: Optional[str] = None
    # port was already held by this plugin before the attempt; rollback keeps it
    port_preallocated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "pluginName": self.plugin_name,
            "status": self.status.value,
            "containerPort": self.container_port,
            "databaseName": self.database_name,
            "containerId": self.container_id,
            "error": self.error,
        }


@dataclass
class ComponentHealth:
    component: Component
    healthy: bool
    message: str
    response_time_ms: Optional[int] = None
    verified: bool = True  # False when the check is a placeholder


@dataclass
class HealthCheckResult:
    success: bool
    checks: list[ComponentHealth] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class HealthCheckPolicy:
    max_attempts: int = 10
    delay_seconds: float = 2.0
    timeout_seconds: float = 5.0


# ==========================================================================
# Collaborators
# ==========================================================================

class ContainerOrchestrator(Protocol):
    async def deploy(self, plugin_name: str, image: str, port: Optional[int]) -> str: ...

    async def stop(self, container_id: str) -> None: ...

    async def remove(self, container_id: str) -> None: ...

    async def restart(self, plugin_name: str) -> None: ...


class DatabaseManager(Protocol):
    async def create_database(self, name: str) -> None: ...

    async def drop_database(self, name: str) -> None: ...


class LoggingContainerOrchestrator:
    """Records container operations in the log without touching a runtime."""

    async def deploy(self, plugin_name: str, image: str, port: Optional[int]) -> str:
        container_id = f"container_{plugin_name}_{int(time.time() * 1000)}"
        logger.info("Deploying container", plugin_name=plugin_name, image=image, port=port, container_id=container_id)
        return container_id

    async def stop(self, container_id: str) -> None:
        logger.info("Stopping container", container_id=container_id)

    async def remove(self, container_id: str) -> None:
        logger.info("Removing container", container_id=container_id)

    async def restart(self, plugin_name: str) -> None:
        logger.info("Restarting container", plugin_name=plugin_name)


class LoggingDatabaseManager:
    """Records database operations in the log without touching a server."""

    async def create_database(self, name: str) -> None:
        logger.info("Creating plugin database", database_name=name)

    async def drop_database(self, name: str) -> None:
        logger.info("Dropping plugin database", database_name=name)


def database_name_for(plugin_name: str) -> str:
    return f"plugin_{plugin_name.replace('-', '_')}"


# ==========================================================================
# Provisioner
# ==========================================================================

class PluginProvisioner:
    """
    Provision, verify and roll back plugin infrastructure.

    Usage:
        provisioner = PluginProvisioner(port_allocator)
        provision = await provisioner.provision_plugin_infrastructure(name, manifest)
        health = await provisioner.perform_post_install_health_check(name, provision)
        if not health.success:
            await provisioner.rollback_installation(name, provision)
    """

    def __init__(
        self,
        port_allocator: PortAllocator,
        orchestrator: Optional[ContainerOrchestrator] = None,
        database_manager: Optional[DatabaseManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        health_policy: Optional[HealthCheckPolicy] = None,
    ):
        self.port_allocator = port_allocator
        self.orchestrator = orchestrator or LoggingContainerOrchestrator()
        self.database_manager = database_manager or LoggingDatabaseManager()
        self.http_client = http_client
        self.health_policy = health_policy or HealthCheckPolicy()

    async def provision_plugin_infrastructure(
        self,
        plugin_name: str,
        manifest: dict[str, Any],
        backend_image: Optional[str] = None,
    ) -> ProvisionResult:
        """
        Allocate infrastructure for one installation attempt.

        Never raises. On failure everything this attempt created is
        released before the failed result is returned; a port the plugin
        already held is left allocated.
        """
        result = ProvisionResult(plugin_name=plugin_name, status=ProvisionStatus.PROVISIONED)
        database_created = False

        try:
            if manifest.get("backend"):
                result.port_preallocated = self.port_allocator.get_port_allocation(plugin_name) is not None
                result.container_port = await self.port_allocator.allocate_port(plugin_name)

            if manifest.get("database"):
                result.database_name = database_name_for(plugin_name)
                await self.database_manager.create_database(result.database_name)
                database_created = True

            if backend_image and manifest.get("backend"):
                result.container_id = await self.orchestrator.deploy(
                    plugin_name, backend_image, result.container_port
                )

        except Exception as e:
            logger.error("Plugin provisioning failed", plugin_name=plugin_name, error=str(e))
            failed = ProvisionResult(
                plugin_name=plugin_name,
                status=ProvisionStatus.FAILED,
                error=str(e) or type(e).__name__,
            )
            if database_created:
                try:
                    await self.database_manager.drop_database(result.database_name)
                except Exception as drop_error:
                    # keep the name so a later rollback can retry the drop
                    failed.database_name = result.database_name
                    logger.error(
                        "Failed to drop database after provisioning failure",
                        plugin_name=plugin_name,
                        database_name=result.database_name,
                        error=str(drop_error),
                    )
            if result.container_port is not None and not result.port_preallocated:
                self.port_allocator.release_port(plugin_name)
            return failed

        logger.info("Plugin provisioned", **result.to_dict())
        return result

    async def perform_post_install_health_check(
        self,
        plugin_name: str,
        provision: ProvisionResult,
    ) -> HealthCheckResult:
        checks: list[ComponentHealth] = []

        if provision.container_port:
            url = settings.plugin_backend_url(plugin_name, provision.container_port) + settings.PLUGIN_HEALTH_PATH
            backend = await self.check_backend_health(url)
            checks.append(backend)

            if not backend.healthy:
                logger.warning("Plugin backend unhealthy after install", plugin_name=plugin_name, message=backend.message)
                return HealthCheckResult(success=False, checks=checks, error="Backend health check failed")

        if provision.database_name:
            # No connectivity check exists for plugin databases yet.
            logger.warning(
                "Plugin database health not verified",
                plugin_name=plugin_name,
                database_name=provision.database_name,
            )
            checks.append(ComponentHealth(
                component=Component.DATABASE,
                healthy=True,
                message="Database connection not verified",
                verified=False,
            ))

        return HealthCheckResult(success=all(c.healthy for c in checks), checks=checks)

    async def check_backend_health(self, url: str) -> ComponentHealth:
        """
        Poll a backend health endpoint.

        An HTTP 4xx/5xx ends the check immediately as unhealthy. Network
        failures and timeouts are retried until the attempt budget runs out.
        """
        policy = self.health_policy
        last_error = None

        for attempt in range(1, policy.max_attempts + 1):
            started = time.monotonic()
            try:
                response = await self._get(url, policy.timeout_seconds)
            except httpx.TimeoutException:
                last_error = "Timeout"
            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
            else:
                response_time_ms = int((time.monotonic() - started) * 1000)

                if response.status_code >= 400:
                    return ComponentHealth(
                        component=Component.BACKEND,
                        healthy=False,
                        message=f"Backend unhealthy: HTTP {response.status_code}",
                        response_time_ms=response_time_ms,
                    )

                status = _body_status(response) or "ok"
                if response.is_success and status in ("ok", "healthy"):
                    return ComponentHealth(
                        component=Component.BACKEND,
                        healthy=True,
                        message="Backend is healthy",
                        response_time_ms=response_time_ms,
                    )
                last_error = f"status={status}"

            logger.debug("Retrying backend health check", url=url, attempt=attempt, error=last_error)
            if attempt < policy.max_attempts:
                await asyncio.sleep(policy.delay_seconds)

        return ComponentHealth(
            component=Component.BACKEND,
            healthy=False,
            message=f"Backend not responding after {policy.max_attempts} attempts ({last_error})",
        )

    async def rollback_installation(
        self,
        plugin_name: str,
        provision: Optional[ProvisionResult] = None,
    ) -> list[str]:
        """
        Best-effort reversal of provisioning.

        Each step is attempted even when an earlier one fails. Failures are
        logged and never raised.

        Returns:
            Names of the steps that failed
        """
        logger.info("Rolling back installation", plugin_name=plugin_name)
        failed: list[str] = []

        if provision and provision.container_id:
            try:
                await self.orchestrator.stop(provision.container_id)
                await self.orchestrator.remove(provision.container_id)
            except Exception as e:
                failed.append("container")
                logger.error("Failed to remove container during rollback", plugin_name=plugin_name, error=str(e))

        if provision and provision.database_name:
            try:
                await self.database_manager.drop_database(provision.database_name)
            except Exception as e:
                failed.append("database")
                logger.error("Failed to drop database during rollback", plugin_name=plugin_name, error=str(e))

        if provision is not None and provision.port_preallocated:
            logger.info("Keeping port held before this installation attempt", plugin_name=plugin_name)
        else:
            try:
                self.port_allocator.release_port(plugin_name)
            except Exception as e:
                failed.append("port")
                logger.error("Failed to release port during rollback", plugin_name=plugin_name, error=str(e))

        logger.info("Rollback completed", plugin_name=plugin_name, failed_steps=failed)
        return failed

    async def _get(self, url: str, timeout: float) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.get(url, timeout=timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.get(url)


def _body_status(response: httpx.Response) -> Optional[str]:
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        value = data.get("status")
        return str(value) if value else None
    return None
