"""
Process Monitor - Continuous health polling of plugin backends.

One polling task per monitored plugin. Consecutive failures escalate to a
container restart through the orchestrator, followed by a delayed
re-check. All tasks are owned by the monitor instance and cancelled on
stop.
"""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.config import settings
from naap_runtime.core.lifecycle.provisioning import ContainerOrchestrator, LoggingContainerOrchestrator
from naap_runtime.core.models import InstallationStatus, PluginInstallation

logger = structlog.get_logger()


class PluginHealthState(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RECOVERING = "recovering"
    UNKNOWN = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MonitoredPlugin:
    plugin_name: str
    container_port: int
    health_url: str
    status: PluginHealthState = PluginHealthState.UNKNOWN
    failed_checks: int = 0
    restart_count: int = 0
    last_check: datetime = field(default_factory=_utcnow)
    last_healthy: datetime = field(default_factory=_utcnow)
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pluginName": self.plugin_name,
            "containerPort": self.container_port,
            "healthUrl": self.health_url,
            "status": self.status.value,
            "failedChecks": self.failed_checks,
            "restartCount": self.restart_count,
            "lastCheck": self.last_check.isoformat(),
            "lastHealthy": self.last_healthy.isoformat(),
            "lastError": self.last_error,
        }


@dataclass
class ProcessMonitorConfig:
    interval_seconds: float = field(default_factory=lambda: settings.PROCESS_MONITOR_INTERVAL_SECONDS)
    max_failed_checks: int = field(default_factory=lambda: settings.PROCESS_MONITOR_MAX_FAILED_CHECKS)
    timeout_seconds: float = field(default_factory=lambda: settings.PROCESS_MONITOR_TIMEOUT_SECONDS)
    recheck_delay_seconds: float = field(default_factory=lambda: settings.PROCESS_MONITOR_RECHECK_DELAY_SECONDS)
    max_restarts: Optional[int] = field(default_factory=lambda: settings.PROCESS_MONITOR_MAX_RESTARTS)


StatusCallback = Callable[[MonitoredPlugin, PluginHealthState], Awaitable[None]]


class ProcessMonitor:
    """
    Plugin backend watchdog.

    Checks for one plugin never overlap: the polling loop sleeps between
    checks, and manual or delayed re-checks wait for the per-plugin lock.
    """

    def __init__(
        self,
        config: Optional[ProcessMonitorConfig] = None,
        orchestrator: Optional[ContainerOrchestrator] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        on_status_change: Optional[StatusCallback] = None,
    ):
        self.config = config or ProcessMonitorConfig()
        self.orchestrator = orchestrator or LoggingContainerOrchestrator()
        self.http_client = http_client
        self.on_status_change = on_status_change

        self._plugins: dict[str, MonitoredPlugin] = {}
        self._watchers: dict[str, asyncio.Task] = {}
        self._rechecks: dict[str, asyncio.Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ======================================================================
    # Lifecycle
    # ======================================================================

    async def start_monitoring(
        self,
        plugin_name: str,
        container_port: int,
        health_endpoint: str = "/healthz",
    ) -> MonitoredPlugin:
        """Start (or restart) polling a plugin backend."""
        await self.stop_monitoring(plugin_name)

        health_url = settings.plugin_backend_url(plugin_name, container_port) + health_endpoint
        plugin = MonitoredPlugin(
            plugin_name=plugin_name,
            container_port=container_port,
            health_url=health_url,
        )
        self._plugins[plugin_name] = plugin
        self._locks[plugin_name] = asyncio.Lock()
        self._watchers[plugin_name] = asyncio.create_task(self._watch(plugin_name))

        logger.info("Process monitor started", plugin_name=plugin_name, health_url=health_url)
        return plugin

    async def stop_monitoring(self, plugin_name: str) -> bool:
        watcher = self._watchers.pop(plugin_name, None)
        recheck = self._rechecks.pop(plugin_name, None)
        self._plugins.pop(plugin_name, None)
        self._locks.pop(plugin_name, None)

        for task in (watcher, recheck):
            await _cancel(task)

        if watcher is not None:
            logger.info("Process monitor stopped", plugin_name=plugin_name)
        return watcher is not None

    async def stop_all(self) -> None:
        for plugin_name in list(self._watchers):
            await self.stop_monitoring(plugin_name)

    async def initialize_from_database(self, db: AsyncSession) -> int:
        """Start monitoring every installed plugin that has a backend port."""
        try:
            result = await db.execute(
                select(PluginInstallation).where(
                    PluginInstallation.status == InstallationStatus.INSTALLED
                )
            )
            installations = result.scalars().all()
        except Exception as e:
            logger.error("Failed to initialize process monitor", error=str(e))
            return 0

        for install in installations:
            manifest = install.version.manifest if install.version else {}
            backend = (manifest or {}).get("backend") or {}
            port = install.container_port or backend.get("port")
            if not port:
                continue
            await self.start_monitoring(
                install.package.name,
                port,
                backend.get("healthCheck") or settings.PLUGIN_HEALTH_PATH,
            )

        logger.info("Process monitor initialized", monitored=self.get_monitored_count())
        return self.get_monitored_count()

    # ======================================================================
    # Queries
    # ======================================================================

    def get_status(self, plugin_name: str) -> Optional[MonitoredPlugin]:
        return self._plugins.get(plugin_name)

    def get_all_status(self) -> list[MonitoredPlugin]:
        return list(self._plugins.values())

    def get_monitored_count(self) -> int:
        return len(self._watchers)

    async def trigger_check(self, plugin_name: str) -> Optional[MonitoredPlugin]:
        """Run one check now, outside the polling schedule."""
        await self._check(plugin_name)
        return self.get_status(plugin_name)

    # ======================================================================
    # Checks
    # ======================================================================

    async def _watch(self, plugin_name: str) -> None:
        while plugin_name in self._plugins:
            await asyncio.sleep(self.config.interval_seconds)
            try:
                await self._check(plugin_name)
            except Exception as e:
                logger.error("Process monitor check failed", plugin_name=plugin_name, error=str(e))

    async def _recheck_later(self, plugin_name: str) -> None:
        await asyncio.sleep(self.config.recheck_delay_seconds)
        self._rechecks.pop(plugin_name, None)
        await self._check(plugin_name)

    async def _check(self, plugin_name: str) -> None:
        plugin = self._plugins.get(plugin_name)
        lock = self._locks.get(plugin_name)
        if plugin is None or lock is None:
            return

        async with lock:
            healthy, error = await self._check_backend(plugin.health_url)
            plugin.last_check = _utcnow()

            if healthy:
                previous = plugin.status
                plugin.status = PluginHealthState.HEALTHY
                plugin.failed_checks = 0
                plugin.last_error = None
                plugin.last_healthy = plugin.last_check
                if previous != PluginHealthState.HEALTHY:
                    logger.info("Plugin healthy", plugin_name=plugin_name)
                    await self._notify(plugin, previous)
                return

            await self._handle_unhealthy(plugin, error)

    async def _check_backend(self, url: str) -> tuple[bool, Optional[str]]:
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, timeout=self.config.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.get(url)
        except httpx.TimeoutException:
            return False, "Timeout"
        except httpx.HTTPError as e:
            return False, str(e) or type(e).__name__

        if not response.is_success:
            return False, f"HTTP {response.status_code}"

        try:
            data = response.json()
        except ValueError:
            return False, "Invalid health response"

        status = data.get("status") if isinstance(data, dict) else None
        if status in ("ok", "healthy"):
            return True, None
        return False, f"Reported status {status!r}"

    async def _handle_unhealthy(self, plugin: MonitoredPlugin, error: Optional[str]) -> None:
        previous = plugin.status
        plugin.failed_checks += 1
        plugin.status = PluginHealthState.UNHEALTHY
        plugin.last_error = error or "Health check failed"

        logger.warning(
            "Plugin health check failed",
            plugin_name=plugin.plugin_name,
            failed_checks=plugin.failed_checks,
            max_failed_checks=self.config.max_failed_checks,
            error=plugin.last_error,
        )

        if plugin.failed_checks >= self.config.max_failed_checks:
            await self._restart(plugin)

        if plugin.status != previous:
            await self._notify(plugin, previous)

    async def _restart(self, plugin: MonitoredPlugin) -> None:
        max_restarts = self.config.max_restarts
        if max_restarts is not None and plugin.restart_count >= max_restarts:
            logger.error(
                "Plugin restart limit reached",
                plugin_name=plugin.plugin_name,
                restart_count=plugin.restart_count,
            )
            return

        plugin.status = PluginHealthState.RECOVERING
        plugin.failed_checks = 0
        plugin.restart_count += 1
        logger.warning("Restarting plugin", plugin_name=plugin.plugin_name, restart_count=plugin.restart_count)

        try:
            await self.orchestrator.restart(plugin.plugin_name)
        except Exception as e:
            logger.error("Failed to restart plugin", plugin_name=plugin.plugin_name, error=str(e))

        if plugin.plugin_name not in self._rechecks:
            self._rechecks[plugin.plugin_name] = asyncio.create_task(
                self._recheck_later(plugin.plugin_name)
            )

    async def _notify(self, plugin: MonitoredPlugin, previous: PluginHealthState) -> None:
        if self.on_status_change is None:
            return
        try:
            await self.on_status_change(plugin, previous)
        except Exception as e:
            logger.error("Status callback failed", plugin_name=plugin.plugin_name, error=str(e))


async def _cancel(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    if task is asyncio.current_task():
        return
    try:
        await task
    except asyncio.CancelledError:
        pass
