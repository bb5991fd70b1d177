"""
Slot Health Monitor - Health tracking for blue/green deployment slots.

Features:
- One polling task per (deployment, slot) with its own configuration
- Asymmetric thresholds: failures to degrade, fewer successes to recover
- Slot health persisted on every applied check
- Deduplicated alerts and auto-rollback on entering sustained unhealthy
"""

import asyncio
import inspect
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
import structlog
from sqlalchemy import select

from naap_runtime.core.database import SessionFactory
from naap_runtime.core.lifecycle.deployment_manager import DeploymentManager
from naap_runtime.core.models import (
    AlertStatus,
    HealthAlert,
    PluginAlert,
    PluginDeploymentSlot,
    SlotHealth,
    SlotName,
    SlotStatus,
)

logger = structlog.get_logger()


@dataclass
class HealthCheckConfig:
    endpoint: str = "/healthz"
    interval_seconds: float = 30
    timeout_seconds: float = 10
    unhealthy_threshold: int = 3
    healthy_threshold: int = 2


@dataclass
class SlotCheckResult:
    deployment_id: str
    slot: SlotName
    status: SlotHealth
    latency_ms: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class MonitoredSlot:
    deployment_id: str
    slot: SlotName
    config: HealthCheckConfig
    state: SlotHealth = SlotHealth.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_check: Optional[SlotCheckResult] = None
    task: Optional[asyncio.Task] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class _Transition:
    """What a persisted check changed, acted on after the session closes."""
    became_unhealthy: bool = False
    became_healthy: bool = False
    alert_raised: bool = False
    rollback_target: Optional[SlotName] = None


class SlotHealthMonitor:
    """
    Deployment slot health monitor.

    Usage:
        monitor = SlotHealthMonitor(AsyncSessionLocal, SlotDeploymentManager(AsyncSessionLocal))
        await monitor.start_monitoring(deployment_id, SlotName.BLUE, {"interval_seconds": 15})
        ...
        await monitor.shutdown()
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        deployment_manager: DeploymentManager,
        http_client: Optional[httpx.AsyncClient] = None,
        on_unhealthy: Optional[Callable[[str, SlotName, SlotCheckResult], Any]] = None,
        on_healthy: Optional[Callable[[str, SlotName], Any]] = None,
        on_auto_rollback: Optional[Callable[[str, SlotName, SlotName], Any]] = None,
        default_config: Optional[HealthCheckConfig] = None,
    ):
        self.session_factory = session_factory
        self.deployment_manager = deployment_manager
        self.http_client = http_client
        self.on_unhealthy = on_unhealthy
        self.on_healthy = on_healthy
        self.on_auto_rollback = on_auto_rollback
        self.default_config = default_config or HealthCheckConfig()

        self._monitors: dict[tuple[str, SlotName], MonitoredSlot] = {}

    def get_default_config(self) -> HealthCheckConfig:
        return replace(self.default_config)

    def _config(self, overrides: Optional[dict[str, Any]] = None) -> HealthCheckConfig:
        return replace(self.default_config, **(overrides or {}))

    # ======================================================================
    # Monitor lifecycle
    # ======================================================================

    async def start_monitoring(
        self,
        deployment_id: str,
        slot: SlotName,
        config: Optional[dict[str, Any]] = None,
        run_immediately: bool = True,
    ) -> None:
        await self.stop_monitoring(deployment_id, slot)

        monitor = MonitoredSlot(deployment_id=deployment_id, slot=slot, config=self._config(config))
        self._monitors[(deployment_id, slot)] = monitor
        monitor.task = asyncio.create_task(self._watch(monitor, run_immediately))

        logger.info(
            "Slot health monitor started",
            deployment_id=deployment_id,
            slot=slot.value,
            interval_seconds=monitor.config.interval_seconds,
        )

    async def initialize_from_database(self, db, run_immediately: bool = True) -> int:
        """Resume monitoring every active slot that serves a backend."""
        try:
            result = await db.execute(
                select(PluginDeploymentSlot).where(
                    PluginDeploymentSlot.status == SlotStatus.ACTIVE,
                    PluginDeploymentSlot.backend_url.is_not(None),
                )
            )
            slots = result.scalars().all()
        except Exception as e:
            logger.error("Failed to restore slot health monitors", error=str(e))
            return 0

        for slot in slots:
            await self.start_monitoring(slot.deployment_id, slot.slot, run_immediately=run_immediately)

        logger.info("Slot health monitors restored", monitored=len(slots))
        return len(slots)

    async def stop_monitoring(self, deployment_id: str, slot: SlotName) -> None:
        monitor = self._monitors.pop((deployment_id, slot), None)
        if monitor is None:
            return
        await self._stop_task(monitor)
        logger.info("Slot health monitor stopped", deployment_id=deployment_id, slot=slot.value)

    async def stop_all_monitoring(self, deployment_id: str) -> None:
        for slot in SlotName:
            await self.stop_monitoring(deployment_id, slot)

    async def shutdown(self) -> None:
        monitors = list(self._monitors.values())
        self._monitors.clear()
        for monitor in monitors:
            await self._stop_task(monitor)
        logger.info("Slot health monitors shut down", stopped=len(monitors))

    async def update_config(self, deployment_id: str, slot: SlotName, config: dict[str, Any]) -> bool:
        """Apply new settings to a running monitor and restart its schedule."""
        monitor = self._monitors.get((deployment_id, slot))
        if monitor is None:
            return False

        await self._stop_task(monitor)
        monitor.config = replace(monitor.config, **config)
        monitor.task = asyncio.create_task(self._watch(monitor, run_immediately=False))
        return True

    async def _stop_task(self, monitor: MonitoredSlot) -> None:
        task, monitor.task = monitor.task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ======================================================================
    # Queries
    # ======================================================================

    def is_monitoring(self, deployment_id: str, slot: SlotName) -> bool:
        monitor = self._monitors.get((deployment_id, slot))
        return monitor is not None and monitor.task is not None

    def get_active_monitors(self) -> list[dict[str, Any]]:
        return [
            {
                "deploymentId": m.deployment_id,
                "slot": m.slot.value,
                "intervalSeconds": m.config.interval_seconds,
            }
            for m in self._monitors.values()
            if m.task is not None
        ]

    def get_stats(self) -> dict[str, Any]:
        active = [m for m in self._monitors.values() if m.task is not None]
        return {
            "activeMonitors": len(active),
            "totalChecksPerMinute": sum(60 / m.config.interval_seconds for m in active),
        }

    async def get_health_status(self, deployment_id: str) -> dict[str, Any]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PluginDeploymentSlot).where(PluginDeploymentSlot.deployment_id == deployment_id)
            )
            slots = result.scalars().all()

        status = []
        for s in slots:
            monitor = self._monitors.get((deployment_id, s.slot))
            status.append({
                "slot": s.slot.value,
                "status": (s.health_status or SlotHealth.UNKNOWN).value,
                "consecutiveFailures": monitor.consecutive_failures if monitor else s.health_check_failures,
                "lastCheck": s.last_health_check.isoformat() if s.last_health_check else None,
                "latencyMs": monitor.last_check.latency_ms if monitor and monitor.last_check else None,
            })

        return {"deploymentId": deployment_id, "slots": status}

    # ======================================================================
    # Checks
    # ======================================================================

    async def check_health(
        self,
        deployment_id: str,
        slot: SlotName,
        config: Optional[dict[str, Any]] = None,
    ) -> SlotCheckResult:
        """
        Check a slot once without touching monitor counters or stored state.

        A slot without a backend URL is a frontend-only deployment and is
        always healthy. Slots that are neither active nor deploying report
        unknown.
        """
        cfg = self._config(config)
        if (deployment_id, slot) in self._monitors and config is None:
            cfg = self._monitors[(deployment_id, slot)].config

        async with self.session_factory() as db:
            row = await self._load_slot(db, deployment_id, slot)
            backend_url = row.backend_url if row else None
            slot_status = row.status if row else None

        result = SlotCheckResult(deployment_id=deployment_id, slot=slot, status=SlotHealth.UNKNOWN)
        if row is None:
            result.error = "Slot not found"
            return result

        if not backend_url:
            result.status = SlotHealth.HEALTHY
            return result

        if slot_status not in (SlotStatus.ACTIVE, SlotStatus.DEPLOYING):
            return result

        url = backend_url.rstrip("/") + cfg.endpoint
        headers = {"User-Agent": "HealthMonitor/1.0", "X-Health-Check": "true"}
        started = time.monotonic()

        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, headers=headers, timeout=cfg.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=cfg.timeout_seconds) as client:
                    response = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            result.latency_ms = _elapsed_ms(started)
            result.status = SlotHealth.UNHEALTHY
            result.error = "Timeout"
            return result
        except httpx.HTTPError as e:
            result.latency_ms = _elapsed_ms(started)
            result.status = SlotHealth.UNHEALTHY
            result.error = str(e) or type(e).__name__
            return result

        result.latency_ms = _elapsed_ms(started)
        result.status_code = response.status_code

        if not response.is_success:
            result.status = SlotHealth.UNHEALTHY
            result.error = f"HTTP {response.status_code}"
            return result

        try:
            body = response.json()
        except ValueError:
            body = None

        # A 2xx without an explicit verdict counts as healthy
        result.status = SlotHealth.HEALTHY
        if isinstance(body, dict):
            if body.get("status") == "unhealthy" or body.get("healthy") is False:
                result.status = SlotHealth.UNHEALTHY
                result.error = body.get("message") or "Service reported unhealthy"

        return result

    async def run_check(self, deployment_id: str, slot: SlotName) -> Optional[SlotCheckResult]:
        """Check a monitored slot and apply the result to its counters."""
        monitor = self._monitors.get((deployment_id, slot))
        if monitor is None:
            return None
        return await self._run(monitor)

    async def _watch(self, monitor: MonitoredSlot, run_immediately: bool = True) -> None:
        if not run_immediately:
            await asyncio.sleep(monitor.config.interval_seconds)
        while True:
            try:
                await self._run(monitor)
            except Exception as e:
                logger.error(
                    "Slot health check failed",
                    deployment_id=monitor.deployment_id,
                    slot=monitor.slot.value,
                    error=str(e),
                )
            await asyncio.sleep(monitor.config.interval_seconds)

    async def _run(self, monitor: MonitoredSlot) -> SlotCheckResult:
        async with monitor.lock:
            result = await self.check_health(monitor.deployment_id, monitor.slot, asdict(monitor.config))
            transition = await self._apply(monitor, result)
            await self._act(monitor, result, transition)
            return result

    async def _apply(self, monitor: MonitoredSlot, result: SlotCheckResult) -> _Transition:
        monitor.last_check = result

        if result.status == SlotHealth.HEALTHY:
            monitor.consecutive_failures = 0
            monitor.consecutive_successes += 1
        elif result.status == SlotHealth.UNHEALTHY:
            monitor.consecutive_successes = 0
            monitor.consecutive_failures += 1

        transition = _Transition()
        previous = monitor.state
        if monitor.consecutive_failures >= monitor.config.unhealthy_threshold:
            monitor.state = SlotHealth.UNHEALTHY
        elif monitor.consecutive_successes >= monitor.config.healthy_threshold:
            monitor.state = SlotHealth.HEALTHY
        transition.became_unhealthy = previous != SlotHealth.UNHEALTHY and monitor.state == SlotHealth.UNHEALTHY
        transition.became_healthy = previous != SlotHealth.HEALTHY and monitor.state == SlotHealth.HEALTHY

        async with self.session_factory() as db:
            row = await self._load_slot(db, monitor.deployment_id, monitor.slot)
            if row is None:
                return transition

            row.health_status = monitor.state
            row.health_check_failures = monitor.consecutive_failures
            row.last_health_check = result.timestamp

            if transition.became_unhealthy:
                transition.alert_raised = await self._open_alert(db, monitor, result)
                transition.rollback_target = await self._rollback_target(db, row)
            elif transition.became_healthy:
                await self._resolve_alerts(db, monitor)

            await db.commit()

        return transition

    async def _act(self, monitor: MonitoredSlot, result: SlotCheckResult, transition: _Transition) -> None:
        deployment_id, slot = monitor.deployment_id, monitor.slot

        if transition.became_unhealthy:
            logger.warning(
                "Slot unhealthy",
                deployment_id=deployment_id,
                slot=slot.value,
                failures=monitor.consecutive_failures,
                error=result.error,
            )
            await _invoke(self.on_unhealthy, deployment_id, slot, result)

            if transition.rollback_target is not None:
                target = transition.rollback_target
                try:
                    await self.deployment_manager.rollback(
                        deployment_id,
                        "system",
                        f"Auto-rollback: slot {slot.value} exceeded unhealthy threshold",
                    )
                except Exception as e:
                    logger.error("Auto-rollback failed", deployment_id=deployment_id, error=str(e))
                else:
                    logger.warning(
                        "Auto-rollback triggered",
                        deployment_id=deployment_id,
                        from_slot=slot.value,
                        to_slot=target.value,
                    )
                    await _invoke(self.on_auto_rollback, deployment_id, slot, target)

        elif transition.became_healthy:
            logger.info("Slot healthy", deployment_id=deployment_id, slot=slot.value)
            await _invoke(self.on_healthy, deployment_id, slot)

    async def _open_alert(self, db, monitor: MonitoredSlot, result: SlotCheckResult) -> bool:
        existing = await db.execute(
            select(HealthAlert.id).where(
                HealthAlert.deployment_id == monitor.deployment_id,
                HealthAlert.slot == monitor.slot,
                HealthAlert.status == AlertStatus.OPEN,
            )
        )
        if existing.first() is not None:
            return False

        db.add(HealthAlert(
            deployment_id=monitor.deployment_id,
            slot=monitor.slot,
            message=(
                f"Slot {monitor.slot.value} failed {monitor.consecutive_failures} "
                f"consecutive health checks: {result.error or 'unhealthy'}"
            ),
        ))
        return True

    async def _resolve_alerts(self, db, monitor: MonitoredSlot) -> None:
        result = await db.execute(
            select(HealthAlert).where(
                HealthAlert.deployment_id == monitor.deployment_id,
                HealthAlert.slot == monitor.slot,
                HealthAlert.status == AlertStatus.OPEN,
            )
        )
        for alert in result.scalars().all():
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = datetime.now(timezone.utc)

    async def _rollback_target(self, db, unhealthy: PluginDeploymentSlot) -> Optional[SlotName]:
        """
        The slot to fail over to, or None when auto-rollback does not apply.

        Requires the unhealthy slot to carry traffic, the other slot to be
        healthy, and an enabled auto-rollback rule for health checks.
        """
        if unhealthy.traffic_percent <= 0:
            return None

        result = await db.execute(
            select(PluginDeploymentSlot).where(
                PluginDeploymentSlot.deployment_id == unhealthy.deployment_id,
                PluginDeploymentSlot.slot != unhealthy.slot,
            )
        )
        other = result.scalars().first()
        if other is None or other.health_status != SlotHealth.HEALTHY:
            logger.warning("No previous version to roll back to", deployment_id=unhealthy.deployment_id)
            return None

        rule = await db.execute(
            select(PluginAlert.id).where(
                PluginAlert.deployment_id == unhealthy.deployment_id,
                PluginAlert.metric == "health_check",
                PluginAlert.auto_rollback.is_(True),
                PluginAlert.enabled.is_(True),
            )
        )
        if rule.first() is None:
            return None

        return other.slot

    @staticmethod
    async def _load_slot(db, deployment_id: str, slot: SlotName) -> Optional[PluginDeploymentSlot]:
        result = await db.execute(
            select(PluginDeploymentSlot).where(
                PluginDeploymentSlot.deployment_id == deployment_id,
                PluginDeploymentSlot.slot == slot,
            )
        )
        return result.scalar_one_or_none()


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        outcome = callback(*args)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.error("Health callback failed", error=str(e))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
