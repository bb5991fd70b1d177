"""
Health-Check Scheduler - Periodic upstream health checks for published connectors.

Checks run in fixed-size batches. Inside a batch every check has its own
timeout and the batch is gathered with return_exceptions, so one hung or
failing upstream never holds back its batch-mates. Each result becomes a
GatewayHealthCheck row. Batches stop being started once the job's
overall time budget is spent.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from sqlalchemy import select

from naap_runtime.core.config import settings
from naap_runtime.core.database import SessionFactory
from naap_runtime.core.gateway.connectivity import (
    ConnectivityResult,
    HealthCheckRequest,
    prepare_health_check,
    send_health_check,
)
from naap_runtime.core.gateway.scope import scope_filter
from naap_runtime.core.models import ConnectorStatus, GatewayHealthCheck, ServiceConnector, UpstreamHealth

logger = structlog.get_logger()


@dataclass
class SchedulerConfig:
    batch_size: int = field(default_factory=lambda: settings.GATEWAY_HEALTH_BATCH_SIZE)
    timeout_seconds: float = field(default_factory=lambda: settings.GATEWAY_HEALTH_TIMEOUT_SECONDS)
    degraded_ms: int = field(default_factory=lambda: settings.GATEWAY_HEALTH_DEGRADED_MS)
    max_duration_seconds: float = field(default_factory=lambda: settings.GATEWAY_HEALTH_MAX_DURATION_SECONDS)


@dataclass
class HealthRecord:
    connector_id: str
    slug: str
    status: UpstreamHealth
    latency_ms: Optional[int] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class HealthRunSummary:
    results: list[HealthRecord] = field(default_factory=list)
    truncated: bool = False

    def count(self, status: UpstreamHealth) -> int:
        return sum(1 for r in self.results if r.status == status)


def classify(result: ConnectivityResult, degraded_ms: int) -> UpstreamHealth:
    if not result.success:
        return UpstreamHealth.DOWN
    if result.latency_ms > degraded_ms:
        return UpstreamHealth.DEGRADED
    return UpstreamHealth.UP


class HealthCheckScheduler:
    """
    Batch prober for gateway connectors.

    ``scope=None`` checks every team's connectors (the cron path); a scope
    string restricts the run to that owner.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        http_client: Optional[httpx.AsyncClient] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.config = config or SchedulerConfig()

    async def run_health_check(self, scope: Optional[str] = None) -> HealthRunSummary:
        started = time.monotonic()
        checks = await self._prepare(scope)
        summary = HealthRunSummary()

        size = max(1, self.config.batch_size)
        for offset in range(0, len(checks), size):
            if time.monotonic() - started >= self.config.max_duration_seconds:
                summary.truncated = True
                logger.warning("Health check budget exhausted", remaining=len(checks) - offset)
                break

            batch = checks[offset:offset + size]
            outcomes = await asyncio.gather(
                *(self._check_connector(p) for p in batch),
                return_exceptions=True,
            )

            records = []
            for check, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    outcome = ConnectivityResult(success=False, error=str(outcome) or type(outcome).__name__)
                records.append(HealthRecord(
                    connector_id=check.connector_id,
                    slug=check.slug,
                    status=classify(outcome, self.config.degraded_ms),
                    latency_ms=outcome.latency_ms,
                    status_code=outcome.status_code,
                    error=outcome.error,
                ))

            await self._persist(records)
            summary.results.extend(records)

        logger.info(
            "Health check completed",
            scope=scope or "all",
            checked=len(summary.results),
            up=summary.count(UpstreamHealth.UP),
            degraded=summary.count(UpstreamHealth.DEGRADED),
            down=summary.count(UpstreamHealth.DOWN),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return summary

    async def _prepare(self, scope: Optional[str]) -> list[HealthCheckRequest]:
        async with self.session_factory() as db:
            query = select(ServiceConnector).where(ServiceConnector.status == ConnectorStatus.PUBLISHED)
            if scope is not None:
                query = query.where(*scope_filter(ServiceConnector, scope))
            result = await db.execute(query.order_by(ServiceConnector.created_at))
            connectors = result.scalars().all()
            return [await prepare_health_check(db, c) for c in connectors]

    async def _check_connector(self, check: HealthCheckRequest) -> ConnectivityResult:
        started = time.monotonic()
        try:
            return await asyncio.wait_for(
                send_health_check(check, self.http_client, self.config.timeout_seconds),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ConnectivityResult(
                success=False,
                latency_ms=int((time.monotonic() - started) * 1000),
                error="Timeout",
            )

    async def _persist(self, records: list[HealthRecord]) -> None:
        try:
            async with self.session_factory() as db:
                db.add_all([
                    GatewayHealthCheck(
                        connector_id=r.connector_id,
                        status=r.status,
                        latency_ms=r.latency_ms,
                        status_code=r.status_code,
                        error=r.error,
                    )
                    for r in records
                ])
                await db.commit()
        except Exception as e:
            logger.error("Failed to persist health check result", count=len(records), error=str(e))
