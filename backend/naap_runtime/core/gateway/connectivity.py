"""
Connectivity Tester - One bounded health check against a connector's upstream.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.config import settings
from naap_runtime.core.gateway.auth_inject import MISSING_SECRET_WARNING, build_auth, required_refs
from naap_runtime.core.gateway.hosts import hostname_of, is_public_destination
from naap_runtime.core.gateway.secret_store import load_secrets
from naap_runtime.core.models import ServiceConnector

logger = structlog.get_logger()


@dataclass
class HealthCheckRequest:
    connector_id: str
    slug: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    blocked_reason: Optional[str] = None
    warning: Optional[str] = None


@dataclass
class ConnectivityResult:
    success: bool
    latency_ms: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    warning: Optional[str] = None


async def prepare_health_check(db: AsyncSession, connector: ServiceConnector) -> HealthCheckRequest:
    """
    Build the health check for a connector.

    Secrets are read from the connector's own scope only.
    """
    url = connector.upstream_base_url.rstrip("/") + (connector.health_check_path or "/")
    check = HealthCheckRequest(connector_id=connector.id, slug=connector.slug, url=url)

    hostname = hostname_of(url)
    if not hostname or not await is_public_destination(hostname, connector.allowed_hosts):
        check.blocked_reason = f"Host not allowed: {hostname}"
        return check

    refs = required_refs(connector.auth_type, connector.auth_config)
    secrets = await load_secrets(db, connector.scope_id, connector.slug, refs)
    auth = build_auth(connector.auth_type, connector.auth_config, secrets)

    check.headers = {"User-Agent": "NaaP-Gateway-HealthCheck/1.0", **auth.headers}
    check.params = auth.params
    if auth.missing:
        check.warning = MISSING_SECRET_WARNING
    return check


async def send_health_check(
    check: HealthCheckRequest,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: Optional[float] = None,
) -> ConnectivityResult:
    """Send a prepared health check. Never raises; timeouts report error ``Timeout``."""
    if check.blocked_reason:
        return ConnectivityResult(success=False, error=check.blocked_reason)

    timeout = timeout_seconds if timeout_seconds is not None else settings.GATEWAY_HEALTH_TIMEOUT_SECONDS
    started = time.monotonic()

    try:
        if http_client is not None:
            response = await http_client.get(check.url, headers=check.headers, params=check.params, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(check.url, headers=check.headers, params=check.params)
    except httpx.TimeoutException:
        return ConnectivityResult(
            success=False,
            latency_ms=_elapsed_ms(started),
            error="Timeout",
            warning=check.warning,
        )
    except httpx.HTTPError as e:
        return ConnectivityResult(
            success=False,
            latency_ms=_elapsed_ms(started),
            error=str(e) or type(e).__name__,
            warning=check.warning,
        )

    return ConnectivityResult(
        success=response.is_success,
        latency_ms=_elapsed_ms(started),
        status_code=response.status_code,
        error=None if response.is_success else f"HTTP {response.status_code}",
        warning=check.warning,
    )


async def test_upstream_connectivity(
    db: AsyncSession,
    connector: ServiceConnector,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: Optional[float] = None,
) -> ConnectivityResult:
    check = await prepare_health_check(db, connector)
    result = await send_health_check(check, http_client, timeout_seconds)
    logger.info(
        "Connector connectivity tested",
        connector_id=connector.id,
        success=result.success,
        status_code=result.status_code,
        latency_ms=result.latency_ms,
    )
    return result


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
