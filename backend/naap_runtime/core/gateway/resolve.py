"""
Connector Resolver - Cached scope-aware connector lookup.

Resolves (scope, slug, method, path) to a published connector and one
of its endpoints. Hits are cached for the positive TTL, misses for a much
shorter negative TTL so a freshly created connector becomes visible
quickly. Admin mutations call invalidate_connector_cache before they
return, so a subsequent lookup always observes the change.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from sqlalchemy import select

from naap_runtime.core.config import settings
from naap_runtime.core.database import SessionFactory
from naap_runtime.core.gateway.scope import scope_filter
from naap_runtime.core.models import (
    ConnectorEndpoint,
    ConnectorStatus,
    ConnectorVisibility,
    ServiceConnector,
)

logger = structlog.get_logger()


@dataclass
class ResolvedConfig:
    connector: ServiceConnector
    endpoint: ConnectorEndpoint


@dataclass
class _CacheEntry:
    connector: Optional[ServiceConnector]
    expires_at: float


def match_path(pattern: str, path: str) -> bool:
    """Match a request path against an endpoint path with ``:param`` segments."""
    pattern_parts = [p for p in pattern.strip("/").split("/") if p]
    path_parts = [p for p in path.strip("/").split("/") if p]
    if len(pattern_parts) != len(path_parts):
        return False
    return all(
        expected.startswith(":") or expected == actual
        for expected, actual in zip(pattern_parts, path_parts)
    )


def match_endpoint(connector: ServiceConnector, method: str, path: str) -> Optional[ConnectorEndpoint]:
    method = method.upper()
    for endpoint in connector.endpoints:
        if not endpoint.enabled or endpoint.method.upper() != method:
            continue
        if match_path(endpoint.path, path):
            return endpoint
    return None


class ConnectorResolver:
    """
    Connector lookup cache.

    Keys are (scope, slug), so team and personal scopes never share
    entries even for the same slug.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        ttl_seconds: Optional[float] = None,
        negative_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.GATEWAY_CACHE_TTL_SECONDS
        self.negative_ttl_seconds = (
            negative_ttl_seconds if negative_ttl_seconds is not None
            else settings.GATEWAY_NEGATIVE_CACHE_TTL_SECONDS
        )
        self.clock = clock
        self._cache: dict[tuple[str, str], _CacheEntry] = {}

    async def resolve_config(self, scope: str, slug: str, method: str, path: str) -> Optional[ResolvedConfig]:
        connector = await self.get_connector(scope, slug)
        if connector is None:
            return None

        endpoint = match_endpoint(connector, method, path)
        if endpoint is None:
            return None
        return ResolvedConfig(connector=connector, endpoint=endpoint)

    async def get_connector(self, scope: str, slug: str) -> Optional[ServiceConnector]:
        key = (scope, slug)
        now = self.clock()

        entry = self._cache.get(key)
        if entry is not None:
            if entry.expires_at > now:
                return entry.connector
            del self._cache[key]

        connector = await self._load(scope, slug)
        ttl = self.ttl_seconds if connector is not None else self.negative_ttl_seconds
        self._cache[key] = _CacheEntry(connector=connector, expires_at=now + ttl)
        return connector

    def invalidate_connector_cache(self, scope: str, slug: str) -> None:
        if self._cache.pop((scope, slug), None) is not None:
            logger.debug("Connector cache invalidated", scope=scope, slug=slug)

    def invalidate_slug(self, slug: str) -> None:
        """Drop every scope's entry for a slug, including public fallbacks."""
        for key in [k for k in self._cache if k[1] == slug]:
            del self._cache[key]

    def clear(self) -> None:
        self._cache.clear()

    async def _load(self, scope: str, slug: str) -> Optional[ServiceConnector]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ServiceConnector).where(
                    ServiceConnector.slug == slug,
                    *scope_filter(ServiceConnector, scope),
                )
            )
            connector = result.scalar_one_or_none()

            if connector is None:
                result = await db.execute(
                    select(ServiceConnector)
                    .where(
                        ServiceConnector.slug == slug,
                        ServiceConnector.visibility == ConnectorVisibility.PUBLIC,
                        ServiceConnector.status == ConnectorStatus.PUBLISHED,
                    )
                    .limit(1)
                )
                connector = result.scalar_one_or_none()

        if connector is None or connector.status != ConnectorStatus.PUBLISHED:
            return None
        return connector
