"""
Connector Service - Scoped CRUD for service connectors.

Every mutation commits and then invalidates the resolver cache before it
returns, so the next resolution sees the change.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.exceptions import ConflictingState, NotFound, ValidationFailed
from naap_runtime.core.gateway.hosts import hostname_of
from naap_runtime.core.gateway.resolve import ConnectorResolver
from naap_runtime.core.gateway.scope import scope_filter, scope_owner_fields
from naap_runtime.core.gateway.team_guard import load_connector, load_connector_with_endpoints
from naap_runtime.core.models import (
    ConnectorEndpoint,
    ConnectorStatus,
    ConnectorVisibility,
    ServiceConnector,
)
from naap_runtime.core.schemas import ConnectorCreate, ConnectorUpdate, EndpointCreate

logger = structlog.get_logger()

NULLABLE_FIELDS = {"description", "category", "health_check_path"}


def derive_allowed_hosts(upstream_base_url: str, allowed_hosts: Optional[list[str]]) -> list[str]:
    """Use the declared allow-list, or pin it to the upstream's own hostname."""
    if allowed_hosts:
        return list(allowed_hosts)
    hostname = hostname_of(upstream_base_url)
    return [hostname] if hostname else []


def _build_endpoints(endpoints: list[EndpointCreate]) -> list[ConnectorEndpoint]:
    seen: set[tuple[str, str]] = set()
    rows = []
    for ep in endpoints:
        key = (ep.method, ep.path)
        if key in seen:
            raise ValidationFailed(f"Duplicate endpoint {ep.method} {ep.path}")
        seen.add(key)
        rows.append(ConnectorEndpoint(**ep.model_dump()))
    return rows


class ConnectorService:
    """Connector operations for one caller scope."""

    def __init__(self, db: AsyncSession, resolver: ConnectorResolver):
        self.db = db
        self.resolver = resolver

    def _invalidate(self, scope: str, connector: ServiceConnector) -> None:
        self.resolver.invalidate_connector_cache(scope, connector.slug)
        if connector.visibility == ConnectorVisibility.PUBLIC:
            self.resolver.invalidate_slug(connector.slug)

    async def list_connectors(self, scope: str, status: Optional[ConnectorStatus] = None) -> list[ServiceConnector]:
        query = select(ServiceConnector).where(*scope_filter(ServiceConnector, scope))
        if status is not None:
            query = query.where(ServiceConnector.status == status)
        result = await self.db.execute(query.order_by(ServiceConnector.created_at.desc()))
        return list(result.scalars().all())

    async def get_connector(self, scope: str, connector_id: str) -> ServiceConnector:
        connector = await load_connector_with_endpoints(self.db, connector_id, scope)
        if connector is None:
            raise NotFound("Connector not found")
        return connector

    async def slug_exists(self, scope: str, slug: str) -> bool:
        result = await self.db.execute(
            select(ServiceConnector.id).where(
                ServiceConnector.slug == slug,
                *scope_filter(ServiceConnector, scope),
            )
        )
        return result.first() is not None

    async def create_connector(self, scope: str, user_id: str, data: ConnectorCreate) -> ServiceConnector:
        """
        Create a connector and its endpoints in one transaction.

        Raises:
            ConflictingState: If the slug is taken in this scope
            ValidationFailed: If the endpoint list is inconsistent
        """
        if await self.slug_exists(scope, data.slug):
            raise ConflictingState(f'Connector with slug "{data.slug}" already exists')

        fields = data.model_dump(exclude={"endpoints", "allowed_hosts"})
        connector = ServiceConnector(
            **fields,
            **scope_owner_fields(scope),
            created_by=user_id,
            allowed_hosts=derive_allowed_hosts(data.upstream_base_url, data.allowed_hosts),
            endpoints=_build_endpoints(data.endpoints),
        )

        self.db.add(connector)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictingState(f'Connector with slug "{data.slug}" already exists') from e

        await self.db.refresh(connector)
        self._invalidate(scope, connector)
        logger.info("Connector created", connector_id=connector.id, slug=connector.slug, scope=scope)
        return connector

    async def update_connector(self, scope: str, connector_id: str, data: ConnectorUpdate) -> ServiceConnector:
        """
        Apply a partial update and bump the connector version.

        Raises:
            NotFound: If the connector is not visible in this scope
            ConflictingState: If expected_version no longer matches
        """
        connector = await self.get_connector(scope, connector_id)

        if data.expected_version is not None and data.expected_version != connector.version:
            raise ConflictingState(
                "Connector was modified by another request",
                details={"currentVersion": connector.version, "expectedVersion": data.expected_version},
            )

        changes = data.model_dump(exclude_unset=True, exclude={"endpoints", "expected_version"})
        for key, value in changes.items():
            if value is None and key not in NULLABLE_FIELDS:
                continue
            setattr(connector, key, value)

        if "upstream_base_url" in changes and not connector.allowed_hosts:
            connector.allowed_hosts = derive_allowed_hosts(connector.upstream_base_url, None)

        if data.endpoints is not None:
            replacements = _build_endpoints(data.endpoints)
            # old routes must be gone before the same (method, path) is inserted again
            connector.endpoints.clear()
            await self.db.flush()
            connector.endpoints.extend(replacements)

        connector.version += 1
        await self.db.commit()
        await self.db.refresh(connector)

        self._invalidate(scope, connector)
        logger.info("Connector updated", connector_id=connector.id, version=connector.version)
        return connector

    async def set_status(self, scope: str, connector_id: str, status: ConnectorStatus) -> ServiceConnector:
        connector = await self.get_connector(scope, connector_id)

        if status == ConnectorStatus.PUBLISHED:
            connector.published_at = datetime.now(timezone.utc)

        connector.status = status
        connector.version += 1
        await self.db.commit()
        await self.db.refresh(connector)

        self._invalidate(scope, connector)
        logger.info("Connector status changed", connector_id=connector.id, status=status.value)
        return connector

    async def delete_connector(self, scope: str, connector_id: str) -> ServiceConnector:
        connector = await load_connector(self.db, connector_id, scope)
        if connector is None:
            raise NotFound("Connector not found")

        await self.db.delete(connector)
        await self.db.commit()

        self._invalidate(scope, connector)
        logger.info("Connector deleted", connector_id=connector_id, slug=connector.slug)
        return connector
