"""
NaaP Runtime - Database Models
==============================

SQLAlchemy models for the rows the lifecycle and gateway runtime reads
and writes. The schema itself is owned by the platform; these mappings
mirror the columns the runtime touches.
"""

import enum
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from naap_runtime.core.database import Base


def new_id() -> str:
    return str(uuid4())


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    """Store str-enums by value so rows stay readable from other services."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda cls: [member.value for member in cls],
    )


# ==========================================================================
# Enums
# ==========================================================================

class InstallationStatus(str, enum.Enum):
    """Plugin installation state."""
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"
    UNINSTALLED = "uninstalled"


class SlotName(str, enum.Enum):
    """Deployment slots for blue/green rollouts."""
    BLUE = "blue"
    GREEN = "green"


class SlotStatus(str, enum.Enum):
    ACTIVE = "active"
    DEPLOYING = "deploying"
    INACTIVE = "inactive"


class SlotHealth(str, enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class AlertStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ConnectorStatus(str, enum.Enum):
    """Publication state of a Service Gateway connector."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class ConnectorVisibility(str, enum.Enum):
    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"


class AuthType(str, enum.Enum):
    """How the gateway authenticates against an upstream."""
    NONE = "none"
    BEARER = "bearer"
    HEADER = "header"
    BASIC = "basic"
    QUERY = "query"


class UpstreamHealth(str, enum.Enum):
    """Classification of a connector health check."""
    UP = "up"
    DEGRADED = "degraded"
    DOWN = "down"


class ApiKeyStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class AuditAction(str, enum.Enum):
    """Admin operations recorded in the audit trail."""
    CONNECTOR_CREATE = "connector.create"
    CONNECTOR_UPDATE = "connector.update"
    CONNECTOR_PUBLISH = "connector.publish"
    CONNECTOR_ARCHIVE = "connector.archive"
    CONNECTOR_DELETE = "connector.delete"
    CONNECTOR_TEST = "connector.test"
    TEMPLATE_APPLY = "template.apply"
    KEY_CREATE = "key.create"
    KEY_REVOKE = "key.revoke"
    PLAN_CREATE = "plan.create"
    PLAN_UPDATE = "plan.update"
    PLAN_DELETE = "plan.delete"
    HEALTH_CHECK_RUN = "health.check"


class AuditStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Plugin Registry
# ==========================================================================

class PluginPackage(Base, TimestampMixin):
    """A published plugin. Versions are totally ordered by semver."""

    __tablename__ = "plugin_packages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    versions: Mapped[list["PluginVersion"]] = relationship(
        back_populates="package",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class PluginVersion(Base):
    """One published version of a package."""

    __tablename__ = "plugin_versions"
    __table_args__ = (UniqueConstraint("package_id", "version", name="uq_plugin_version"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    package_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("plugin_packages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[str] = mapped_column(String(64), nullable=False)
    manifest: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    deprecated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deprecation_msg: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    downloads: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    published_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    package: Mapped[PluginPackage] = relationship(back_populates="versions")


class PluginInstallation(Base, TimestampMixin):
    """An installed plugin and the infrastructure provisioned for it."""

    __tablename__ = "plugin_installations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    package_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("plugin_packages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("plugin_versions.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[InstallationStatus] = mapped_column(
        _enum(InstallationStatus),
        default=InstallationStatus.INSTALLING,
        nullable=False,
    )
    container_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    database_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    container_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    package: Mapped[PluginPackage] = relationship(lazy="selectin")
    version: Mapped[Optional[PluginVersion]] = relationship(lazy="selectin")


# ==========================================================================
# Deployments (blue/green slots)
# ==========================================================================

class PluginDeployment(Base, TimestampMixin):
    __tablename__ = "plugin_deployments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    package_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("plugin_packages.id", ondelete="CASCADE"),
        nullable=True,
    )
    active_slot: Mapped[SlotName] = mapped_column(
        _enum(SlotName),
        default=SlotName.BLUE,
        nullable=False,
    )

    slots: Mapped[list["PluginDeploymentSlot"]] = relationship(
        back_populates="deployment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class PluginDeploymentSlot(Base, TimestampMixin):
    """
    One named slot of a deployment.

    Mutated only by the slot health monitor and by promotion/rollback.
    Slots are deactivated, never deleted.
    """

    __tablename__ = "plugin_deployment_slots"
    __table_args__ = (UniqueConstraint("deployment_id", "slot", name="uq_deployment_slot"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("plugin_deployments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot: Mapped[SlotName] = mapped_column(_enum(SlotName), nullable=False)
    status: Mapped[SlotStatus] = mapped_column(
        _enum(SlotStatus),
        default=SlotStatus.INACTIVE,
        nullable=False,
    )
    version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    backend_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)  # None = frontend-only
    traffic_percent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    health_status: Mapped[SlotHealth] = mapped_column(
        _enum(SlotHealth),
        default=SlotHealth.UNKNOWN,
        nullable=False,
    )
    health_check_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_health_check: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    deployment: Mapped[PluginDeployment] = relationship(back_populates="slots")


class PluginAlert(Base, TimestampMixin):
    """Alert rule for a deployment; `auto_rollback` arms the health monitor."""

    __tablename__ = "plugin_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("plugin_deployments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    metric: Mapped[str] = mapped_column(String(50), default="health_check", nullable=False)
    auto_rollback: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class HealthAlert(Base):
    """Raised alert for a slot. At most one open alert per slot."""

    __tablename__ = "health_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    deployment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    slot: Mapped[SlotName] = mapped_column(_enum(SlotName), nullable=False)
    status: Mapped[AlertStatus] = mapped_column(
        _enum(AlertStatus),
        default=AlertStatus.OPEN,
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ==========================================================================
# Service Gateway
# ==========================================================================

class ServiceConnector(Base, TimestampMixin):
    """
    A declarative upstream API definition.

    Owned by exactly one team or one personal user (team_id XOR owner_user_id).
    """

    __tablename__ = "service_connectors"
    __table_args__ = (
        UniqueConstraint("team_id", "slug", name="uq_connector_team_slug"),
        UniqueConstraint("owner_user_id", "slug", name="uq_connector_owner_slug"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[ConnectorStatus] = mapped_column(
        _enum(ConnectorStatus),
        default=ConnectorStatus.DRAFT,
        nullable=False,
    )
    visibility: Mapped[ConnectorVisibility] = mapped_column(
        _enum(ConnectorVisibility),
        default=ConnectorVisibility.PRIVATE,
        nullable=False,
    )

    upstream_base_url: Mapped[str] = mapped_column(String(500), nullable=False)
    allowed_hosts: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    default_timeout: Mapped[int] = mapped_column(Integer, default=30000, nullable=False)  # ms
    health_check_path: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    auth_type: Mapped[AuthType] = mapped_column(_enum(AuthType), default=AuthType.NONE, nullable=False)
    auth_config: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    secret_refs: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    streaming_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    # Optimistic concurrency counter, incremented on every update
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    endpoints: Mapped[list["ConnectorEndpoint"]] = relationship(
        back_populates="connector",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ConnectorEndpoint.created_at",
    )

    @property
    def scope_id(self) -> str:
        if self.team_id:
            return self.team_id
        return f"personal:{self.owner_user_id}"


class ConnectorEndpoint(Base, TimestampMixin):
    """One proxied route of a connector."""

    __tablename__ = "connector_endpoints"
    __table_args__ = (
        UniqueConstraint("connector_id", "method", "path", name="uq_endpoint_route"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    connector_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("service_connectors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    method: Mapped[str] = mapped_column(String(10), default="GET", nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    upstream_method: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    upstream_path: Mapped[str] = mapped_column(String(500), nullable=False)
    upstream_content_type: Mapped[str] = mapped_column(
        String(100),
        default="application/json",
        nullable=False,
    )
    upstream_query_params: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    upstream_static_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body_transform: Mapped[str] = mapped_column(String(50), default="passthrough", nullable=False)
    response_transform: Mapped[str] = mapped_column(String(50), default="raw", nullable=False)
    header_mapping: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    rate_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timeout: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # ms
    max_request_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_response_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cache_ttl: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # seconds
    retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    required_headers: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)

    connector: Mapped[ServiceConnector] = relationship(back_populates="endpoints")


class ConnectorTemplate(Base, TimestampMixin):
    """Read-only seed data used to stamp out new connectors."""

    __tablename__ = "connector_templates"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    icon: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    connector: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    endpoints: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)


class GatewaySecret(Base, TimestampMixin):
    """A secret value owned by a scope (team id or personal:<user>)."""

    __tablename__ = "gateway_secrets"
    __table_args__ = (
        UniqueConstraint("scope_id", "connector_slug", "ref", name="uq_gateway_secret"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    scope_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    connector_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    ref: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class GatewayHealthCheck(Base):
    """Append-only health check result. Never updated."""

    __tablename__ = "gateway_health_checks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    connector_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("service_connectors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[UpstreamHealth] = mapped_column(_enum(UpstreamHealth), nullable=False)
    latency_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    checked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )


class GatewayPlan(Base, TimestampMixin):
    """Rate and quota limits applied through API keys."""

    __tablename__ = "gateway_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    rate_limit: Mapped[int] = mapped_column(Integer, default=100, nullable=False)  # per minute
    daily_quota: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    monthly_quota: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_request_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    burst_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    allowed_connectors: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)


class GatewayApiKey(Base, TimestampMixin):
    """Consumer API key. Only the SHA-256 hash of the raw key is stored."""

    __tablename__ = "gateway_api_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    owner_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    connector_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("service_connectors.id", ondelete="SET NULL"),
        nullable=True,
    )
    plan_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("gateway_plans.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[ApiKeyStatus] = mapped_column(
        _enum(ApiKeyStatus),
        default=ApiKeyStatus.ACTIVE,
        nullable=False,
    )
    allowed_endpoints: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    allowed_ips: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# ==========================================================================
# Audit
# ==========================================================================

class AuditLog(Base):
    """Append-only compliance trail for admin mutations."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    action: Mapped[AuditAction] = mapped_column(_enum(AuditAction), nullable=False, index=True)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[AuditStatus] = mapped_column(
        _enum(AuditStatus),
        default=AuditStatus.SUCCESS,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
