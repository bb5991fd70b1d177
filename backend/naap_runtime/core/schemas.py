"""
NaaP Runtime - Pydantic Schemas
===============================

Request and response schemas for the gateway admin and lifecycle APIs.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from naap_runtime.core.models import (
    ApiKeyStatus,
    AuthType,
    ConnectorStatus,
    ConnectorVisibility,
    UpstreamHealth,
)

SLUG_PATTERN = r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$"
HTTP_METHOD_PATTERN = r"^(GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS)$"


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseSchema):
    """Service health response."""

    status: str
    version: str
    environment: str
    database: str


# ==========================================================================
# Connector Schemas
# ==========================================================================

class EndpointCreate(BaseSchema):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    method: str = Field("GET", pattern=HTTP_METHOD_PATTERN)
    path: str = Field(min_length=1, max_length=500)
    enabled: bool = True
    upstream_method: Optional[str] = Field(None, pattern=HTTP_METHOD_PATTERN)
    upstream_path: str = Field(min_length=1, max_length=500)
    upstream_content_type: str = "application/json"
    upstream_query_params: dict[str, Any] = Field(default_factory=dict)
    upstream_static_body: Optional[str] = None
    body_transform: str = "passthrough"
    response_transform: str = "raw"
    header_mapping: dict[str, Any] = Field(default_factory=dict)
    rate_limit: Optional[int] = Field(None, ge=1)
    timeout: Optional[int] = Field(None, ge=1)
    max_request_size: Optional[int] = Field(None, ge=1)
    max_response_size: Optional[int] = Field(None, ge=1)
    cache_ttl: Optional[int] = Field(None, ge=0)
    retries: int = Field(0, ge=0, le=5)
    required_headers: list[str] = Field(default_factory=list)

    @field_validator("method", "upstream_method", mode="before")
    @classmethod
    def upper_method(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if isinstance(v, str) else v

    @field_validator("path", "upstream_path")
    @classmethod
    def leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else f"/{v}"


class EndpointResponse(EndpointCreate):
    id: str
    connector_id: str


class ConnectorCreate(BaseSchema):
    slug: str = Field(min_length=1, max_length=100, pattern=SLUG_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=50)
    visibility: ConnectorVisibility = ConnectorVisibility.PRIVATE
    upstream_base_url: str = Field(min_length=1, max_length=500)
    allowed_hosts: list[str] = Field(default_factory=list)
    default_timeout: int = Field(30000, ge=100, le=300000)
    health_check_path: Optional[str] = None
    auth_type: AuthType = AuthType.NONE
    auth_config: dict[str, Any] = Field(default_factory=dict)
    secret_refs: list[str] = Field(default_factory=list)
    streaming_enabled: bool = False
    tags: list[str] = Field(default_factory=list)
    endpoints: list[EndpointCreate] = Field(default_factory=list)

    @field_validator("upstream_base_url")
    @classmethod
    def http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("upstream_base_url must be an http(s) URL")
        return v.rstrip("/")


class ConnectorUpdate(BaseSchema):
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=50)
    visibility: Optional[ConnectorVisibility] = None
    upstream_base_url: Optional[str] = Field(None, min_length=1, max_length=500)
    allowed_hosts: Optional[list[str]] = None
    default_timeout: Optional[int] = Field(None, ge=100, le=300000)
    health_check_path: Optional[str] = None
    auth_type: Optional[AuthType] = None
    auth_config: Optional[dict[str, Any]] = None
    secret_refs: Optional[list[str]] = None
    streaming_enabled: Optional[bool] = None
    tags: Optional[list[str]] = None
    endpoints: Optional[list[EndpointCreate]] = None
    expected_version: Optional[int] = Field(None, ge=1)

    @field_validator("upstream_base_url")
    @classmethod
    def http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("upstream_base_url must be an http(s) URL")
        return v.rstrip("/") if v else v


class ConnectorStatusUpdate(BaseSchema):
    status: ConnectorStatus


class ConnectorResponse(BaseSchema):
    id: str
    team_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    slug: str
    display_name: str
    description: Optional[str] = None
    category: Optional[str] = None
    status: ConnectorStatus
    visibility: ConnectorVisibility
    upstream_base_url: str
    allowed_hosts: list[str]
    default_timeout: int
    health_check_path: Optional[str] = None
    auth_type: AuthType
    auth_config: dict[str, Any]
    secret_refs: list[str]
    streaming_enabled: bool
    tags: list[str]
    version: int
    published_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    endpoints: list[EndpointResponse] = Field(default_factory=list)


class ConnectorListResponse(BaseSchema):
    connectors: list[ConnectorResponse]
    total: int


# ==========================================================================
# Template Schemas
# ==========================================================================

class TemplateResponse(BaseSchema):
    id: str
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    icon: Optional[str] = None
    connector: dict[str, Any]
    endpoints: list[dict[str, Any]]


class TemplateApply(BaseSchema):
    template_id: str = Field(min_length=1)
    slug: Optional[str] = Field(None, max_length=100)  # checked when the template is applied
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    upstream_base_url: Optional[str] = None


# ==========================================================================
# Connectivity & Health Schemas
# ==========================================================================

class ConnectivityResponse(BaseSchema):
    success: bool
    status_code: Optional[int] = None
    latency_ms: int
    error: Optional[str] = None
    warning: Optional[str] = None


class HealthCheckRecord(BaseSchema):
    connector_id: str
    slug: str
    status: UpstreamHealth
    latency_ms: Optional[int] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


class HealthCheckRunResponse(BaseSchema):
    checked: int
    up: int
    degraded: int
    down: int
    truncated: bool = False
    results: list[HealthCheckRecord]


# ==========================================================================
# Plan & Key Schemas
# ==========================================================================

class PlanCreate(BaseSchema):
    name: str = Field(min_length=1, max_length=100, pattern=SLUG_PATTERN)
    display_name: str = Field(min_length=1, max_length=255)
    rate_limit: int = Field(100, ge=1)
    daily_quota: Optional[int] = Field(None, ge=1)
    monthly_quota: Optional[int] = Field(None, ge=1)
    max_request_size: Optional[int] = Field(None, ge=1)
    burst_limit: Optional[int] = Field(None, ge=1)
    allowed_connectors: list[str] = Field(default_factory=list)


class PlanUpdate(BaseSchema):
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    rate_limit: Optional[int] = Field(None, ge=1)
    daily_quota: Optional[int] = Field(None, ge=1)
    monthly_quota: Optional[int] = Field(None, ge=1)
    max_request_size: Optional[int] = Field(None, ge=1)
    burst_limit: Optional[int] = Field(None, ge=1)
    allowed_connectors: Optional[list[str]] = None


class PlanResponse(PlanCreate):
    id: str
    team_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ApiKeyCreate(BaseSchema):
    name: str = Field(min_length=1, max_length=255)
    connector_id: Optional[str] = None
    plan_id: Optional[str] = None
    allowed_endpoints: list[str] = Field(default_factory=list)
    allowed_ips: list[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseSchema):
    """Stored key metadata. The hash is never exposed."""

    id: str
    name: str
    key_prefix: str
    status: ApiKeyStatus
    connector_id: Optional[str] = None
    plan_id: Optional[str] = None
    allowed_endpoints: list[str]
    allowed_ips: list[str]
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime


class ApiKeyCreated(ApiKeyResponse):
    """Returned once, on creation. ``key`` is not retrievable afterwards."""

    key: str


# ==========================================================================
# Lifecycle Schemas
# ==========================================================================

class PortPoolResponse(BaseSchema):
    range: str
    total: int
    allocated: int
    available: int
    allocations: dict[str, int]


class MonitorsResponse(BaseSchema):
    plugins: list[dict[str, Any]]
    slots: list[dict[str, Any]]
    stats: dict[str, Any]


class VersionValidateRequest(BaseSchema):
    version: str = Field(min_length=1, max_length=64)


class VersionValidateResponse(BaseSchema):
    valid: bool
    error: Optional[str] = None
    prerelease: bool = False
    conflict: Optional[dict[str, Any]] = None
