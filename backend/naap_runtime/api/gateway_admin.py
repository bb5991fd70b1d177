"""
Gateway Admin API Routes.

Connector, template, key and plan management for the caller's team (or
personal) scope, plus the health-check trigger. Every route resolves the
caller first and returns the guard's error response unchanged when that
fails. Audit entries are scheduled last and never awaited.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Query, Request, status

from naap_runtime.api.deps import AdminCtx, DbSession, Services
from naap_runtime.core.config import settings
from naap_runtime.core.gateway.audit import AuditEntry
from naap_runtime.core.gateway import connectivity
from naap_runtime.core.gateway.connectors import ConnectorService
from naap_runtime.core.gateway.keys import ApiKeyService, PlanService
from naap_runtime.core.gateway.team_guard import get_admin_context, is_error_response
from naap_runtime.core.gateway.templates import create_connector_from_template, load_connector_templates
from naap_runtime.core.models import AuditAction, AuditStatus, ConnectorStatus, UpstreamHealth
from naap_runtime.core.schemas import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyResponse,
    ConnectivityResponse,
    ConnectorCreate,
    ConnectorListResponse,
    ConnectorResponse,
    ConnectorStatusUpdate,
    ConnectorUpdate,
    HealthCheckRecord,
    HealthCheckRunResponse,
    PlanCreate,
    PlanResponse,
    PlanUpdate,
    TemplateApply,
    TemplateResponse,
)

router = APIRouter(prefix="/gw/admin", tags=["gateway-admin"])

STATUS_ACTIONS = {
    ConnectorStatus.PUBLISHED: AuditAction.CONNECTOR_PUBLISH,
    ConnectorStatus.ARCHIVED: AuditAction.CONNECTOR_ARCHIVE,
    ConnectorStatus.DRAFT: AuditAction.CONNECTOR_UPDATE,
}


# ==========================================================================
# Connectors
# ==========================================================================

@router.get("/connectors", response_model=ConnectorListResponse)
async def list_connectors(
    ctx: AdminCtx,
    db: DbSession,
    services: Services,
    status_filter: Optional[ConnectorStatus] = Query(None, alias="status"),
):
    if is_error_response(ctx):
        return ctx

    connectors = await ConnectorService(db, services.resolver).list_connectors(ctx.team_id, status_filter)
    return ConnectorListResponse(
        connectors=[ConnectorResponse.model_validate(c) for c in connectors],
        total=len(connectors),
    )


@router.post("/connectors", response_model=ConnectorResponse, status_code=status.HTTP_201_CREATED)
async def create_connector(data: ConnectorCreate, ctx: AdminCtx, db: DbSession, services: Services):
    if is_error_response(ctx):
        return ctx

    connector = await ConnectorService(db, services.resolver).create_connector(ctx.team_id, ctx.user_id, data)
    response = ConnectorResponse.model_validate(connector)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.CONNECTOR_CREATE,
        resource="connector",
        resource_id=connector.id,
        details={"slug": connector.slug},
    ))
    return response


@router.get("/connectors/{connector_id}", response_model=ConnectorResponse)
async def get_connector(connector_id: str, ctx: AdminCtx, db: DbSession, services: Services):
    if is_error_response(ctx):
        return ctx

    connector = await ConnectorService(db, services.resolver).get_connector(ctx.team_id, connector_id)
    return ConnectorResponse.model_validate(connector)


@router.put("/connectors/{connector_id}", response_model=ConnectorResponse)
async def update_connector(
    connector_id: str,
    data: ConnectorUpdate,
    ctx: AdminCtx,
    db: DbSession,
    services: Services,
):
    if is_error_response(ctx):
        return ctx

    connector = await ConnectorService(db, services.resolver).update_connector(ctx.team_id, connector_id, data)
    response = ConnectorResponse.model_validate(connector)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.CONNECTOR_UPDATE,
        resource="connector",
        resource_id=connector.id,
        details={"fields": sorted(data.model_fields_set - {"expected_version"}), "version": connector.version},
    ))
    return response


@router.patch("/connectors/{connector_id}", response_model=ConnectorResponse)
async def set_connector_status(
    connector_id: str,
    data: ConnectorStatusUpdate,
    ctx: AdminCtx,
    db: DbSession,
    services: Services,
):
    """Publish, archive or return a connector to draft."""
    if is_error_response(ctx):
        return ctx

    connector = await ConnectorService(db, services.resolver).set_status(ctx.team_id, connector_id, data.status)
    response = ConnectorResponse.model_validate(connector)

    services.audit.log_audit(ctx, AuditEntry(
        action=STATUS_ACTIONS[data.status],
        resource="connector",
        resource_id=connector.id,
        details={"status": data.status.value},
    ))
    return response


@router.delete("/connectors/{connector_id}")
async def delete_connector(connector_id: str, ctx: AdminCtx, db: DbSession, services: Services) -> dict:
    if is_error_response(ctx):
        return ctx

    connector = await ConnectorService(db, services.resolver).delete_connector(ctx.team_id, connector_id)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.CONNECTOR_DELETE,
        resource="connector",
        resource_id=connector_id,
        details={"slug": connector.slug},
    ))
    return {"id": connector_id, "deleted": True}


@router.post("/connectors/{connector_id}/test", response_model=ConnectivityResponse)
async def test_connector(connector_id: str, ctx: AdminCtx, db: DbSession, services: Services):
    """Check the connector's upstream health path once."""
    if is_error_response(ctx):
        return ctx

    connector = await ConnectorService(db, services.resolver).get_connector(ctx.team_id, connector_id)
    result = await connectivity.test_upstream_connectivity(db, connector, services.http_client)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.CONNECTOR_TEST,
        resource="connector",
        resource_id=connector_id,
        details={"statusCode": result.status_code, "latencyMs": result.latency_ms, "error": result.error},
        status=AuditStatus.SUCCESS if result.success else AuditStatus.FAILURE,
    ))
    return ConnectivityResponse(
        success=result.success,
        status_code=result.status_code,
        latency_ms=result.latency_ms,
        error=result.error,
        warning=result.warning,
    )


# ==========================================================================
# Templates
# ==========================================================================

@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(ctx: AdminCtx, db: DbSession):
    if is_error_response(ctx):
        return ctx

    templates = await load_connector_templates(db)
    return [TemplateResponse.model_validate(t) for t in templates]


@router.post("/templates", response_model=ConnectorResponse, status_code=status.HTTP_201_CREATED)
async def apply_template(data: TemplateApply, ctx: AdminCtx, db: DbSession, services: Services):
    """Create a draft connector from a template."""
    if is_error_response(ctx):
        return ctx

    connector = await create_connector_from_template(db, services.resolver, ctx.team_id, ctx.user_id, data)
    response = ConnectorResponse.model_validate(connector)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.TEMPLATE_APPLY,
        resource="connector",
        resource_id=connector.id,
        details={"templateId": data.template_id, "slug": connector.slug},
    ))
    return response


# ==========================================================================
# API Keys
# ==========================================================================

@router.get("/keys", response_model=list[ApiKeyResponse])
async def list_keys(ctx: AdminCtx, db: DbSession, connector_id: Optional[str] = None):
    if is_error_response(ctx):
        return ctx

    keys = await ApiKeyService(db).list_keys(ctx.team_id, connector_id)
    return [ApiKeyResponse.model_validate(k) for k in keys]


@router.post("/keys", response_model=ApiKeyCreated, status_code=status.HTTP_201_CREATED)
async def create_key(data: ApiKeyCreate, ctx: AdminCtx, db: DbSession, services: Services):
    """Issue a key. The raw key is only ever returned here."""
    if is_error_response(ctx):
        return ctx

    key, raw_key = await ApiKeyService(db).create_key(ctx.team_id, ctx.user_id, data)
    response = ApiKeyCreated.model_validate({**ApiKeyResponse.model_validate(key).model_dump(), "key": raw_key})

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.KEY_CREATE,
        resource="api_key",
        resource_id=key.id,
        details={"prefix": key.key_prefix, "planId": key.plan_id},
    ))
    return response


@router.delete("/keys/{key_id}", response_model=ApiKeyResponse)
async def revoke_key(key_id: str, ctx: AdminCtx, db: DbSession, services: Services):
    if is_error_response(ctx):
        return ctx

    key = await ApiKeyService(db).revoke_key(ctx.team_id, key_id)
    response = ApiKeyResponse.model_validate(key)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.KEY_REVOKE,
        resource="api_key",
        resource_id=key.id,
        details={"prefix": key.key_prefix},
    ))
    return response


# ==========================================================================
# Plans
# ==========================================================================

@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(ctx: AdminCtx, db: DbSession):
    if is_error_response(ctx):
        return ctx

    plans = await PlanService(db).list_plans(ctx.team_id)
    return [PlanResponse.model_validate(p) for p in plans]


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(data: PlanCreate, ctx: AdminCtx, db: DbSession, services: Services):
    if is_error_response(ctx):
        return ctx

    plan = await PlanService(db).create_plan(ctx.team_id, data)
    response = PlanResponse.model_validate(plan)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.PLAN_CREATE,
        resource="plan",
        resource_id=plan.id,
        details={"name": plan.name},
    ))
    return response


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, ctx: AdminCtx, db: DbSession):
    if is_error_response(ctx):
        return ctx

    plan = await PlanService(db).get_plan(ctx.team_id, plan_id)
    return PlanResponse.model_validate(plan)


@router.put("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(plan_id: str, data: PlanUpdate, ctx: AdminCtx, db: DbSession, services: Services):
    if is_error_response(ctx):
        return ctx

    plan = await PlanService(db).update_plan(ctx.team_id, plan_id, data)
    response = PlanResponse.model_validate(plan)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.PLAN_UPDATE,
        resource="plan",
        resource_id=plan.id,
        details={"fields": sorted(data.model_fields_set)},
    ))
    return response


@router.delete("/plans/{plan_id}")
async def delete_plan(plan_id: str, ctx: AdminCtx, db: DbSession, services: Services) -> dict:
    if is_error_response(ctx):
        return ctx

    plan = await PlanService(db).delete_plan(ctx.team_id, plan_id)

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.PLAN_DELETE,
        resource="plan",
        resource_id=plan_id,
        details={"name": plan.name},
    ))
    return {"id": plan_id, "deleted": True}


# ==========================================================================
# Health Check
# ==========================================================================

def _is_cron_request(request: Request) -> bool:
    if not settings.CRON_SECRET:
        return False
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return secrets.compare_digest(token.strip().encode(), settings.CRON_SECRET.encode())


@router.api_route("/health/check", methods=["GET", "POST"], response_model=HealthCheckRunResponse)
async def run_health_check(request: Request, services: Services):
    """
    Check published connectors.

    The cron credential checks every scope; an admin session checks only
    the caller's own connectors.
    """
    ctx = None
    scope = None
    if not _is_cron_request(request):
        ctx = await get_admin_context(request, services.identity)
        if is_error_response(ctx):
            return ctx
        scope = ctx.team_id

    summary = await services.scheduler.run_health_check(scope)
    response = HealthCheckRunResponse(
        checked=len(summary.results),
        up=summary.count(UpstreamHealth.UP),
        degraded=summary.count(UpstreamHealth.DEGRADED),
        down=summary.count(UpstreamHealth.DOWN),
        truncated=summary.truncated,
        results=[HealthCheckRecord.model_validate(r) for r in summary.results],
    )

    services.audit.log_audit(ctx, AuditEntry(
        action=AuditAction.HEALTH_CHECK_RUN,
        resource="gateway",
        details={"trigger": "cron" if ctx is None else "admin", "checked": response.checked},
    ))
    return response
