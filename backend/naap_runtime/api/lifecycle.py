"""
Lifecycle API Routes.

Read-mostly diagnostics for the plugin lifecycle runtime: the port table,
active monitors, deployment slot health, and version pre-checks. Callers
need a valid session but no team header.
"""

from fastapi import APIRouter

from naap_runtime.api.deps import DbSession, Services, SessionUser
from naap_runtime.core.exceptions import NotFound
from naap_runtime.core.gateway.team_guard import is_error_response
from naap_runtime.core.lifecycle.version_manager import VersionManager, is_prerelease, validate_version
from naap_runtime.core.schemas import (
    MonitorsResponse,
    PortPoolResponse,
    VersionValidateRequest,
    VersionValidateResponse,
)

router = APIRouter(prefix="/lifecycle", tags=["lifecycle"])


@router.get("/ports", response_model=PortPoolResponse)
async def get_port_pool(user: SessionUser, services: Services):
    if is_error_response(user):
        return user
    return PortPoolResponse(**services.port_allocator.get_pool_status())


@router.get("/monitors", response_model=MonitorsResponse)
async def get_monitors(user: SessionUser, services: Services):
    """Plugin process monitors and deployment slot monitors."""
    if is_error_response(user):
        return user

    return MonitorsResponse(
        plugins=[p.to_dict() for p in services.process_monitor.get_all_status()],
        slots=services.slot_monitor.get_active_monitors(),
        stats={
            **services.slot_monitor.get_stats(),
            "monitoredPlugins": services.process_monitor.get_monitored_count(),
        },
    )


@router.post("/monitors/{plugin_name}/check")
async def trigger_plugin_check(plugin_name: str, user: SessionUser, services: Services) -> dict:
    if is_error_response(user):
        return user

    if services.process_monitor.get_status(plugin_name) is None:
        raise NotFound(f"Plugin is not monitored: {plugin_name}")

    status = await services.process_monitor.trigger_check(plugin_name)
    return status.to_dict()


@router.get("/deployments/{deployment_id}/health")
async def get_deployment_health(deployment_id: str, user: SessionUser, services: Services) -> dict:
    if is_error_response(user):
        return user
    return await services.slot_monitor.get_health_status(deployment_id)


@router.post("/packages/{package_name}/versions/validate", response_model=VersionValidateResponse)
async def validate_package_version(
    package_name: str,
    data: VersionValidateRequest,
    user: SessionUser,
    db: DbSession,
):
    """
    Check a version string before publishing.

    An unknown package has nothing to conflict with, so only the format
    is checked.
    """
    if is_error_response(user):
        return user

    validation = validate_version(data.version)
    if not validation.valid:
        return VersionValidateResponse(valid=False, error=validation.error)

    manager = VersionManager(db)
    conflict = None
    package = await manager.get_package(package_name)
    if package is not None:
        conflict = await manager.check_version_conflict(package.id, data.version)

    return VersionValidateResponse(
        valid=conflict is None,
        error=conflict.reason if conflict else None,
        prerelease=is_prerelease(data.version),
        conflict=conflict.to_dict() if conflict else None,
    )
