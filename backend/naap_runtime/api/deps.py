"""
NaaP Runtime - API Dependencies
===============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated, Union

from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.database import get_db
from naap_runtime.core.gateway.team_guard import AdminContext, get_admin_context, get_session_user
from naap_runtime.core.runtime import RuntimeServices


def get_services(request: Request) -> RuntimeServices:
    return request.app.state.services


async def admin_context(
    request: Request,
    services: Annotated[RuntimeServices, Depends(get_services)],
) -> Union[AdminContext, JSONResponse]:
    """
    Resolve the caller for a gateway admin route.

    Failures come back as a ready error response. Handlers return it as-is
    when is_error_response(ctx) is true.
    """
    return await get_admin_context(request, services.identity)


async def session_user(
    request: Request,
    services: Annotated[RuntimeServices, Depends(get_services)],
) -> Union[tuple[str, str], JSONResponse]:
    return await get_session_user(request, services.identity)


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]
Services = Annotated[RuntimeServices, Depends(get_services)]
AdminCtx = Annotated[Union[AdminContext, JSONResponse], Depends(admin_context)]
SessionUser = Annotated[Union[tuple[str, str], JSONResponse], Depends(session_user)]
