"""
Team Guard - Caller identity and ownership scope for gateway admin routes.

get_admin_context never raises: every failure comes back as a ready
JSONResponse, and handlers check is_error_response before continuing.
A team header is honoured only for members of that team. Connector
lookups are always scoped, and a connector owned by someone
else is reported exactly like a missing one.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import quote

import httpx
import structlog
from fastapi import Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.config import settings
from naap_runtime.core.exceptions import DependencyUnavailable, ErrorCode
from naap_runtime.core.gateway.scope import (
    PERSONAL_PREFIX,
    is_personal_scope,
    parse_scope,
    personal_scope_id,
    scope_filter,
)
from naap_runtime.core.models import ServiceConnector
from naap_runtime.core.schemas import ErrorResponse

logger = structlog.get_logger()

TEAM_HEADER = "x-team-id"


@dataclass
class AdminContext:
    user_id: str
    team_id: str  # scope string: a team id or personal:<userId>
    token: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_personal(self) -> bool:
        return is_personal_scope(self.team_id)


def error_response(status_code: int, message: str, code: ErrorCode) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, code=code.value).model_dump(exclude_none=True),
    )


def is_error_response(value: Any) -> bool:
    return isinstance(value, Response)


@dataclass
class IdentityUser:
    id: str
    # None when the identity payload carries no team list
    team_ids: Optional[frozenset[str]] = None


def _team_ids(payload: dict[str, Any]) -> Optional[frozenset[str]]:
    teams = payload.get("teams")
    if teams is None:
        teams = payload.get("teamIds")
    if not isinstance(teams, list):
        return None
    ids = set()
    for team in teams:
        if isinstance(team, dict):
            team = team.get("id") or team.get("teamId")
        if team:
            ids.add(str(team))
    return frozenset(ids)


class IdentityClient:
    """Validates bearer tokens and team membership against the platform identity service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.BASE_SVC_URL).rstrip("/")
        self.http_client = http_client
        self.timeout = timeout if timeout is not None else settings.IDENTITY_TIMEOUT_SECONDS

    async def _get(self, path: str, token: str) -> httpx.Response:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            if self.http_client is not None:
                response = await self.http_client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise DependencyUnavailable(f"Identity service unreachable: {e}") from e

        if response.status_code >= 500:
            raise DependencyUnavailable(f"Identity service error: HTTP {response.status_code}")
        return response

    async def get_user(self, token: str) -> Optional[IdentityUser]:
        """
        Resolve a token to the calling user.

        Returns:
            The user, or None if the token is rejected

        Raises:
            DependencyUnavailable: If the identity service cannot be reached
                or fails
        """
        if not token.isascii():
            # not a token the identity service could have issued
            return None
        response = await self._get("/api/v1/auth/me", token)
        if not response.is_success:
            return None

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None

        # {"user": {...}}, {"data": {"user": {...}}} or a bare user object
        payload = data.get("data") if isinstance(data.get("data"), dict) else data
        user = payload["user"] if isinstance(payload.get("user"), dict) else payload
        user_id = user.get("id")
        if not user_id:
            return None
        teams = _team_ids(user)
        if teams is None:
            teams = _team_ids(payload)
        return IdentityUser(id=str(user_id), team_ids=teams)

    async def get_user_id(self, token: str) -> Optional[str]:
        user = await self.get_user(token)
        return user.id if user else None

    async def is_team_member(self, token: str, user: IdentityUser, team_id: str) -> bool:
        """
        Check that ``user`` belongs to ``team_id``.

        Uses the team list from the token lookup when there is one, and asks
        the team's membership endpoint otherwise.
        """
        if user.team_ids is not None:
            return team_id in user.team_ids

        response = await self._get(f"/api/v1/teams/{quote(team_id, safe='')}/members/me", token)
        return response.is_success


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def _authenticate(
    request: Request,
    identity: IdentityClient,
) -> Union[tuple[IdentityUser, str], JSONResponse]:
    token = _bearer_token(request)
    if token is None:
        return error_response(401, "Missing bearer token", ErrorCode.UNAUTHORIZED)

    try:
        user = await identity.get_user(token)
    except DependencyUnavailable as e:
        logger.error("Identity service unavailable", error=e.message)
        return error_response(503, e.message, ErrorCode.DEPENDENCY_UNAVAILABLE)

    if user is None:
        return error_response(401, "Invalid or expired token", ErrorCode.UNAUTHORIZED)
    return user, token


async def get_session_user(
    request: Request,
    identity: IdentityClient,
) -> Union[tuple[str, str], JSONResponse]:
    """Validate the bearer token only. Returns (user_id, token)."""
    session = await _authenticate(request, identity)
    if is_error_response(session):
        return session
    user, token = session
    return user.id, token


async def get_admin_context(
    request: Request,
    identity: IdentityClient,
) -> Union[AdminContext, JSONResponse]:
    session = await _authenticate(request, identity)
    if is_error_response(session):
        return session
    user, token = session

    team_header = (request.headers.get(TEAM_HEADER) or "").strip()
    if not team_header:
        return error_response(400, f"Missing {TEAM_HEADER} header", ErrorCode.MISSING_TEAM)

    if team_header == "personal" or team_header.startswith(PERSONAL_PREFIX):
        scope = personal_scope_id(user.id)
        if team_header != "personal" and parse_scope(team_header).owner_user_id != user.id:
            return error_response(403, "Personal scope belongs to another user", ErrorCode.FORBIDDEN)
    else:
        try:
            member = await identity.is_team_member(token, user, team_header)
        except DependencyUnavailable as e:
            logger.error("Identity service unavailable", error=e.message)
            return error_response(503, e.message, ErrorCode.DEPENDENCY_UNAVAILABLE)
        if not member:
            logger.warning("Team access denied", user_id=user.id, team_id=team_header)
            return error_response(403, "Not a member of this team", ErrorCode.FORBIDDEN)
        scope = team_header

    return AdminContext(
        user_id=user.id,
        team_id=scope,
        token=token,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def load_connector(db: AsyncSession, connector_id: str, team_id: str) -> Optional[ServiceConnector]:
    """Fetch a connector owned by ``team_id``. Foreign and missing ids both yield None."""
    result = await db.execute(
        select(ServiceConnector).where(
            ServiceConnector.id == connector_id,
            *scope_filter(ServiceConnector, team_id),
        )
    )
    return result.scalar_one_or_none()


async def load_connector_with_endpoints(
    db: AsyncSession,
    connector_id: str,
    team_id: str,
) -> Optional[ServiceConnector]:
    connector = await load_connector(db, connector_id, team_id)
    if connector is not None:
        # endpoints load with the row; refresh picks up rows written this session
        await db.refresh(connector, attribute_names=["endpoints"])
    return connector
