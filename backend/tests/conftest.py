"""
NaaP Runtime - Test Fixtures
============================

Shared pytest fixtures for all tests.
"""

import inspect
from collections.abc import AsyncGenerator
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from naap_runtime.api.main import app
from naap_runtime.core.database import Base, get_db
from naap_runtime.core.gateway import hosts
from naap_runtime.core.gateway.team_guard import IdentityClient
from naap_runtime.core.lifecycle.port_allocator import PortAllocator
from naap_runtime.core.models import (
    ConnectorEndpoint,
    ConnectorStatus,
    ConnectorVisibility,
    ServiceConnector,
)
from naap_runtime.core.runtime import RuntimeServices, build_services


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

IDENTITY_HOST = "identity.test"

# token -> (user id, team memberships)
TOKENS = {
    "user-1-token": ("user-1", ["team-a"]),
    "user-2-token": ("user-2", ["team-b"]),
}


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session: AsyncSession) -> async_sessionmaker:
    """Factory for components that open their own sessions (same in-memory database)."""
    return TestingSessionLocal


# ==========================================================================
# Outbound HTTP
# ==========================================================================

class UpstreamStub:
    """
    MockTransport handler standing in for every outbound HTTP call.

    Requests to the identity host are answered from TOKENS. Any other host
    is answered by its registered handler, or 200 {"status": "ok"}.
    """

    def __init__(self):
        self.routes: dict[str, Callable[[httpx.Request], Any]] = {}
        self.requests: list[httpx.Request] = []

    def route(self, host: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes[host] = handler

    def respond(self, host: str, status_code: int = 200, json: Any = None) -> None:
        body = {"status": "ok"} if json is None else json
        self.routes[host] = lambda request: httpx.Response(status_code, json=body)

    def calls_to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == IDENTITY_HOST:
            return identity_response(request)

        handler = self.routes.get(request.url.host)
        if handler is None:
            return httpx.Response(200, json={"status": "ok"})

        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response


def identity_response(request: httpx.Request) -> httpx.Response:
    token = request.headers.get("authorization", "").partition(" ")[2]
    if token == "identity-down":
        return httpx.Response(503, json={"error": "unavailable"})

    if token not in TOKENS:
        return httpx.Response(401, json={"error": "Unauthorized"})
    user_id, teams = TOKENS[token]
    return httpx.Response(
        200,
        json={"data": {"user": {"id": user_id, "teams": [{"id": team, "role": "admin"} for team in teams]}}},
    )


@pytest.fixture
def upstream() -> UpstreamStub:
    return UpstreamStub()


@pytest_asyncio.fixture
async def http_client(upstream: UpstreamStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


class ResolverStub:
    """Name resolution for outbound host checks; unknown names resolve to a public address."""

    PUBLIC_ADDRESS = "93.184.216.34"

    def __init__(self):
        self.addresses: dict[str, list[str]] = {}

    def add(self, hostname: str, *addresses: str) -> None:
        self.addresses[hostname] = list(addresses)

    async def __call__(self, hostname: str) -> list[str]:
        return self.addresses.get(hostname, [self.PUBLIC_ADDRESS])


@pytest.fixture(autouse=True)
def dns(monkeypatch: pytest.MonkeyPatch) -> ResolverStub:
    """Keep host checks off the real resolver."""
    resolver = ResolverStub()
    monkeypatch.setattr(hosts, "resolve_host", resolver)
    return resolver


# ==========================================================================
# Runtime Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def services(
    db_session: AsyncSession,
    http_client: httpx.AsyncClient,
) -> AsyncGenerator[RuntimeServices, None]:
    """Runtime services bound to the test database and the stub transport."""
    runtime = build_services(
        TestingSessionLocal,
        http_client=http_client,
        identity_client=IdentityClient(base_url=f"http://{IDENTITY_HOST}", http_client=http_client),
        port_allocator=PortAllocator(min_port=4301, max_port=4310, reserved_ports=set()),
    )
    yield runtime
    await runtime.stop()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    services: RuntimeServices,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and runtime overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    previous = app.state.services
    app.state.services = services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.services = previous
    app.dependency_overrides.clear()


# ==========================================================================
# Auth Fixtures
# ==========================================================================

@pytest.fixture
def team_a_headers() -> dict[str, str]:
    """user-1 acting for team-a."""
    return {"Authorization": "Bearer user-1-token", "x-team-id": "team-a"}


@pytest.fixture
def team_b_headers() -> dict[str, str]:
    """user-2 acting for team-b."""
    return {"Authorization": "Bearer user-2-token", "x-team-id": "team-b"}


@pytest.fixture
def personal_headers() -> dict[str, str]:
    """user-1 acting in their personal scope."""
    return {"Authorization": "Bearer user-1-token", "x-team-id": "personal"}


@pytest.fixture
def session_headers() -> dict[str, str]:
    return {"Authorization": "Bearer user-1-token"}


# ==========================================================================
# Connector Fixtures
# ==========================================================================

def connector_payload(slug: str = "weather", **overrides: Any) -> dict[str, Any]:
    payload = {
        "slug": slug,
        "display_name": "Weather API",
        "upstream_base_url": "https://api.weather.test",
        "health_check_path": "/health",
        "endpoints": [
            {"name": "forecast", "method": "GET", "path": "/forecast/:city", "upstream_path": "/v1/forecast"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    return connector_payload


@pytest_asyncio.fixture
async def make_connector(db_session: AsyncSession):
    """Insert a connector (published, team-a by default) straight into the store."""

    async def _make(
        slug: str = "weather",
        team_id: Optional[str] = "team-a",
        owner_user_id: Optional[str] = None,
        status: ConnectorStatus = ConnectorStatus.PUBLISHED,
        visibility: ConnectorVisibility = ConnectorVisibility.PRIVATE,
        upstream_base_url: str = "https://api.weather.test",
        endpoints: Optional[list[ConnectorEndpoint]] = None,
        **fields: Any,
    ) -> ServiceConnector:
        if "allowed_hosts" not in fields:
            fields["allowed_hosts"] = [httpx.URL(upstream_base_url).host]
        fields.setdefault("health_check_path", "/health")
        connector = ServiceConnector(
            slug=slug,
            display_name=slug.replace("-", " ").title(),
            team_id=team_id,
            owner_user_id=owner_user_id,
            status=status,
            visibility=visibility,
            upstream_base_url=upstream_base_url,
            endpoints=endpoints if endpoints is not None else [
                ConnectorEndpoint(name="forecast", method="GET", path="/forecast/:city", upstream_path="/v1/forecast"),
            ],
            **fields,
        )
        db_session.add(connector)
        await db_session.commit()
        await db_session.refresh(connector)
        return connector

    return _make
