"""
NaaP Runtime - External Proxy Tests
===================================
"""

import json
from typing import Optional

import httpx
import pytest
from fastapi import APIRouter, FastAPI, Request
from httpx import ASGITransport, AsyncClient

from naap_runtime.core.gateway.proxy import ExternalProxyConfig, mount_external_proxy


class ExternalApi:
    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(
            self.status_code,
            content=b'{"answer": 42}' if self.status_code == 200 else b"bad gateway",
            headers={"X-RateLimit-Remaining": "9"},
        )


@pytest.fixture
def external() -> ExternalApi:
    return ExternalApi()


def make_client(external: ExternalApi, **overrides) -> AsyncClient:
    def authorize(request: Request) -> bool:
        return request.headers.get("x-proxy-user") != "blocked"

    config = ExternalProxyConfig(
        allowed_hosts=["example.com"],
        expose_headers=[("X-RateLimit-Remaining", "X-Upstream-Remaining")],
        forward_headers=lambda request: {"Authorization": "Bearer server-side-key"},
        authorize=authorize,
        max_body_bytes=64,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(external)),
    )
    for key, value in overrides.items():
        setattr(config, key, value)

    router = APIRouter()
    mount_external_proxy(router, "/proxy", config)
    app = FastAPI()
    app.include_router(router)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def post(client: AsyncClient, target: Optional[str], body: object = {"q": "life"}, **headers) -> httpx.Response:
    if target is not None:
        headers["X-Target-URL"] = target
    return await client.post("/proxy", content=json.dumps(body), headers=headers)


class TestExternalProxy:
    """Tests for create_external_proxy."""

    async def test_forwards_to_allowed_subdomain(self, external: ExternalApi):
        async with make_client(external) as client:
            response = await post(client, "https://api.example.com/v1/ask")

        assert response.status_code == 200
        assert response.json() == {"answer": 42}
        assert response.headers["X-Upstream-Remaining"] == "9"

        sent = external.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == "https://api.example.com/v1/ask"
        assert sent.headers["Authorization"] == "Bearer server-side-key"
        assert json.loads(sent.content) == {"q": "life"}

    async def test_missing_target_header(self, external: ExternalApi):
        async with make_client(external) as client:
            response = await post(client, None)

        assert response.status_code == 400
        assert response.json()["error"] == "Missing X-Target-URL header"

    @pytest.mark.parametrize(
        "target",
        ["https://evil-example.com/x", "https://example.com.evil.net/x", "http://127.0.0.1/x"],
    )
    async def test_host_not_allowed(self, external: ExternalApi, target: str):
        async with make_client(external, allowed_hosts=["example.com", "127.0.0.1"]) as client:
            response = await post(client, target)

        assert response.status_code == 400
        assert response.json()["code"] == "HOST_NOT_ALLOWED"
        assert external.requests == []

    @pytest.mark.parametrize("host", ["127.1", "2130706433", "0x7f000001"])
    async def test_loopback_in_legacy_notation_not_allowed(self, external: ExternalApi, host: str):
        async with make_client(external, allowed_hosts=[host]) as client:
            response = await post(client, f"http://{host}/x")

        assert response.status_code == 400
        assert response.json()["code"] == "HOST_NOT_ALLOWED"
        assert external.requests == []

    async def test_allowed_name_resolving_to_internal_address(self, external: ExternalApi, dns):
        dns.add("api.example.com", "10.0.0.8")

        async with make_client(external) as client:
            response = await post(client, "https://api.example.com/v1/ask")

        assert response.status_code == 400
        assert response.json()["code"] == "HOST_NOT_ALLOWED"
        assert external.requests == []

    async def test_non_http_target_rejected(self, external: ExternalApi):
        async with make_client(external) as client:
            response = await post(client, "file:///etc/passwd")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.parametrize("body", [{}, None])
    async def test_empty_json_body_rejected(self, external: ExternalApi, body: object):
        async with make_client(external) as client:
            response = await post(client, "https://example.com/x", body=body)

        assert response.status_code == 400
        assert "Request body is required" in response.json()["error"]

    async def test_oversized_body_rejected(self, external: ExternalApi):
        async with make_client(external) as client:
            response = await post(client, "https://example.com/x", body={"q": "x" * 100})

        assert response.status_code == 413

    async def test_unauthorized_caller(self, external: ExternalApi):
        async with make_client(external) as client:
            response = await post(client, "https://example.com/x", **{"x-proxy-user": "blocked"})

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    async def test_upstream_error_status_is_passed_through(self, external: ExternalApi):
        external.status_code = 502

        async with make_client(external) as client:
            response = await post(client, "https://example.com/x")

        assert response.status_code == 502
        assert response.json() == {"error": "External API returned 502: bad gateway", "code": "UPSTREAM_ERROR"}

    async def test_upstream_timeout(self, external: ExternalApi):
        external.error = httpx.ReadTimeout("slow")

        async with make_client(external) as client:
            response = await post(client, "https://example.com/x")

        assert response.status_code == 504
        assert response.json()["code"] == "UPSTREAM_TIMEOUT"
