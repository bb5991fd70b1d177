"""
NaaP Runtime - Connector Admin API Tests
========================================
"""

import pytest
from sqlalchemy import select
from httpx import AsyncClient

from naap_runtime.core.models import AuditAction, AuditLog, AuditStatus, AuthType, ConnectorStatus, GatewaySecret
from naap_runtime.core.runtime import RuntimeServices

CONNECTORS_URL = "/api/v1/gw/admin/connectors"


async def audit_rows(services: RuntimeServices) -> list[AuditLog]:
    await services.audit.drain()
    async with services.session_factory() as db:
        result = await db.execute(select(AuditLog).order_by(AuditLog.created_at))
        return list(result.scalars().all())


# ==========================================================================
# Create & Read
# ==========================================================================

class TestCreateConnector:
    """Tests for POST /gw/admin/connectors."""

    async def test_create_connector(
        self,
        client: AsyncClient,
        services: RuntimeServices,
        team_a_headers: dict,
        make_payload,
    ):
        response = await client.post(CONNECTORS_URL, json=make_payload(), headers=team_a_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["slug"] == "weather"
        assert data["team_id"] == "team-a"
        assert data["owner_user_id"] is None
        assert data["status"] == "draft"
        assert data["version"] == 1
        assert data["allowed_hosts"] == ["api.weather.test"]
        assert [e["path"] for e in data["endpoints"]] == ["/forecast/:city"]

        rows = await audit_rows(services)
        assert [(r.action, r.resource_id, r.user_id, r.team_id) for r in rows] == [
            (AuditAction.CONNECTOR_CREATE, data["id"], "user-1", "team-a"),
        ]

    async def test_personal_connector_is_owned_by_user(
        self,
        client: AsyncClient,
        personal_headers: dict,
        make_payload,
    ):
        response = await client.post(CONNECTORS_URL, json=make_payload(), headers=personal_headers)

        assert response.status_code == 201
        assert response.json()["team_id"] is None
        assert response.json()["owner_user_id"] == "user-1"

    async def test_duplicate_slug_conflicts_within_scope_only(
        self,
        client: AsyncClient,
        team_a_headers: dict,
        team_b_headers: dict,
        make_payload,
    ):
        await client.post(CONNECTORS_URL, json=make_payload(), headers=team_a_headers)

        duplicate = await client.post(CONNECTORS_URL, json=make_payload(), headers=team_a_headers)
        other_team = await client.post(CONNECTORS_URL, json=make_payload(), headers=team_b_headers)

        assert duplicate.status_code == 409
        assert duplicate.json() == {"error": 'Connector with slug "weather" already exists', "code": "CONFLICT"}
        assert other_team.status_code == 201

    async def test_invalid_slug_rejected(self, client: AsyncClient, team_a_headers: dict, make_payload):
        response = await client.post(CONNECTORS_URL, json=make_payload("Weather_API"), headers=team_a_headers)

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"][0]["loc"] == ["body", "slug"]

    async def test_non_http_upstream_rejected(self, client: AsyncClient, team_a_headers: dict, make_payload):
        payload = make_payload(upstream_base_url="ftp://files.weather.test")

        response = await client.post(CONNECTORS_URL, json=payload, headers=team_a_headers)

        assert response.status_code == 422

    async def test_duplicate_endpoints_rejected(self, client: AsyncClient, team_a_headers: dict, make_payload):
        route = {"name": "a", "method": "get", "path": "/x", "upstream_path": "/x"}
        payload = make_payload(endpoints=[route, {**route, "name": "b"}])

        response = await client.post(CONNECTORS_URL, json=payload, headers=team_a_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "Duplicate endpoint GET /x"


class TestListAndGet:
    """Tests for listing and fetching connectors."""

    async def test_list_filters_by_status(self, client: AsyncClient, make_connector, team_a_headers: dict):
        await make_connector("weather")
        await make_connector("drafty", status=ConnectorStatus.DRAFT)
        await make_connector("elsewhere", team_id="team-b")

        everything = await client.get(CONNECTORS_URL, headers=team_a_headers)
        drafts = await client.get(CONNECTORS_URL, params={"status": "draft"}, headers=team_a_headers)

        assert everything.json()["total"] == 2
        assert sorted(c["slug"] for c in everything.json()["connectors"]) == ["drafty", "weather"]
        assert [c["slug"] for c in drafts.json()["connectors"]] == ["drafty"]

    async def test_get_includes_endpoints(self, client: AsyncClient, make_connector, team_a_headers: dict):
        connector = await make_connector()

        response = await client.get(f"{CONNECTORS_URL}/{connector.id}", headers=team_a_headers)

        assert response.status_code == 200
        assert response.json()["endpoints"][0]["upstream_path"] == "/v1/forecast"


# ==========================================================================
# Update, Publish & Delete
# ==========================================================================

class TestUpdateConnector:
    """Tests for PUT and PATCH."""

    async def test_update_bumps_version(self, client: AsyncClient, make_connector, team_a_headers: dict):
        connector = await make_connector()

        response = await client.put(
            f"{CONNECTORS_URL}/{connector.id}",
            json={"display_name": "Weather v2", "description": "Forecasts", "expected_version": 1},
            headers=team_a_headers,
        )

        assert response.status_code == 200
        assert response.json()["display_name"] == "Weather v2"
        assert response.json()["version"] == 2

    async def test_stale_version_conflicts(self, client: AsyncClient, make_connector, team_a_headers: dict):
        connector = await make_connector()
        url = f"{CONNECTORS_URL}/{connector.id}"
        await client.put(url, json={"display_name": "First"}, headers=team_a_headers)

        response = await client.put(url, json={"display_name": "Second", "expected_version": 1}, headers=team_a_headers)

        assert response.status_code == 409
        assert response.json() == {
            "error": "Connector was modified by another request",
            "code": "CONFLICT",
            "details": {"currentVersion": 2, "expectedVersion": 1},
        }

    async def test_endpoints_are_replaced(self, client: AsyncClient, make_connector, team_a_headers: dict):
        connector = await make_connector()

        response = await client.put(
            f"{CONNECTORS_URL}/{connector.id}",
            json={"endpoints": [
                {"name": "forecast", "method": "GET", "path": "/forecast/:city", "upstream_path": "/v2/forecast"},
                {"name": "alerts", "method": "GET", "path": "/alerts", "upstream_path": "/v2/alerts"},
            ]},
            headers=team_a_headers,
        )

        assert response.status_code == 200
        assert sorted(e["upstream_path"] for e in response.json()["endpoints"]) == ["/v2/alerts", "/v2/forecast"]

    async def test_publish_is_visible_to_resolver_immediately(
        self,
        client: AsyncClient,
        services: RuntimeServices,
        team_a_headers: dict,
        make_payload,
    ):
        created = await client.post(CONNECTORS_URL, json=make_payload(), headers=team_a_headers)
        connector_id = created.json()["id"]
        assert await services.resolver.get_connector("team-a", "weather") is None

        response = await client.patch(
            f"{CONNECTORS_URL}/{connector_id}",
            json={"status": "published"},
            headers=team_a_headers,
        )

        assert response.status_code == 200
        assert response.json()["published_at"] is not None
        resolved = await services.resolver.resolve_config("team-a", "weather", "GET", "/forecast/paris")
        assert resolved is not None
        assert resolved.connector.id == connector_id

        rows = await audit_rows(services)
        assert AuditAction.CONNECTOR_PUBLISH in [r.action for r in rows]

    async def test_archive_hides_from_resolver(
        self,
        client: AsyncClient,
        services: RuntimeServices,
        make_connector,
        team_a_headers: dict,
    ):
        connector = await make_connector()
        assert await services.resolver.get_connector("team-a", "weather") is not None

        await client.patch(f"{CONNECTORS_URL}/{connector.id}", json={"status": "archived"}, headers=team_a_headers)

        assert await services.resolver.get_connector("team-a", "weather") is None


class TestDeleteConnector:
    async def test_delete(
        self,
        client: AsyncClient,
        services: RuntimeServices,
        make_connector,
        team_a_headers: dict,
    ):
        connector = await make_connector()
        await services.resolver.get_connector("team-a", "weather")

        response = await client.delete(f"{CONNECTORS_URL}/{connector.id}", headers=team_a_headers)

        assert response.json() == {"id": connector.id, "deleted": True}
        assert (await client.get(f"{CONNECTORS_URL}/{connector.id}", headers=team_a_headers)).status_code == 404
        assert await services.resolver.get_connector("team-a", "weather") is None


# ==========================================================================
# Connectivity Test
# ==========================================================================

class TestConnectivity:
    """Tests for POST /gw/admin/connectors/{id}/test."""

    async def test_successful_probe_injects_auth(
        self,
        client: AsyncClient,
        db_session,
        upstream,
        make_connector,
        team_a_headers: dict,
    ):
        connector = await make_connector(auth_type=AuthType.BEARER, auth_config={"tokenRef": "token"})
        db_session.add(GatewaySecret(scope_id="team-a", connector_slug="weather", ref="token", value="wx-secret"))
        await db_session.commit()

        response = await client.post(f"{CONNECTORS_URL}/{connector.id}/test", headers=team_a_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["warning"] is None
        sent = upstream.calls_to("api.weather.test")[0]
        assert str(sent.url) == "https://api.weather.test/health"
        assert sent.headers["Authorization"] == "Bearer wx-secret"

    async def test_missing_secret_warns(
        self,
        client: AsyncClient,
        upstream,
        make_connector,
        team_a_headers: dict,
    ):
        connector = await make_connector(auth_type=AuthType.HEADER, auth_config={"secretRef": "key"})

        response = await client.post(f"{CONNECTORS_URL}/{connector.id}/test", headers=team_a_headers)

        assert response.json()["warning"] == "missing-auth-secret"
        sent = upstream.calls_to("api.weather.test")[0]
        assert "X-API-Key" not in sent.headers

    async def test_failed_probe_audited_as_failure(
        self,
        client: AsyncClient,
        services: RuntimeServices,
        upstream,
        make_connector,
        team_a_headers: dict,
    ):
        connector = await make_connector()
        upstream.respond("api.weather.test", 503, {"status": "down"})

        response = await client.post(f"{CONNECTORS_URL}/{connector.id}/test", headers=team_a_headers)

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["status_code"] == 503
        assert response.json()["error"] == "HTTP 503"

        rows = await audit_rows(services)
        assert rows[-1].action == AuditAction.CONNECTOR_TEST
        assert rows[-1].status == AuditStatus.FAILURE

    async def test_private_upstream_never_contacted(
        self,
        client: AsyncClient,
        upstream,
        make_connector,
        team_a_headers: dict,
    ):
        connector = await make_connector(upstream_base_url="http://127.0.0.1:8080", allowed_hosts=["127.0.0.1"])

        response = await client.post(f"{CONNECTORS_URL}/{connector.id}/test", headers=team_a_headers)

        assert response.json()["success"] is False
        assert response.json()["error"] == "Host not allowed: 127.0.0.1"
        assert upstream.calls_to("127.0.0.1") == []

    @pytest.mark.parametrize("host", ["127.1", "2130706433", "0x7f000001", "0177.0.0.1"])
    async def test_loopback_in_legacy_notation_never_contacted(
        self,
        client: AsyncClient,
        upstream,
        make_connector,
        team_a_headers: dict,
        host: str,
    ):
        connector = await make_connector(upstream_base_url=f"http://{host}:8080", allowed_hosts=[host])

        response = await client.post(f"{CONNECTORS_URL}/{connector.id}/test", headers=team_a_headers)

        assert response.json()["success"] is False
        assert response.json()["error"] == f"Host not allowed: {host}"
        assert [r for r in upstream.requests if r.url.host != "identity.test"] == []

    async def test_name_resolving_to_internal_address_never_contacted(
        self,
        client: AsyncClient,
        upstream,
        dns,
        make_connector,
        team_a_headers: dict,
    ):
        dns.add("api.weather.test", "169.254.169.254")
        connector = await make_connector()

        response = await client.post(f"{CONNECTORS_URL}/{connector.id}/test", headers=team_a_headers)

        assert response.json()["success"] is False
        assert response.json()["error"] == "Host not allowed: api.weather.test"
        assert upstream.calls_to("api.weather.test") == []
