"""
NaaP Runtime - API Key & Plan Tests
===================================
"""

from datetime import datetime, timedelta, timezone

from httpx import AsyncClient
from sqlalchemy import select

from naap_runtime.core.gateway.keys import generate_api_key, hash_api_key
from naap_runtime.core.models import GatewayApiKey
from naap_runtime.core.runtime import RuntimeServices

KEYS_URL = "/api/v1/gw/admin/keys"
PLANS_URL = "/api/v1/gw/admin/plans"

PLAN = {"name": "starter", "display_name": "Starter", "rate_limit": 60, "daily_quota": 1000}


async def create_plan(client: AsyncClient, headers: dict) -> dict:
    response = await client.post(PLANS_URL, json=PLAN, headers=headers)
    assert response.status_code == 201
    return response.json()


class TestKeyHelpers:
    def test_generated_keys_are_unique_and_prefixed(self):
        first, second = generate_api_key(), generate_api_key()

        assert first.startswith("gw_")
        assert first != second

    def test_hash_is_sha256_hex(self):
        assert hash_api_key("gw_abc") == hash_api_key("gw_abc")
        assert len(hash_api_key("gw_abc")) == 64


# ==========================================================================
# Plans
# ==========================================================================

class TestPlans:
    """Tests for plan CRUD."""

    async def test_create_and_get(self, client: AsyncClient, team_a_headers: dict):
        plan = await create_plan(client, team_a_headers)

        response = await client.get(f"{PLANS_URL}/{plan['id']}", headers=team_a_headers)

        assert response.json()["rate_limit"] == 60
        assert response.json()["team_id"] == "team-a"

    async def test_duplicate_name_conflicts(self, client: AsyncClient, team_a_headers: dict):
        await create_plan(client, team_a_headers)

        response = await client.post(PLANS_URL, json=PLAN, headers=team_a_headers)

        assert response.status_code == 409

    async def test_plans_are_scoped(self, client: AsyncClient, team_a_headers: dict, team_b_headers: dict):
        plan = await create_plan(client, team_a_headers)

        response = await client.get(f"{PLANS_URL}/{plan['id']}", headers=team_b_headers)
        listing = await client.get(PLANS_URL, headers=team_b_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "Plan not found"
        assert listing.json() == []

    async def test_update(self, client: AsyncClient, team_a_headers: dict):
        plan = await create_plan(client, team_a_headers)

        response = await client.put(
            f"{PLANS_URL}/{plan['id']}",
            json={"rate_limit": 120, "daily_quota": None},
            headers=team_a_headers,
        )

        assert response.json()["rate_limit"] == 120
        assert response.json()["daily_quota"] is None

    async def test_plan_in_use_cannot_be_deleted(self, client: AsyncClient, team_a_headers: dict):
        plan = await create_plan(client, team_a_headers)
        key = await client.post(KEYS_URL, json={"name": "ci", "plan_id": plan["id"]}, headers=team_a_headers)

        blocked = await client.delete(f"{PLANS_URL}/{plan['id']}", headers=team_a_headers)

        assert blocked.status_code == 409
        assert blocked.json()["code"] == "PLAN_IN_USE"
        assert blocked.json()["details"] == {"activeKeys": 1}

        await client.delete(f"{KEYS_URL}/{key.json()['id']}", headers=team_a_headers)
        deleted = await client.delete(f"{PLANS_URL}/{plan['id']}", headers=team_a_headers)

        assert deleted.json() == {"id": plan["id"], "deleted": True}


# ==========================================================================
# Keys
# ==========================================================================

class TestApiKeys:
    """Tests for key issue, listing and revocation."""

    async def test_raw_key_returned_once_and_only_hash_stored(
        self,
        client: AsyncClient,
        services: RuntimeServices,
        team_a_headers: dict,
    ):
        created = await client.post(KEYS_URL, json={"name": "ci"}, headers=team_a_headers)

        assert created.status_code == 201
        raw_key = created.json()["key"]
        assert raw_key.startswith("gw_")
        assert created.json()["key_prefix"] == raw_key[:12]

        listing = await client.get(KEYS_URL, headers=team_a_headers)
        assert "key" not in listing.json()[0]
        assert "key_hash" not in listing.json()[0]

        async with services.session_factory() as db:
            stored = (await db.execute(select(GatewayApiKey))).scalar_one()
        assert stored.key_hash == hash_api_key(raw_key)
        assert raw_key not in (stored.key_prefix, stored.key_hash)

    async def test_revoke_is_idempotent(self, client: AsyncClient, team_a_headers: dict):
        created = await client.post(KEYS_URL, json={"name": "ci"}, headers=team_a_headers)
        url = f"{KEYS_URL}/{created.json()['id']}"

        first = await client.delete(url, headers=team_a_headers)
        second = await client.delete(url, headers=team_a_headers)

        assert first.json()["status"] == "revoked"
        assert second.status_code == 200
        assert second.json()["revoked_at"] == first.json()["revoked_at"]

    async def test_foreign_key_cannot_be_revoked(
        self,
        client: AsyncClient,
        team_a_headers: dict,
        team_b_headers: dict,
    ):
        created = await client.post(KEYS_URL, json={"name": "ci"}, headers=team_a_headers)

        response = await client.delete(f"{KEYS_URL}/{created.json()['id']}", headers=team_b_headers)

        assert response.status_code == 404

    async def test_expiry_must_be_in_future(self, client: AsyncClient, team_a_headers: dict):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()

        response = await client.post(KEYS_URL, json={"name": "ci", "expires_at": past}, headers=team_a_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "expires_at must be in the future"

    async def test_key_for_foreign_connector_rejected(
        self,
        client: AsyncClient,
        make_connector,
        team_b_headers: dict,
    ):
        connector = await make_connector()

        response = await client.post(
            KEYS_URL,
            json={"name": "ci", "connector_id": connector.id},
            headers=team_b_headers,
        )

        assert response.status_code == 404

    async def test_list_filters_by_connector(self, client: AsyncClient, make_connector, team_a_headers: dict):
        connector = await make_connector()
        await client.post(KEYS_URL, json={"name": "bound", "connector_id": connector.id}, headers=team_a_headers)
        await client.post(KEYS_URL, json={"name": "unbound"}, headers=team_a_headers)

        response = await client.get(KEYS_URL, params={"connector_id": connector.id}, headers=team_a_headers)

        assert [k["name"] for k in response.json()] == ["bound"]
