"""
NaaP Runtime - Host Allow-list & Scope Tests
============================================
"""

import pytest

from naap_runtime.core.gateway.connectors import derive_allowed_hosts
from naap_runtime.core.gateway.hosts import (
    host_matches,
    hostname_of,
    is_private_host,
    is_public_destination,
    parse_address,
    resolve_host,
    validate_host,
)
from naap_runtime.core.gateway.proxy import is_allowed_target
from naap_runtime.core.gateway.scope import (
    Scope,
    is_personal_scope,
    parse_scope,
    personal_scope_id,
    scope_id,
    scope_owner_fields,
)


# ==========================================================================
# SSRF Checks
# ==========================================================================

class TestIsPrivateHost:
    """Tests for is_private_host."""

    @pytest.mark.parametrize(
        "host",
        [
            "localhost",
            "LOCALHOST.",
            "api.localhost",
            "metadata.google.internal",
            "127.0.0.1",
            "10.1.2.3",
            "172.16.0.9",
            "192.168.1.1",
            "169.254.169.254",
            "0.0.0.0",
            "::1",
            "[::1]",
            "fe80::1",
            "::ffff:127.0.0.1",
            "224.0.0.1",
            "",
        ],
    )
    def test_blocked(self, host: str):
        assert is_private_host(host) is True

    @pytest.mark.parametrize("host", ["api.weather.test", "8.8.8.8", "2606:4700::1111", "example.com"])
    def test_public(self, host: str):
        assert is_private_host(host) is False

    @pytest.mark.parametrize(
        ("host", "address"),
        [
            ("127.1", "127.0.0.1"),
            ("2130706433", "127.0.0.1"),
            ("0x7f000001", "127.0.0.1"),
            ("0177.0.0.1", "127.0.0.1"),
            ("10.1", "10.0.0.1"),
        ],
    )
    def test_legacy_ipv4_notations_are_blocked(self, host: str, address: str):
        assert str(parse_address(host)) == address
        assert is_private_host(host) is True
        assert validate_host(host, []) is False
        assert validate_host(host, [host]) is False

    def test_public_integer_address_stays_public(self):
        assert str(parse_address("134744072")) == "8.8.8.8"
        assert is_private_host("134744072") is False

    def test_names_are_not_addresses(self):
        assert parse_address("1password.com") is None
        assert parse_address("api.weather.test") is None


class TestAllowList:
    """Tests for host_matches and validate_host."""

    def test_wildcard_matches_apex_and_subdomains(self):
        assert host_matches("example.com", "*.example.com")
        assert host_matches("api.eu.example.com", "*.example.com")
        assert not host_matches("evil-example.com", "*.example.com")
        assert not host_matches("example.com.evil.net", "*.example.com")

    def test_exact_entry_is_case_insensitive(self):
        assert host_matches("API.Weather.Test", "api.weather.test")
        assert not host_matches("v2.api.weather.test", "api.weather.test")

    def test_validate_host(self):
        assert validate_host("api.weather.test", ["api.weather.test"])
        assert not validate_host("api.other.test", ["api.weather.test"])
        # empty allow-list permits public hosts only
        assert validate_host("api.other.test", [])
        assert not validate_host("127.0.0.1", [])
        assert not validate_host("localhost", ["localhost"])

    def test_hostname_of(self):
        assert hostname_of("https://API.weather.test:8443/v1?x=1") == "api.weather.test"
        assert hostname_of("not a url") is None

    def test_proxy_targets_require_true_subdomain(self):
        assert is_allowed_target("api.example.com", ["example.com"])
        assert is_allowed_target("example.com", ["example.com"])
        assert not is_allowed_target("evil-example.com", ["example.com"])
        assert not is_allowed_target("127.0.0.1", ["127.0.0.1"])

    def test_derive_allowed_hosts(self):
        assert derive_allowed_hosts("https://api.weather.test/v1", []) == ["api.weather.test"]
        assert derive_allowed_hosts("https://api.weather.test", ["*.weather.test"]) == ["*.weather.test"]


class TestDestinationResolution:
    """Tests for is_public_destination; names go through the stub resolver."""

    async def test_public_name_allowed(self, dns):
        assert await is_public_destination("api.weather.test", ["api.weather.test"]) is True

    async def test_name_resolving_to_internal_address_blocked(self, dns):
        dns.add("internal.weather.test", "10.0.0.5")

        assert await is_public_destination("internal.weather.test", ["*.weather.test"]) is False

    async def test_any_internal_address_blocks(self, dns):
        dns.add("mixed.weather.test", "93.184.216.34", "::1")

        assert await is_public_destination("mixed.weather.test") is False

    async def test_unresolvable_name_left_to_fail_at_request_time(self, dns):
        dns.add("gone.weather.test")

        assert await is_public_destination("gone.weather.test") is True

    async def test_allow_list_still_applies(self, dns):
        assert await is_public_destination("api.other.test", ["api.weather.test"]) is False
        assert await is_public_destination("127.1", ["127.1"]) is False

    async def test_system_resolver_reports_loopback_for_localhost(self):
        addresses = await resolve_host("localhost")

        assert addresses
        assert any(parse_address(a.split("%", 1)[0]).is_loopback for a in addresses)


# ==========================================================================
# Ownership Scopes
# ==========================================================================

class TestScope:
    """Tests for scope parsing."""

    def test_team_scope(self):
        assert parse_scope("team-a") == Scope(team_id="team-a")
        assert not is_personal_scope("team-a")
        assert scope_owner_fields("team-a") == {"team_id": "team-a", "owner_user_id": None}

    def test_personal_scope(self):
        scope = parse_scope("personal:user-1")

        assert scope.is_personal
        assert scope.owner_user_id == "user-1"
        assert personal_scope_id("user-1") == "personal:user-1"
        assert scope_owner_fields("personal:user-1") == {"team_id": None, "owner_user_id": "user-1"}

    def test_scope_id_prefers_team(self):
        assert scope_id("team-a", "user-1") == "team-a"
        assert scope_id(None, "user-1") == "personal:user-1"
