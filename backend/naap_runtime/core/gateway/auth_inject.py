"""
Upstream credential injection.

Turns a connector's auth scheme plus its resolved secrets into the
headers and query parameters an upstream request needs. A missing secret
never fails the request: the credential is omitted and a warning header
is attached instead.
"""

import base64
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from naap_runtime.core.models import AuthType

logger = structlog.get_logger()

MISSING_SECRET_WARNING = "missing-auth-secret"


@dataclass
class AuthInjection:
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)


def required_refs(auth_type: AuthType, auth_config: Optional[dict[str, Any]]) -> list[str]:
    config = auth_config or {}
    if auth_type == AuthType.BEARER:
        return [config.get("tokenRef") or "token"]
    if auth_type in (AuthType.HEADER, AuthType.QUERY):
        return [config.get("secretRef") or "token"]
    if auth_type == AuthType.BASIC:
        return [config.get("usernameRef") or "username", config.get("passwordRef") or "password"]
    return []


def build_auth(
    auth_type: AuthType,
    auth_config: Optional[dict[str, Any]],
    secrets: dict[str, str],
) -> AuthInjection:
    config = auth_config or {}
    result = AuthInjection()

    refs = required_refs(auth_type, config)
    result.missing = [ref for ref in refs if not (secrets.get(ref) or "").strip()]
    if result.missing:
        result.headers["X-Gateway-Warning"] = MISSING_SECRET_WARNING
        logger.warning("Auth secret missing for connector", auth_type=auth_type.value, refs=result.missing)
        return result

    if auth_type == AuthType.BEARER:
        result.headers["Authorization"] = f"Bearer {secrets[refs[0]]}"

    elif auth_type == AuthType.HEADER:
        header_name = config.get("headerName") or "X-API-Key"
        result.headers[header_name] = secrets[refs[0]]

    elif auth_type == AuthType.BASIC:
        raw = f"{secrets[refs[0]]}:{secrets[refs[1]]}".encode()
        result.headers["Authorization"] = "Basic " + base64.b64encode(raw).decode()

    elif auth_type == AuthType.QUERY:
        result.params[config.get("paramName") or "key"] = secrets[refs[0]]

    return result
