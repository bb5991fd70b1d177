"""
External Proxy - Server-side forwarding to third-party APIs.

Browser code that cannot call an API directly (CORS, or a key that must
stay server-side) posts to a route built by create_external_proxy. The
target URL comes from a request header and must match the configured
host allow-list.
"""

import inspect
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlsplit

import httpx
import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from naap_runtime.core.config import settings
from naap_runtime.core.exceptions import ErrorCode
from naap_runtime.core.gateway.hosts import is_private_host, is_public_destination
from naap_runtime.core.gateway.team_guard import error_response
from naap_runtime.core.schemas import ErrorResponse

logger = structlog.get_logger()

AuthorizeCallback = Callable[[Request], Union[bool, Awaitable[bool]]]
ForwardHeaders = Union[dict[str, str], Callable[[Request], dict[str, str]]]


@dataclass
class ExternalProxyConfig:
    allowed_hosts: list[str]
    target_url_header: str = "X-Target-URL"
    content_type: str = "application/json"
    max_body_bytes: int = 1024 * 1024
    # (upstream header, header returned to the caller)
    expose_headers: list[tuple[str, str]] = field(default_factory=list)
    forward_headers: Optional[ForwardHeaders] = None
    timeout_seconds: float = field(default_factory=lambda: settings.GATEWAY_PROXY_TIMEOUT_SECONDS)
    authorize: Optional[AuthorizeCallback] = None
    http_client: Optional[httpx.AsyncClient] = None


def is_allowed_target(hostname: str, allowed_hosts: list[str]) -> bool:
    """Exact match or a true subdomain; ``evil-example.com`` never matches ``example.com``."""
    hostname = hostname.lower()
    if is_private_host(hostname):
        return False
    return any(
        hostname == allowed.lower() or hostname.endswith("." + allowed.lower())
        for allowed in allowed_hosts
    )


def create_external_proxy(config: ExternalProxyConfig) -> Callable[[Request], Awaitable[Response]]:
    """
    Build a proxy endpoint for ``config``.

    Mount it with ``router.add_api_route(path, endpoint, methods=["POST"])``
    or use mount_external_proxy.
    """
    is_json = config.content_type == "application/json"

    async def external_proxy(request: Request) -> Response:
        try:
            if config.authorize is not None:
                allowed = config.authorize(request)
                if inspect.isawaitable(allowed):
                    allowed = await allowed
                if allowed is False:
                    return error_response(403, "Proxy request not authorized", ErrorCode.FORBIDDEN)

            target_url = request.headers.get(config.target_url_header)
            if not target_url:
                return error_response(400, f"Missing {config.target_url_header} header", ErrorCode.VALIDATION_ERROR)

            parts = urlsplit(target_url)
            if parts.scheme not in ("http", "https") or not parts.hostname:
                return error_response(400, f"Invalid URL in {config.target_url_header} header", ErrorCode.VALIDATION_ERROR)

            allowed = is_allowed_target(parts.hostname, config.allowed_hosts)
            if not allowed or not await is_public_destination(parts.hostname):
                return error_response(
                    400,
                    f'Host "{parts.hostname}" is not in the allowed list',
                    ErrorCode.HOST_NOT_ALLOWED,
                )

            body = await request.body()
            if len(body) > config.max_body_bytes:
                return error_response(413, "Request body too large", ErrorCode.VALIDATION_ERROR)
            if not body.strip() or (is_json and body.strip() in (b"{}", b"null")):
                return error_response(
                    400,
                    f"Request body is required (Content-Type: {config.content_type})",
                    ErrorCode.VALIDATION_ERROR,
                )

            headers = {"Content-Type": config.content_type}
            if config.forward_headers is not None:
                extra = config.forward_headers
                headers.update(extra(request) if callable(extra) else extra)

            logger.info("Forwarding external proxy request", method=request.method, host=parts.hostname, path=parts.path)
            upstream = await _send(config, request.method, target_url, headers, body)

            if not upstream.is_success:
                logger.error("External proxy upstream returned an error", status_code=upstream.status_code, host=parts.hostname)
                return JSONResponse(
                    status_code=upstream.status_code,
                    content=ErrorResponse(
                        error=f"External API returned {upstream.status_code}: {upstream.text}",
                        code=ErrorCode.UPSTREAM_ERROR.value,
                    ).model_dump(exclude_none=True),
                )

            response = Response(content=upstream.content, media_type=config.content_type)
            for source, target in config.expose_headers:
                value = upstream.headers.get(source)
                if value:
                    response.headers[target] = value
            return response

        except httpx.TimeoutException:
            logger.error("External proxy request timed out", timeout_seconds=config.timeout_seconds)
            return error_response(504, "External API request timed out", ErrorCode.UPSTREAM_TIMEOUT)
        except Exception as e:
            logger.error("External proxy request failed", error=str(e), exc_info=True)
            return error_response(500, "External proxy failed", ErrorCode.INTERNAL_ERROR)

    return external_proxy


async def _send(
    config: ExternalProxyConfig,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes,
) -> httpx.Response:
    if config.http_client is not None:
        return await config.http_client.request(
            method, url, headers=headers, content=body, timeout=config.timeout_seconds
        )
    async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
        return await client.request(method, url, headers=headers, content=body)


def mount_external_proxy(
    router: APIRouter,
    path: str,
    config: ExternalProxyConfig,
    methods: Optional[list[str]] = None,
) -> None:
    router.add_api_route(
        path,
        create_external_proxy(config),
        methods=methods or ["POST"],
        include_in_schema=False,
    )
