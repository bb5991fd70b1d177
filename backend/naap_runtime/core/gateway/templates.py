"""
Connector Templates - Declarative presets for new connectors.

Template reads degrade to "no templates" when the store fails, so the admin
UI can still render. Instantiation goes through ConnectorService, which
creates the connector and its endpoints in a single commit.
"""

import re
from typing import Any, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.exceptions import ErrorCode, NotFound, ValidationFailed
from naap_runtime.core.gateway.connectors import ConnectorService
from naap_runtime.core.gateway.resolve import ConnectorResolver
from naap_runtime.core.models import ConnectorTemplate, ServiceConnector
from naap_runtime.core.schemas import SLUG_PATTERN, ConnectorCreate, TemplateApply

logger = structlog.get_logger()

_SLUG_RE = re.compile(SLUG_PATTERN)


DEFAULT_TEMPLATES: list[dict[str, Any]] = [
    {
        "id": "openai",
        "name": "OpenAI",
        "description": "Chat completions, embeddings and model listing.",
        "category": "ai",
        "icon": "openai",
        "connector": {
            "slug": "openai",
            "display_name": "OpenAI",
            "upstream_base_url": "https://api.openai.com",
            "health_check_path": "/v1/models",
            "auth_type": "bearer",
            "auth_config": {"tokenRef": "token"},
            "secret_refs": ["token"],
            "streaming_enabled": True,
            "tags": ["ai", "llm"],
        },
        "endpoints": [
            {"name": "chat", "method": "POST", "path": "/chat", "upstream_path": "/v1/chat/completions"},
            {"name": "embeddings", "method": "POST", "path": "/embeddings", "upstream_path": "/v1/embeddings"},
            {"name": "models", "method": "GET", "path": "/models", "upstream_path": "/v1/models"},
        ],
    },
    {
        "id": "stripe",
        "name": "Stripe",
        "description": "Customers and payment intents.",
        "category": "payments",
        "icon": "stripe",
        "connector": {
            "slug": "stripe",
            "display_name": "Stripe",
            "upstream_base_url": "https://api.stripe.com",
            "health_check_path": "/v1/balance",
            "auth_type": "bearer",
            "auth_config": {"tokenRef": "token"},
            "secret_refs": ["token"],
            "tags": ["payments"],
        },
        "endpoints": [
            {
                "name": "get-customer",
                "method": "GET",
                "path": "/customers/:id",
                "upstream_path": "/v1/customers/:id",
            },
            {
                "name": "create-payment-intent",
                "method": "POST",
                "path": "/payment-intents",
                "upstream_path": "/v1/payment_intents",
                "upstream_content_type": "application/x-www-form-urlencoded",
            },
        ],
    },
    {
        "id": "rest-api",
        "name": "Generic REST API",
        "description": "A blank JSON API with a single pass-through route.",
        "category": "custom",
        "icon": "globe",
        "connector": {
            "slug": "rest-api",
            "display_name": "REST API",
            "upstream_base_url": "https://api.example.com",
            "health_check_path": "/health",
            "auth_type": "header",
            "auth_config": {"headerName": "X-API-Key", "secretRef": "token"},
            "secret_refs": ["token"],
        },
        "endpoints": [
            {"name": "get-resource", "method": "GET", "path": "/resources/:id", "upstream_path": "/resources/:id"},
        ],
    },
]


async def load_connector_templates(db: AsyncSession) -> list[ConnectorTemplate]:
    try:
        result = await db.execute(select(ConnectorTemplate).order_by(ConnectorTemplate.name))
        return list(result.scalars().all())
    except Exception as e:
        logger.error("Failed to load connector template", error=str(e))
        return []


async def get_template_by_id(db: AsyncSession, template_id: str) -> Optional[ConnectorTemplate]:
    try:
        return await db.get(ConnectorTemplate, template_id)
    except Exception as e:
        logger.error("Failed to load connector template", template_id=template_id, error=str(e))
        return None


def build_connector_payload(template: ConnectorTemplate, overrides: TemplateApply) -> dict[str, Any]:
    payload = dict(template.connector)
    if overrides.slug:
        payload["slug"] = overrides.slug
    if overrides.display_name:
        payload["display_name"] = overrides.display_name
    if overrides.upstream_base_url:
        payload["upstream_base_url"] = overrides.upstream_base_url
    payload["endpoints"] = [dict(ep) for ep in template.endpoints or []]
    return payload


async def create_connector_from_template(
    db: AsyncSession,
    resolver: ConnectorResolver,
    scope: str,
    user_id: str,
    overrides: TemplateApply,
) -> ServiceConnector:
    """
    Instantiate a template as a new draft connector in ``scope``.

    Raises:
        NotFound: If the template does not exist
        ValidationFailed: If the resulting slug or connector is invalid
        ConflictingState: If the slug already exists in the scope
    """
    template = await get_template_by_id(db, overrides.template_id)
    if template is None:
        raise NotFound(f"Template not found: {overrides.template_id}")

    payload = build_connector_payload(template, overrides)
    slug = payload.get("slug") or ""
    if not _SLUG_RE.match(slug):
        raise ValidationFailed(
            f"Invalid slug: {slug!r}. Use lowercase letters, digits and inner hyphens",
            code=ErrorCode.INVALID_SLUG,
        )

    try:
        data = ConnectorCreate.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailed(
            f"Template {template.id} produced an invalid connector",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e

    connector = await ConnectorService(db, resolver).create_connector(scope, user_id, data)
    logger.info("Connector template applied", template_id=template.id, connector_id=connector.id, scope=scope)
    return connector


async def seed_templates(db: AsyncSession, templates: Optional[list[dict[str, Any]]] = None) -> int:
    """Insert missing built-in templates. Existing rows are left untouched."""
    created = 0
    for spec in templates if templates is not None else DEFAULT_TEMPLATES:
        if await db.get(ConnectorTemplate, spec["id"]) is not None:
            continue
        db.add(ConnectorTemplate(**spec))
        created += 1
    if created:
        await db.commit()
        logger.info("Connector templates seeded", count=created)
    return created
