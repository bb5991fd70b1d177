"""
Gateway secret lookup.

Secrets are stored per (scope, connector slug, ref). Lookups always
carry the connector's own scope, so one team's secrets never resolve for
another team's connector.
"""

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.models import GatewaySecret


async def load_secrets(
    db: AsyncSession,
    scope: str,
    connector_slug: str,
    refs: Iterable[str],
) -> dict[str, str]:
    refs = list(refs)
    if not refs:
        return {}

    result = await db.execute(
        select(GatewaySecret.ref, GatewaySecret.value).where(
            GatewaySecret.scope_id == scope,
            GatewaySecret.connector_slug == connector_slug,
            GatewaySecret.ref.in_(refs),
        )
    )
    return {ref: value for ref, value in result.all()}
