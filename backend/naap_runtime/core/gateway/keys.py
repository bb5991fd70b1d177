"""
Gateway Keys & Plans - Consumer API keys and the rate plans they carry.

Raw keys are generated here and returned exactly once. Only their SHA-256
hash and a short display prefix are stored.
"""

import hashlib
import secrets
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from naap_runtime.core.exceptions import ConflictingState, ErrorCode, NotFound, ValidationFailed
from naap_runtime.core.gateway.scope import scope_filter, scope_owner_fields
from naap_runtime.core.gateway.team_guard import load_connector
from naap_runtime.core.models import ApiKeyStatus, GatewayApiKey, GatewayPlan
from naap_runtime.core.schemas import ApiKeyCreate, PlanCreate, PlanUpdate

logger = structlog.get_logger()

KEY_PREFIX = "gw_"
DISPLAY_PREFIX_LENGTH = 12


def generate_api_key() -> str:
    return KEY_PREFIX + secrets.token_urlsafe(32)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


# ==========================================================================
# Plans
# ==========================================================================

class PlanService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_plans(self, scope: str) -> list[GatewayPlan]:
        result = await self.db.execute(
            select(GatewayPlan)
            .where(*scope_filter(GatewayPlan, scope))
            .order_by(GatewayPlan.created_at)
        )
        return list(result.scalars().all())

    async def get_plan(self, scope: str, plan_id: str) -> GatewayPlan:
        result = await self.db.execute(
            select(GatewayPlan).where(GatewayPlan.id == plan_id, *scope_filter(GatewayPlan, scope))
        )
        plan = result.scalar_one_or_none()
        if plan is None:
            raise NotFound("Plan not found")
        return plan

    async def create_plan(self, scope: str, data: PlanCreate) -> GatewayPlan:
        existing = await self.db.execute(
            select(GatewayPlan.id).where(GatewayPlan.name == data.name, *scope_filter(GatewayPlan, scope))
        )
        if existing.first() is not None:
            raise ConflictingState(f'Plan with name "{data.name}" already exists')

        plan = GatewayPlan(**data.model_dump(), **scope_owner_fields(scope))
        self.db.add(plan)
        await self.db.commit()
        await self.db.refresh(plan)

        logger.info("Plan created", plan_id=plan.id, name=plan.name, scope=scope)
        return plan

    async def update_plan(self, scope: str, plan_id: str, data: PlanUpdate) -> GatewayPlan:
        plan = await self.get_plan(scope, plan_id)
        for key, value in data.model_dump(exclude_unset=True).items():
            if value is None and key in ("display_name", "rate_limit", "allowed_connectors"):
                continue
            setattr(plan, key, value)
        await self.db.commit()
        await self.db.refresh(plan)

        logger.info("Plan updated", plan_id=plan.id)
        return plan

    async def delete_plan(self, scope: str, plan_id: str) -> GatewayPlan:
        """
        Delete a plan.

        Raises:
            NotFound: If the plan is not visible in this scope
            ConflictingState: PLAN_IN_USE while active keys reference the plan
        """
        plan = await self.get_plan(scope, plan_id)

        active = await self.db.scalar(
            select(func.count())
            .select_from(GatewayApiKey)
            .where(GatewayApiKey.plan_id == plan.id, GatewayApiKey.status == ApiKeyStatus.ACTIVE)
        )
        if active:
            raise ConflictingState(
                f"Plan is used by {active} active API key(s)",
                code=ErrorCode.PLAN_IN_USE,
                details={"activeKeys": active},
            )

        await self.db.delete(plan)
        await self.db.commit()

        logger.info("Plan deleted", plan_id=plan_id)
        return plan


# ==========================================================================
# API Keys
# ==========================================================================

class ApiKeyService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_keys(self, scope: str, connector_id: Optional[str] = None) -> list[GatewayApiKey]:
        query = select(GatewayApiKey).where(*scope_filter(GatewayApiKey, scope))
        if connector_id:
            query = query.where(GatewayApiKey.connector_id == connector_id)
        result = await self.db.execute(query.order_by(GatewayApiKey.created_at.desc()))
        return list(result.scalars().all())

    async def create_key(self, scope: str, user_id: str, data: ApiKeyCreate) -> tuple[GatewayApiKey, str]:
        """
        Issue a new key.

        Returns:
            The stored key row and the raw key, which is not kept anywhere
        """
        if data.plan_id:
            await PlanService(self.db).get_plan(scope, data.plan_id)
        if data.connector_id and await load_connector(self.db, data.connector_id, scope) is None:
            raise NotFound("Connector not found")
        if data.expires_at is not None and _aware(data.expires_at) <= datetime.now(timezone.utc):
            raise ValidationFailed("expires_at must be in the future")

        raw_key = generate_api_key()
        key = GatewayApiKey(
            **data.model_dump(),
            **scope_owner_fields(scope),
            created_by=user_id,
            key_hash=hash_api_key(raw_key),
            key_prefix=raw_key[:DISPLAY_PREFIX_LENGTH],
        )
        self.db.add(key)
        await self.db.commit()
        await self.db.refresh(key)

        logger.info("API key created", key_id=key.id, prefix=key.key_prefix, scope=scope)
        return key, raw_key

    async def revoke_key(self, scope: str, key_id: str) -> GatewayApiKey:
        result = await self.db.execute(
            select(GatewayApiKey).where(GatewayApiKey.id == key_id, *scope_filter(GatewayApiKey, scope))
        )
        key = result.scalar_one_or_none()
        if key is None:
            raise NotFound("API key not found")

        if key.status != ApiKeyStatus.REVOKED:
            key.status = ApiKeyStatus.REVOKED
            key.revoked_at = datetime.now(timezone.utc)
            await self.db.commit()
            await self.db.refresh(key)
            logger.info("API key revoked", key_id=key.id)
        return key


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
