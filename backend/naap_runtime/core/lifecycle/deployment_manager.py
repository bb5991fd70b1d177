"""
Deployment Manager - Blue/green traffic switching for plugin deployments.
"""

from typing import Protocol

import structlog
from sqlalchemy import select

from naap_runtime.core.database import SessionFactory
from naap_runtime.core.exceptions import ConflictingState, NotFound
from naap_runtime.core.models import PluginDeployment, PluginDeploymentSlot, SlotStatus

logger = structlog.get_logger()


class DeploymentManager(Protocol):
    async def rollback(self, deployment_id: str, actor: str, reason: str) -> None: ...


class SlotDeploymentManager:
    """Moves all traffic of a deployment back to its other slot."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def rollback(self, deployment_id: str, actor: str, reason: str) -> None:
        """
        Shift traffic from the slot currently serving it to the other slot.

        Raises:
            NotFound: If the deployment does not exist
            ConflictingState: If there is no other slot to fall back to
        """
        async with self.session_factory() as db:
            deployment = await db.get(PluginDeployment, deployment_id)
            if deployment is None:
                raise NotFound(f"Deployment {deployment_id} not found")

            result = await db.execute(
                select(PluginDeploymentSlot).where(PluginDeploymentSlot.deployment_id == deployment_id)
            )
            slots = list(result.scalars().all())

            current = max(slots, key=lambda s: s.traffic_percent, default=None)
            target = next((s for s in slots if current is not None and s.slot != current.slot), None)
            if current is None or target is None:
                raise ConflictingState(f"Deployment {deployment_id} has no slot to roll back to")

            current.traffic_percent = 0
            current.status = SlotStatus.INACTIVE
            target.traffic_percent = 100
            target.status = SlotStatus.ACTIVE
            deployment.active_slot = target.slot

            await db.commit()

        logger.warning(
            "Deployment rolled back",
            deployment_id=deployment_id,
            from_slot=current.slot.value,
            to_slot=target.slot.value,
            actor=actor,
            reason=reason,
        )
