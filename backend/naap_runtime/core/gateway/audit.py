"""
Audit Logger - Compliance trail for gateway admin mutations.

Writes happen on detached tasks. Callers never await them, and a failed
write is logged without reaching the admin operation it describes.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from naap_runtime.core.database import SessionFactory
from naap_runtime.core.models import AuditAction, AuditLog, AuditStatus

logger = structlog.get_logger()


@dataclass
class AuditEntry:
    action: AuditAction
    resource: str
    resource_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    status: AuditStatus = AuditStatus.SUCCESS


class AuditLogger:
    """Fire-and-forget audit writer."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    def log_audit(self, ctx: Any, entry: AuditEntry) -> asyncio.Task:
        """
        Schedule an audit write and return immediately.

        ``ctx`` is the caller's AdminContext (user, team, client address).
        The returned task is only for tests; request handlers drop it.
        """
        record = AuditLog(
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            user_id=getattr(ctx, "user_id", None),
            team_id=getattr(ctx, "team_id", None),
            ip_address=getattr(ctx, "ip_address", None),
            user_agent=(getattr(ctx, "user_agent", None) or "")[:500] or None,
            details=entry.details,
            status=entry.status,
        )
        task = asyncio.create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, record: AuditLog) -> None:
        try:
            async with self.session_factory() as db:
                db.add(record)
                await db.commit()
        except Exception as e:
            logger.error(
                "Failed to write audit log entry",
                action=record.action.value,
                resource_id=record.resource_id,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for every scheduled write. Used on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
