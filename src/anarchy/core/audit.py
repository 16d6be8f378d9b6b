"""Fire-and-forget audit sink.

Writes each entry in its own session so an audit failure can never roll back
the case or staff change it describes. Failures are logged and dropped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from anarchy.db.engine import get_session
from anarchy.db.repository import AuditLogRepository
from anarchy.models.audit import AuditLogEntry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


class AuditLogger:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def log_action(
        self,
        guild_id: str,
        action: str,
        actor_id: str,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        entry = AuditLogEntry(
            guild_id=guild_id,
            action=action,
            actor_id=actor_id,
            target_id=target_id,
            details=details or {},
        )
        try:
            async with get_session(self.engine) as session:
                await AuditLogRepository(session).log_action(entry)
        except SQLAlchemyError:
            logger.exception(
                "audit_log_failed guild_id=%s action=%s actor_id=%s", guild_id, action, actor_id
            )
