"""
Append-only audit ledger.

Services record one entry per successful state mutation in the same session
(and therefore the same transaction) as the mutation itself, so that the
mutation and its ledger entry commit or roll back together.
"""

import uuid
from typing import Any, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.audit_log import ActorType, AuditLogEntry

logger = get_logger(__name__)


class Actor(BaseModel):
    """Actor responsible for a mutation."""

    model_config = ConfigDict(frozen=True)

    type: ActorType = ActorType.SYSTEM
    id: Optional[str] = None

    @classmethod
    def system(cls, name: Optional[str] = None) -> "Actor":
        return cls(type=ActorType.SYSTEM, id=name)

    @classmethod
    def api(cls, client_id: Optional[str] = None) -> "Actor":
        return cls(type=ActorType.API, id=client_id)

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(type=ActorType.USER, id=user_id)


SYSTEM_ACTOR = Actor.system()


class AuditLedger:
    """
    Writer and reader for audit log entries.

    The ledger never commits; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        actor: Optional[Actor] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """
        Add a ledger entry to the current transaction.

        Args:
            entity_type: Kind of mutated record
            entity_id: Identifier of the mutated record
            action: Mutation name
            actor: Responsible actor, defaults to the system
            metadata: Mutation details

        Returns:
            The flushed ledger entry
        """
        actor = actor or SYSTEM_ACTOR
        entry = AuditLogEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_type=actor.type,
            actor_id=actor.id,
            meta=dict(metadata or {}),
        )
        self.session.add(entry)
        await self.session.flush()

        logger.debug(
            "Audit entry recorded",
            entry_id=str(entry.id),
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
        )
        return entry

    async def entries_for(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        action: Optional[str] = None,
    ) -> Sequence[AuditLogEntry]:
        """List the entries of one entity in insertion order."""
        stmt = select(AuditLogEntry).where(
            AuditLogEntry.entity_type == entity_type,
            AuditLogEntry.entity_id == entity_id,
        )
        if action is not None:
            stmt = stmt.where(AuditLogEntry.action == action)
        stmt = stmt.order_by(AuditLogEntry.created_at, AuditLogEntry.id)

        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def entries_with_action(
        self,
        action: str,
        entity_type: Optional[str] = None,
    ) -> Sequence[AuditLogEntry]:
        """List the entries of one action across entities in insertion order."""
        stmt = select(AuditLogEntry).where(AuditLogEntry.action == action)
        if entity_type is not None:
            stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
        stmt = stmt.order_by(AuditLogEntry.created_at, AuditLogEntry.id)

        result = await self.session.execute(stmt)
        return result.scalars().all()
