"""
Audit ledger model.

Entries are append-only: one row is written per successful state mutation
and rows are never updated or deleted.
"""

import uuid
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Enum as SQLEnum, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import Base, CreatedAtMixin, JSONType, UUIDMixin
from orderflow.database.models.order import _enum_values


class ActorType(str, Enum):
    """Kind of actor responsible for a mutation."""

    API = "api"
    SYSTEM = "system"
    USER = "user"


class AuditLogEntry(Base, UUIDMixin, CreatedAtMixin):
    """
    Append-only record of a state-affecting mutation.

    Attributes:
        entity_type: Kind of mutated record (order, webhook, shipping_label)
        entity_id: Identifier of the mutated record
        action: Mutation name (status_changed, shipment_created, ...)
        actor_type: Kind of actor responsible for the mutation
        actor_id: Identifier of the actor, if known
        meta: Mutation details
    """

    __tablename__ = "audit_log_entries"

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    actor_type: Mapped[ActorType] = mapped_column(
        SQLEnum(
            ActorType,
            name="actor_type",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ActorType.SYSTEM,
    )

    actor_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        Index("ix_audit_log_entries_entity", "entity_type", "entity_id"),
    )
