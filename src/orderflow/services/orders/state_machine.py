"""Order lifecycle engine with transition validation.

This module implements the OrderLifecycleEngine class, the only writer of
order status. Every transition runs under the order's row lock, validates
the target against the transition table and the target's guards, and
commits the new status together with exactly one audit ledger entry. The
downstream state change task is enqueued once, after the commit.
"""

import uuid
from typing import Any, Callable, Collection, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    InvalidTransitionError,
    OrderNotFoundError,
    PreconditionFailedError,
)
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.services.audit.ledger import Actor, AuditLedger
from orderflow.services.dispatch import TaskDispatcher
from orderflow.services.orders.enums import (
    OrderStatus,
    get_allowed_order_transitions,
    validate_order_status_transition,
)
from orderflow.services.orders.repository import OrderRepository

logger = get_logger(__name__)

NOTIFICATION_FAILED_ACTION = "notification_enqueue_failed"
NOTIFICATION_REPLAYED_ACTION = "notification_replayed"


class OrderLifecycleEngine:
    """State machine for order lifecycle transitions.

    Guards are keyed by target status and apply regardless of the status
    the order leaves.
    """

    def __init__(self, session: AsyncSession, dispatcher: TaskDispatcher):
        """Initialize lifecycle engine.

        Args:
            session: Async database session owning the transition transaction
            dispatcher: Dispatcher for the post-commit state change task
        """
        self.session = session
        self.dispatcher = dispatcher
        self.orders = OrderRepository(session)
        self.ledger = AuditLedger(session)
        self._guards: Dict[OrderStatus, Callable[[Order], None]] = {
            OrderStatus.CONFIRMED: self._guard_confirmed,
            OrderStatus.PAID: self._guard_paid,
        }

    async def transition(
        self,
        order_id: uuid.UUID,
        target: OrderStatus,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
        only_from: Optional[Collection[OrderStatus]] = None,
    ) -> Order:
        """Move an order to a new status.

        Args:
            order_id: Order to transition
            target: Desired status
            reason: Optional reason recorded in the ledger
            metadata: Caller metadata recorded in the ledger
            actor: Actor responsible for the transition
            only_from: When given, the call is a no-op unless the order is
                currently in one of these statuses

        Returns:
            The order in its resulting status

        Raises:
            OrderNotFoundError: If the order does not exist
            InvalidTransitionError: If target is unreachable from the current status
            PreconditionFailedError: If a target guard is not met
        """
        order_ref = str(order_id)

        try:
            order = await self.orders.lock(order_id)
            current = order.status

            if only_from is not None and current not in only_from:
                # Release the row lock
                await self.session.commit()
                logger.info(
                    "Guarded transition skipped",
                    order_id=order_ref,
                    current_status=current.value,
                    target_status=target.value,
                    required_statuses=sorted(s.value for s in only_from),
                )
                return order

            if current == target:
                await self.session.commit()
                logger.info(
                    "Transition is a no-op, order already in target status",
                    order_id=order_ref,
                    status=current.value,
                )
                return order

            if not validate_order_status_transition(current, target):
                allowed = get_allowed_order_transitions(current)
                raise InvalidTransitionError(
                    f"Invalid transition from {current.value} to {target.value}",
                    current_status=current,
                    target_status=target,
                    order_id=order_ref,
                    allowed_transitions=sorted(s.value for s in allowed),
                )

            guard = self._guards.get(target)
            if guard is not None:
                guard(order)

            order.status = target
            entry = await self.ledger.record(
                entity_type="order",
                entity_id=order.id,
                action="status_changed",
                actor=actor,
                metadata={
                    "previous_status": current.value,
                    "new_status": target.value,
                    "reason": reason,
                    "metadata": metadata or {},
                },
            )
            entry_id = entry.id

            await self.session.commit()

        except Exception as e:
            await self.session.rollback()
            logger.warning(
                "State transition failed",
                order_id=order_ref,
                target_status=target.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.info(
            "State transition applied successfully",
            order_id=order_ref,
            transition=f"{current.value}->{target.value}",
            audit_entry_id=str(entry_id),
        )

        await self._notify(order_id, current, target, reason, entry_id)
        return order

    async def _notify(
        self,
        order_id: uuid.UUID,
        previous: OrderStatus,
        target: OrderStatus,
        reason: Optional[str],
        entry_id: uuid.UUID,
    ) -> None:
        # The transition is committed; an enqueue failure must not surface as
        # a failed transition. It is recorded for replay instead.
        try:
            self.dispatcher.order_status_changed(
                order_id=order_id,
                previous_status=previous.value,
                new_status=target.value,
                reason=reason,
                audit_entry_id=entry_id,
            )
        except Exception as e:
            logger.error(
                "Failed to enqueue order state change task",
                order_id=str(order_id),
                new_status=target.value,
                audit_entry_id=str(entry_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._record_undelivered(order_id, previous, target, reason, entry_id, e)

    async def _record_undelivered(
        self,
        order_id: uuid.UUID,
        previous: OrderStatus,
        target: OrderStatus,
        reason: Optional[str],
        entry_id: uuid.UUID,
        error: Exception,
    ) -> None:
        try:
            await self.ledger.record(
                entity_type="order",
                entity_id=order_id,
                action=NOTIFICATION_FAILED_ACTION,
                metadata={
                    "audit_entry_id": str(entry_id),
                    "previous_status": previous.value,
                    "new_status": target.value,
                    "reason": reason,
                    "error": str(error),
                },
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(
                "Failed to record undelivered state change notification",
                order_id=str(order_id),
                audit_entry_id=str(entry_id),
                error=str(e),
            )

    async def replay_undelivered_notifications(self, limit: int = 100) -> int:
        """Enqueue again the state change tasks whose enqueue failed after commit.

        Each replay is recorded in the ledger so a notification is replayed
        once. Replaying stops at the first enqueue failure.

        Args:
            limit: Maximum number of notifications to replay

        Returns:
            Number of notifications enqueued
        """
        failed = await self.ledger.entries_with_action(NOTIFICATION_FAILED_ACTION, "order")
        replayed = {
            entry.meta.get("failed_entry_id")
            for entry in await self.ledger.entries_with_action(
                NOTIFICATION_REPLAYED_ACTION, "order"
            )
        }
        pending = [entry for entry in failed if str(entry.id) not in replayed][:limit]

        count = 0
        for entry in pending:
            details = dict(entry.meta)
            try:
                self.dispatcher.order_status_changed(
                    order_id=entry.entity_id,
                    previous_status=details["previous_status"],
                    new_status=details["new_status"],
                    reason=details.get("reason"),
                    audit_entry_id=uuid.UUID(details["audit_entry_id"]),
                )
            except Exception as e:
                logger.warning(
                    "State change notification replay stopped, queue still unavailable",
                    order_id=str(entry.entity_id),
                    error=str(e),
                    replayed=count,
                )
                break

            try:
                await self.ledger.record(
                    entity_type="order",
                    entity_id=entry.entity_id,
                    action=NOTIFICATION_REPLAYED_ACTION,
                    metadata={
                        "failed_entry_id": str(entry.id),
                        "audit_entry_id": details["audit_entry_id"],
                    },
                )
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise
            count += 1

        if pending:
            logger.info(
                "Undelivered state change notifications replayed",
                pending=len(pending),
                replayed=count,
            )
        return count

    async def available_transitions(self, order_id: uuid.UUID) -> Set[OrderStatus]:
        """Get the statuses the order can move to from its current status.

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        return get_allowed_order_transitions(order.status)

    # Transition Guards

    def _guard_confirmed(self, order: Order) -> None:
        """Confirmation requires at least one item and one address."""
        if not order.items:
            raise PreconditionFailedError(
                "Order cannot be confirmed without items",
                order_id=str(order.id),
                guard="has_items",
            )
        if not order.has_address:
            raise PreconditionFailedError(
                "Order cannot be confirmed without an address",
                order_id=str(order.id),
                guard="has_address",
            )

    def _guard_paid(self, order: Order) -> None:
        """Payment requires an external payment correlation id."""
        if not order.payment_reference:
            raise PreconditionFailedError(
                "Order cannot be marked paid without a payment reference",
                order_id=str(order.id),
                guard="has_payment_reference",
            )


def get_order_lifecycle_engine(
    session: AsyncSession,
    dispatcher: TaskDispatcher,
) -> OrderLifecycleEngine:
    """Factory function to create OrderLifecycleEngine instance.

    Args:
        session: Async database session
        dispatcher: Task dispatcher

    Returns:
        OrderLifecycleEngine instance
    """
    return OrderLifecycleEngine(session, dispatcher)
