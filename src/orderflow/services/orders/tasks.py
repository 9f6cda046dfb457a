"""
Celery tasks for order lifecycle side effects.
"""

import uuid
from typing import Any, Optional

from celery import Task, shared_task

from orderflow.core.config import get_settings
from orderflow.core.logging import get_logger
from orderflow.database.connection import get_session
from orderflow.services.dispatch import get_task_dispatcher
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.orders.side_effects import OrderStateChangeHandler
from orderflow.services.orders.state_machine import get_order_lifecycle_engine
from orderflow.services.shipping.orchestrator import get_fulfillment_orchestrator
from orderflow.worker import FulfillmentTask, is_retryable, run_async

logger = get_logger(__name__)


async def handle_order_state_change(
    order_id: uuid.UUID,
    previous_status: OrderStatus,
    new_status: OrderStatus,
    reason: Optional[str],
) -> dict[str, Any]:
    settings = get_settings()
    dispatcher = get_task_dispatcher()
    async with get_session() as session:
        handler = OrderStateChangeHandler(
            session,
            get_fulfillment_orchestrator(session, dispatcher, settings),
            dispatcher,
            settings,
        )
        return await handler.handle(order_id, previous_status, new_status, reason)


@shared_task(
    bind=True,
    base=FulfillmentTask,
    name="orders.process_order_state_change",
    max_retries=2,
    time_limit=120,
    soft_time_limit=100,
)
def process_order_state_change_task(
    self: Task,
    order_id: str,
    previous_status: str,
    new_status: str,
    reason: Optional[str] = None,
    audit_entry_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Run the side effects of a committed order status change.

    Args:
        self: Task instance
        order_id: Order that changed status
        previous_status: Status before the transition
        new_status: Status after the transition
        reason: Reason recorded with the transition
        audit_entry_id: Ledger entry of the transition

    Returns:
        Summary of the effects that ran
    """
    logger.info(
        "Processing order state change",
        task_id=self.request.id,
        order_id=order_id,
        new_status=new_status,
        audit_entry_id=audit_entry_id,
    )

    try:
        return run_async(
            lambda: handle_order_state_change(
                uuid.UUID(order_id),
                OrderStatus(previous_status),
                OrderStatus(new_status),
                reason,
            )
        )
    except Exception as e:
        if is_retryable(e):
            raise self.retry(exc=e, countdown=10 * (self.request.retries + 1))
        raise


async def replay_undelivered_notifications(limit: int) -> int:
    async with get_session() as session:
        engine = get_order_lifecycle_engine(session, get_task_dispatcher())
        return await engine.replay_undelivered_notifications(limit=limit)


@shared_task(
    bind=True,
    name="orders.replay_undelivered_notifications",
    time_limit=300,
    soft_time_limit=280,
)
def replay_undelivered_notifications_task(self: Task, limit: int = 100) -> dict[str, Any]:
    """
    Enqueue again the state change notifications lost to a broker outage.

    Args:
        self: Task instance
        limit: Maximum number of notifications to replay

    Returns:
        Number of notifications replayed
    """
    replayed = run_async(lambda: replay_undelivered_notifications(limit))
    logger.info(
        "Undelivered notification replay completed",
        task_id=self.request.id,
        replayed=replayed,
    )
    return {"replayed": replayed}
