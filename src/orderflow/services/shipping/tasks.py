"""
Celery tasks for carrier shipment generation and deletion.

Generation retries only retryable failures (transient carrier errors,
consolidation conflicts, lookup misses, database outages), three attempts
in total by default, waiting 30 and then 60 seconds between them. Every
failed attempt has already been recorded as a failed label by the
orchestrator before the task decides whether to retry.
"""

import uuid
from typing import Any

from celery import Task, shared_task
from celery.exceptions import MaxRetriesExceededError

from orderflow.core.config import get_settings
from orderflow.core.exceptions import PreconditionFailedError, ShipmentNotFoundError
from orderflow.core.logging import get_logger
from orderflow.database.connection import get_session
from orderflow.services.dispatch import get_task_dispatcher
from orderflow.services.shipping.orchestrator import get_fulfillment_orchestrator
from orderflow.worker import FulfillmentTask, is_retryable, run_async

logger = get_logger(__name__)
settings = get_settings()


async def generate_shipment(order_id: uuid.UUID) -> dict[str, Any]:
    async with get_session() as session:
        orchestrator = get_fulfillment_orchestrator(session, get_task_dispatcher())
        outcome = await orchestrator.generate_shipment(order_id)
        return outcome.model_dump(mode="json")


async def delete_shipment(order_id: uuid.UUID) -> dict[str, Any]:
    async with get_session() as session:
        orchestrator = get_fulfillment_orchestrator(session, get_task_dispatcher())
        order_ids = await orchestrator.delete_shipment(order_id)
        return {"order_ids": [str(member_id) for member_id in order_ids]}


@shared_task(
    bind=True,
    base=FulfillmentTask,
    name="shipping.generate_shipment",
    max_retries=settings.fulfillment_max_attempts - 1,
    time_limit=settings.fulfillment_task_time_limit,
    soft_time_limit=max(settings.fulfillment_task_time_limit - 30, 1),
)
def generate_shipment_task(self: Task, order_id: str) -> dict[str, Any]:
    """
    Generate the carrier shipment of an order and its consolidation group.

    Args:
        self: Task instance
        order_id: Triggering order

    Returns:
        Shipment outcome, or a skip marker when the order cannot be shipped

    Raises:
        Retry: If the attempt failed with a retryable error and retries remain
    """
    logger.info(
        "Processing shipment generation task",
        task_id=self.request.id,
        order_id=order_id,
        attempt=self.request.retries + 1,
    )

    try:
        return run_async(lambda: generate_shipment(uuid.UUID(order_id)))

    except PreconditionFailedError as e:
        logger.warning(
            "Shipment generation skipped",
            task_id=self.request.id,
            order_id=order_id,
            reason=e.message,
            context=e.context,
        )
        return {"order_id": order_id, "skipped": True, "reason": e.message}

    except Exception as e:
        if not is_retryable(e):
            raise

        countdown = settings.retry_countdown(self.request.retries)
        try:
            raise self.retry(exc=e, countdown=countdown)
        except MaxRetriesExceededError:
            logger.error(
                "Max retries exceeded for shipment generation",
                task_id=self.request.id,
                order_id=order_id,
                error=str(e),
            )
            raise e


@shared_task(
    bind=True,
    base=FulfillmentTask,
    name="shipping.delete_shipment",
    max_retries=settings.fulfillment_max_attempts - 1,
    time_limit=settings.fulfillment_task_time_limit,
)
def delete_shipment_task(self: Task, order_id: str) -> dict[str, Any]:
    """
    Void an order's shipment across its parcel group.

    Args:
        self: Task instance
        order_id: Any order of the group

    Returns:
        Identifiers of the orders whose shipment was cleared
    """
    logger.info(
        "Processing shipment deletion task",
        task_id=self.request.id,
        order_id=order_id,
    )

    try:
        return run_async(lambda: delete_shipment(uuid.UUID(order_id)))

    except ShipmentNotFoundError as e:
        logger.warning(
            "Shipment deletion skipped, nothing to delete",
            task_id=self.request.id,
            order_id=order_id,
            reason=e.message,
        )
        return {"order_ids": [], "skipped": True}

    except Exception as e:
        if is_retryable(e):
            raise self.retry(exc=e, countdown=settings.retry_countdown(self.request.retries))
        raise
