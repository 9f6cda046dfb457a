"""
Background task dispatch.

Services enqueue follow-up work through a TaskDispatcher instead of calling
Celery directly, which keeps them independent of the queue in tests. The
Celery implementation imports task modules lazily since those modules
import the services.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Optional

from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class TaskDispatcher(ABC):
    """Interface for enqueuing fulfillment background tasks."""

    @abstractmethod
    def order_status_changed(
        self,
        order_id: uuid.UUID,
        previous_status: str,
        new_status: str,
        reason: Optional[str] = None,
        audit_entry_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Enqueue the post-commit side effects of a status change."""

    @abstractmethod
    def generate_shipment(self, order_id: uuid.UUID, countdown: Optional[int] = None) -> None:
        """Enqueue shipment generation for an order."""

    @abstractmethod
    def delete_shipment(self, order_id: uuid.UUID) -> None:
        """Enqueue deletion of an order's shipment."""

    @abstractmethod
    def process_webhook(self, webhook_id: uuid.UUID) -> None:
        """Enqueue processing of a stored webhook."""


class CeleryTaskDispatcher(TaskDispatcher):
    """Dispatcher sending tasks to the Celery broker."""

    def order_status_changed(
        self,
        order_id: uuid.UUID,
        previous_status: str,
        new_status: str,
        reason: Optional[str] = None,
        audit_entry_id: Optional[uuid.UUID] = None,
    ) -> None:
        from orderflow.services.orders.tasks import process_order_state_change_task

        process_order_state_change_task.apply_async(
            kwargs={
                "order_id": str(order_id),
                "previous_status": previous_status,
                "new_status": new_status,
                "reason": reason,
                "audit_entry_id": str(audit_entry_id) if audit_entry_id else None,
            }
        )
        logger.debug(
            "Order state change task enqueued",
            order_id=str(order_id),
            new_status=new_status,
        )

    def generate_shipment(self, order_id: uuid.UUID, countdown: Optional[int] = None) -> None:
        from orderflow.services.shipping.tasks import generate_shipment_task

        generate_shipment_task.apply_async(
            kwargs={"order_id": str(order_id)},
            countdown=countdown,
        )
        logger.debug(
            "Shipment generation task enqueued",
            order_id=str(order_id),
            countdown=countdown,
        )

    def delete_shipment(self, order_id: uuid.UUID) -> None:
        from orderflow.services.shipping.tasks import delete_shipment_task

        delete_shipment_task.apply_async(kwargs={"order_id": str(order_id)})
        logger.debug("Shipment deletion task enqueued", order_id=str(order_id))

    def process_webhook(self, webhook_id: uuid.UUID) -> None:
        from orderflow.services.webhooks.tasks import process_webhook_task

        process_webhook_task.apply_async(kwargs={"webhook_id": str(webhook_id)})
        logger.debug("Webhook processing task enqueued", webhook_id=str(webhook_id))


def get_task_dispatcher() -> TaskDispatcher:
    """Get the dispatcher used by the API process and the workers."""
    return CeleryTaskDispatcher()
