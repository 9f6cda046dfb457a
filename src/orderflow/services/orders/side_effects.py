"""Side effects of committed order status changes.

The lifecycle engine enqueues one state change task per committed
transition; this handler runs inside that task. Tasks may be delivered more
than once, so every effect checks the order's current status and is safe
to apply twice.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings
from orderflow.core.exceptions import OrderNotFoundError
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.services.dispatch import TaskDispatcher
from orderflow.services.orders.enums import NOTIFIABLE_STATUSES, OrderStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.shipping.orchestrator import FulfillmentOrchestrator

logger = get_logger(__name__)


class OrderStateChangeHandler:
    """Applies the follow-up work of an order entering a new status."""

    def __init__(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        dispatcher: TaskDispatcher,
        settings: Settings,
    ):
        self.session = session
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.settings = settings
        self.orders = OrderRepository(session)

    async def handle(
        self,
        order_id: uuid.UUID,
        previous_status: OrderStatus,
        new_status: OrderStatus,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Run the effects of a status change.

        Args:
            order_id: Order that changed status
            previous_status: Status before the transition
            new_status: Status after the transition
            reason: Reason recorded with the transition

        Returns:
            Summary of the effects that ran

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))

        effects: list[str] = []

        if order.status != new_status:
            logger.info(
                "Order moved on before state change effects ran",
                order_id=str(order_id),
                expected_status=new_status.value,
                current_status=order.status.value,
            )
            return {"order_id": str(order_id), "effects": effects, "skipped": True}

        if new_status in NOTIFIABLE_STATUSES:
            self._notify_customer(order, previous_status, new_status)
            effects.append("customer_notified")

        if new_status == OrderStatus.PAID:
            if self._schedule_fulfillment(order):
                effects.append("fulfillment_scheduled")
        elif new_status == OrderStatus.CANCELLED:
            voided = await self.orchestrator.void_active_labels(order_id, reason="order_cancelled")
            effects.append(f"labels_voided:{voided}")
        elif new_status == OrderStatus.FULFILLED:
            estimated_delivery = await self._estimated_delivery(order_id)
            if estimated_delivery:
                await self._stamp(order, {"estimated_delivery": estimated_delivery})
                effects.append("estimated_delivery_recorded")
        elif new_status == OrderStatus.COMPLETED:
            await self._stamp(order, {"delivered_at": self._now()})
            effects.append("delivered_at_recorded")
        elif new_status == OrderStatus.FAILED:
            await self._stamp(order, {"failure_reason": reason, "failed_at": self._now()})
            effects.append("failure_recorded")

        logger.info(
            "Order state change processed",
            order_id=str(order_id),
            previous_status=previous_status.value,
            new_status=new_status.value,
            effects=effects,
        )
        return {"order_id": str(order_id), "effects": effects, "skipped": False}

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _notify_customer(
        self,
        order: Order,
        previous_status: OrderStatus,
        new_status: OrderStatus,
    ) -> None:
        # Message delivery belongs to the notification collaborator
        logger.info(
            "Customer notification issued",
            order_id=str(order.id),
            order_number=order.number,
            client_email=order.client.email if order.client else None,
            previous_status=previous_status.value,
            new_status=new_status.value,
            status_label=new_status.display_name,
        )

    def _schedule_fulfillment(self, order: Order) -> bool:
        if order.carrier is None or order.shipping_address_id is None or order.has_shipment:
            logger.info(
                "Paid order not eligible for automatic fulfillment",
                order_id=str(order.id),
                has_carrier=order.carrier is not None,
                has_shipping_address=order.shipping_address_id is not None,
                has_shipment=order.has_shipment,
            )
            return False

        self.dispatcher.generate_shipment(
            order.id,
            countdown=self.settings.fulfillment_delay_seconds,
        )
        logger.info(
            "Fulfillment scheduled",
            order_id=str(order.id),
            delay_seconds=self.settings.fulfillment_delay_seconds,
        )
        return True

    async def _estimated_delivery(self, order_id: uuid.UUID) -> Optional[str]:
        """Estimated delivery reported with the order's latest label, if any."""
        label = await self.orchestrator.labels.active_for_order(order_id)
        if label is None:
            return None
        for source in (label.meta or {}, label.raw_response or {}):
            value = source.get("estimated_delivery")
            if value:
                return str(value)
        return None

    async def _stamp(self, order: Order, values: dict[str, Any]) -> None:
        try:
            for key, value in values.items():
                order.meta[key] = value
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
