"""
End-to-end fulfillment flow.

Walks one order from payment through shipment generation and carrier
notifications to completion, using the fake carrier and the recording
dispatcher in place of the queue.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.database.models import LabelStatus, Order, ShippingLabel, WebhookSource
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.orders.state_machine import OrderLifecycleEngine
from orderflow.services.shipping.orchestrator import FulfillmentOrchestrator
from orderflow.services.webhooks.service import WebhookService


class TestFulfillmentFlow:
    """Test the order journey across the lifecycle, shipping and webhooks."""

    async def test_paid_order_is_shipped_and_completed(
        self,
        session: AsyncSession,
        lifecycle: OrderLifecycleEngine,
        orchestrator: FulfillmentOrchestrator,
        webhook_service: WebhookService,
        dispatcher,
        make_order,
    ) -> None:
        order = await make_order(status=OrderStatus.CONFIRMED, payment_reference="PMI-42")
        order_id = order.id

        await lifecycle.transition(order_id, OrderStatus.PAID, reason="payment_confirmed")

        outcome = await orchestrator.generate_shipment(order_id)
        assert outcome.order_ids == [order_id]
        assert outcome.parcel_group_id is None

        label_webhook = await webhook_service.ingest(
            WebhookSource.DPD,
            {
                "event": "label_created",
                "order_id": str(order_id),
                "shipment_id": outcome.shipment_id,
                "tracking_number": outcome.tracking_number,
            },
        )
        await webhook_service.process(label_webhook.id)

        stored = await session.get(Order, order_id, populate_existing=True)
        assert stored.status == OrderStatus.FULFILLED
        assert stored.external_shipment_id == outcome.shipment_id

        result = await session.execute(
            select(ShippingLabel).where(
                ShippingLabel.order_id == order_id,
                ShippingLabel.status == LabelStatus.GENERATED,
            )
        )
        assert len(result.scalars().all()) == 1

        delivered_webhook = await webhook_service.ingest(
            WebhookSource.DPD,
            {"order_id": stored.number, "status": "delivered"},
        )
        await webhook_service.process(delivered_webhook.id)

        stored = await session.get(Order, order_id, populate_existing=True)
        assert stored.status == OrderStatus.COMPLETED
        assert [change["new_status"] for change in dispatcher.status_changes] == [
            "paid",
            "fulfilled",
            "completed",
        ]
