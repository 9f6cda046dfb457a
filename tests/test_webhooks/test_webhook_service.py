"""
Test suite for webhook ingestion and processing.

Covers durable intake, classification effects on orders, guarded
transitions, failure recording, replays and reprocessing.
"""

import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    InvalidTransitionError,
    InvalidWebhookPayloadError,
    OrderNotFoundError,
    WebhookNotFoundError,
)
from orderflow.database.models import (
    LabelStatus,
    Order,
    ShippingLabel,
    Webhook,
    WebhookSource,
    WebhookStatus,
)
from orderflow.services.audit.ledger import AuditLedger
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.webhooks.service import WebhookService


async def order_status(session: AsyncSession, order_id: uuid.UUID) -> OrderStatus:
    order = await session.get(Order, order_id, populate_existing=True)
    return order.status


# ============================================================================
# Ingestion
# ============================================================================


class TestIngest:
    """Test durable webhook intake."""

    async def test_ingest_stores_pending_and_enqueues(
        self, session: AsyncSession, webhook_service: WebhookService, dispatcher
    ) -> None:
        webhook = await webhook_service.ingest(
            WebhookSource.DPD,
            {"event": "label_created", "order_id": "ORD-1"},
            headers={"Content-Type": "application/json", "Authorization": "secret"},
        )

        stored = await webhook_service.get_webhook(webhook.id)
        assert stored.status == WebhookStatus.PENDING
        assert stored.event == "label_created"
        assert stored.attempts == 0
        assert stored.headers == {"content-type": "application/json"}
        assert dispatcher.webhooks == [webhook.id]

        entries = await AuditLedger(session).entries_for("webhook", webhook.id, "webhook_received")
        assert len(entries) == 1

    async def test_enqueue_failure_keeps_webhook(
        self, session: AsyncSession, webhook_service: WebhookService, dispatcher
    ) -> None:
        dispatcher.fail = True

        webhook = await webhook_service.ingest(WebhookSource.PAYMENT, {"status": "paid"})

        result = await session.execute(select(Webhook).where(Webhook.id == webhook.id))
        assert result.scalar_one().status == WebhookStatus.PENDING


# ============================================================================
# Processing
# ============================================================================


class TestProcess:
    """Test applying stored webhooks to orders."""

    async def test_payment_confirmed_marks_order_paid(
        self, session: AsyncSession, webhook_service: WebhookService, dispatcher, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.CONFIRMED, payment_reference="PMI-777")
        webhook = await webhook_service.ingest(
            WebhookSource.PAYMENT, {"pmi_id": "PMI-777", "status": "confirmed"}
        )

        processed = await webhook_service.process(webhook.id)

        assert processed.status == WebhookStatus.PROCESSED
        assert processed.event_type == "payment_confirmed"
        assert processed.processed_at is not None
        assert processed.attempts == 1
        assert await order_status(session, order.id) == OrderStatus.PAID
        assert dispatcher.status_changes[-1]["new_status"] == "paid"

        entries = await AuditLedger(session).entries_for("webhook", webhook.id, "webhook_processed")
        assert entries[0].meta["order_id"] == str(order.id)

    async def test_payment_confirmed_ignored_unless_confirmed(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.CANCELLED, payment_reference="PMI-8")
        webhook = await webhook_service.ingest(
            WebhookSource.PAYMENT, {"payment_id": "PMI-8", "status": "paid"}
        )

        processed = await webhook_service.process(webhook.id)

        assert processed.status == WebhookStatus.PROCESSED
        assert await order_status(session, order.id) == OrderStatus.CANCELLED

    async def test_payment_failed_fails_order(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.CONFIRMED)
        webhook = await webhook_service.ingest(
            WebhookSource.PAYMENT,
            {"order_id": order.number, "status": "declined", "reason": "insufficient_funds"},
        )

        await webhook_service.process(webhook.id)

        assert await order_status(session, order.id) == OrderStatus.FAILED
        entries = await AuditLedger(session).entries_for("order", order.id, "status_changed")
        assert entries[-1].meta["reason"] == "insufficient_funds"

    async def test_label_created_records_label_and_fulfills(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.PAID)
        payload = {
            "event": "label_created",
            "order_id": str(order.id),
            "shipment_id": "SHP-EXT-1",
            "tracking_number": "DPD000111",
        }
        webhook = await webhook_service.ingest(WebhookSource.DPD, payload)

        await webhook_service.process(webhook.id)

        assert await order_status(session, order.id) == OrderStatus.FULFILLED
        result = await session.execute(
            select(ShippingLabel).where(ShippingLabel.order_id == order.id)
        )
        labels = result.scalars().all()
        assert len(labels) == 1
        assert labels[0].status == LabelStatus.GENERATED
        assert labels[0].external_shipment_id == "SHP-EXT-1"
        assert labels[0].tracking_number == "DPD000111"

    async def test_replayed_label_notification_is_idempotent(
        self, session: AsyncSession, webhook_service: WebhookService, dispatcher, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.PAID)
        payload = {"order_id": order.number, "shipment_id": "SHP-EXT-2", "label_created": True}

        first = await webhook_service.ingest(WebhookSource.BALIKOVNA, payload)
        await webhook_service.process(first.id)
        second = await webhook_service.ingest(WebhookSource.BALIKOVNA, payload)
        await webhook_service.process(second.id)

        result = await session.execute(
            select(ShippingLabel).where(ShippingLabel.order_id == order.id)
        )
        assert len(result.scalars().all()) == 1
        fulfilled = [
            change for change in dispatcher.status_changes if change["new_status"] == "fulfilled"
        ]
        assert len(fulfilled) == 1

    async def test_delivered_completes_fulfilled_order(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.FULFILLED)
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": order.number, "status": "delivered"}
        )

        await webhook_service.process(webhook.id)

        assert await order_status(session, order.id) == OrderStatus.COMPLETED

    async def test_delivered_on_cancelled_order_is_noop(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.CANCELLED)
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": order.number, "status": "delivered"}
        )

        processed = await webhook_service.process(webhook.id)

        assert processed.status == WebhookStatus.PROCESSED
        assert await order_status(session, order.id) == OrderStatus.CANCELLED
        assert await AuditLedger(session).entries_for("order", order.id, "status_changed") == []

    async def test_returned_fails_order(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.FULFILLED)
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": order.number, "status": "returned"}
        )

        await webhook_service.process(webhook.id)

        assert await order_status(session, order.id) == OrderStatus.FAILED

    async def test_unknown_event_is_processed_without_effect(
        self, session: AsyncSession, webhook_service: WebhookService, dispatcher, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.PAID)
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": order.number, "status": "in_transit"}
        )

        processed = await webhook_service.process(webhook.id)

        assert processed.status == WebhookStatus.PROCESSED
        assert processed.event_type == "unknown"
        assert dispatcher.status_changes == []

    async def test_missing_order_marks_webhook_failed(
        self, webhook_service: WebhookService
    ) -> None:
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": "ORD-404", "status": "delivered"}
        )
        webhook_id = webhook.id

        with pytest.raises(OrderNotFoundError):
            await webhook_service.process(webhook_id)

        stored = await webhook_service.get_webhook(webhook_id)
        assert stored.status == WebhookStatus.FAILED
        assert "ORD-404" in stored.error_message
        assert stored.attempts == 1
        assert stored.event_type == "package_delivered"

    async def test_missing_reference_marks_webhook_failed(
        self, session: AsyncSession, webhook_service: WebhookService
    ) -> None:
        webhook = await webhook_service.ingest(WebhookSource.PAYMENT, {"status": "paid"})
        webhook_id = webhook.id

        with pytest.raises(InvalidWebhookPayloadError):
            await webhook_service.process(webhook_id)

        stored = await webhook_service.get_webhook(webhook_id)
        assert stored.status == WebhookStatus.FAILED
        entries = await AuditLedger(session).entries_for("webhook", webhook_id, "webhook_failed")
        assert entries[0].meta["error_type"] == "InvalidWebhookPayloadError"

    async def test_invalid_transition_marks_webhook_failed(
        self, session: AsyncSession, webhook_service: WebhookService, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.NEW)
        webhook = await webhook_service.ingest(
            WebhookSource.PAYMENT, {"order_id": order.number, "status": "failed"}
        )
        webhook_id, order_id = webhook.id, order.id

        with pytest.raises(InvalidTransitionError):
            await webhook_service.process(webhook_id)

        stored = await webhook_service.get_webhook(webhook_id)
        assert stored.status == WebhookStatus.FAILED
        assert await order_status(session, order_id) == OrderStatus.NEW

    async def test_processed_webhook_is_not_applied_twice(
        self, webhook_service: WebhookService, dispatcher, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.FULFILLED)
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": order.number, "status": "delivered"}
        )
        await webhook_service.process(webhook.id)

        again = await webhook_service.process(webhook.id)

        assert again.attempts == 1
        assert len(dispatcher.status_changes) == 1

    async def test_unknown_webhook(self, webhook_service: WebhookService) -> None:
        with pytest.raises(WebhookNotFoundError):
            await webhook_service.process(uuid.uuid4())


# ============================================================================
# Reprocessing
# ============================================================================


class TestReprocess:
    """Test resetting failed webhooks."""

    async def test_reprocess_failed_webhook(
        self, session: AsyncSession, webhook_service: WebhookService, dispatcher, make_order
    ) -> None:
        webhook = await webhook_service.ingest(
            WebhookSource.DPD, {"order_id": "ORD-LATE", "status": "delivered"}
        )
        webhook_id = webhook.id
        with pytest.raises(OrderNotFoundError):
            await webhook_service.process(webhook_id)

        order = await make_order(status=OrderStatus.FULFILLED, number="ORD-LATE")

        reset = await webhook_service.reprocess(webhook_id)
        assert reset.status == WebhookStatus.PENDING
        assert reset.error_message is None
        assert dispatcher.webhooks == [webhook_id, webhook_id]

        processed = await webhook_service.process(webhook_id)

        assert processed.status == WebhookStatus.PROCESSED
        assert processed.attempts == 2
        assert await order_status(session, order.id) == OrderStatus.COMPLETED

    async def test_reprocess_unknown_webhook(self, webhook_service: WebhookService) -> None:
        with pytest.raises(WebhookNotFoundError):
            await webhook_service.reprocess(uuid.uuid4())
