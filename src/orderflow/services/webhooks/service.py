"""Webhook ingestion and processing service.

Ingestion stores the webhook as a pending row and commits before anything
else happens, then enqueues processing. Processing classifies the payload,
resolves the target order and applies the event through the lifecycle
engine or the fulfillment orchestrator. The outcome is recorded on the row
(processed, or failed with the error message) and failures are re-raised
so the queue can retry them.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import (
    InvalidWebhookPayloadError,
    OrderNotFoundError,
    WebhookNotFoundError,
)
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Carrier, Order
from orderflow.database.models.webhook import Webhook, WebhookSource, WebhookStatus
from orderflow.services.audit.ledger import Actor, AuditLedger
from orderflow.services.dispatch import TaskDispatcher
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.state_machine import OrderLifecycleEngine
from orderflow.services.shipping.orchestrator import (
    FulfillmentOrchestrator,
    get_fulfillment_orchestrator,
)
from orderflow.services.webhooks.classifiers import WebhookEventType, get_classifier

logger = get_logger(__name__)

# Request headers kept with the stored webhook
STORED_HEADERS = ("content-type", "user-agent", "x-request-id", "x-signature")


class WebhookService:
    """
    Service for inbound webhooks.

    Processing effects:
        label_created: record the label, then PAID -> FULFILLED if still PAID
        package_delivered: FULFILLED -> COMPLETED if still FULFILLED
        package_returned: -> FAILED
        payment_confirmed: CONFIRMED -> PAID if still CONFIRMED
        payment_failed: -> FAILED
        unknown: logged, no effect
    """

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: TaskDispatcher,
        lifecycle: OrderLifecycleEngine,
        orchestrator: FulfillmentOrchestrator,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle
        self.orchestrator = orchestrator
        self.orders = OrderRepository(session)
        self.ledger = AuditLedger(session)

    async def get_webhook(self, webhook_id: uuid.UUID) -> Webhook:
        """
        Load a webhook with fresh attribute state.

        Raises:
            WebhookNotFoundError: If the webhook does not exist
        """
        webhook = await self.session.get(Webhook, webhook_id, populate_existing=True)
        if webhook is None:
            raise WebhookNotFoundError(
                f"Webhook {webhook_id} not found",
                webhook_id=str(webhook_id),
            )
        return webhook

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        source: WebhookSource,
        payload: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
        event: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Webhook:
        """
        Durably store an inbound webhook and enqueue its processing.

        The row is committed before processing is enqueued; if enqueueing
        fails the row stays pending and can be replayed.

        Args:
            source: Sender of the webhook
            payload: Parsed JSON body
            headers: Request headers
            event: Event name supplied by the sender
            actor: Actor recorded in the ledger

        Returns:
            The stored pending webhook
        """
        kept_headers = {
            key.lower(): value
            for key, value in (headers or {}).items()
            if key.lower() in STORED_HEADERS
        }
        event_name = event or payload.get("event")

        try:
            webhook = Webhook(
                source=source,
                event=str(event_name)[:100] if event_name else None,
                payload=payload,
                headers=kept_headers,
                status=WebhookStatus.PENDING,
                attempts=0,
            )
            self.session.add(webhook)
            await self.session.flush()

            await self.ledger.record(
                entity_type="webhook",
                entity_id=webhook.id,
                action="webhook_received",
                actor=actor or Actor.api(source.value),
                metadata={"source": source.value, "event": webhook.event},
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Webhook stored",
            webhook_id=str(webhook.id),
            source=source.value,
            webhook_event=webhook.event,
        )

        self._enqueue(webhook.id)
        return webhook

    def _enqueue(self, webhook_id: uuid.UUID) -> None:
        try:
            self.dispatcher.process_webhook(webhook_id)
        except Exception as e:
            logger.error(
                "Failed to enqueue webhook processing, webhook left pending",
                webhook_id=str(webhook_id),
                error=str(e),
                error_type=type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, webhook_id: uuid.UUID) -> Webhook:
        """
        Apply a stored webhook.

        Args:
            webhook_id: Webhook to process

        Returns:
            The webhook in its final status

        Raises:
            WebhookNotFoundError: If the webhook does not exist
            OrderNotFoundError: If the payload's order cannot be resolved
            InvalidWebhookPayloadError: If the payload carries no order reference
            OrderflowError: Any error raised while applying the event
        """
        webhook = await self.get_webhook(webhook_id)
        if webhook.status == WebhookStatus.PROCESSED:
            logger.info("Webhook already processed", webhook_id=str(webhook_id))
            return webhook

        source = webhook.source
        payload = dict(webhook.payload or {})
        event_type = get_classifier(source).classify(payload, webhook.event)

        webhook.attempts = (webhook.attempts or 0) + 1
        webhook.event_type = event_type.value
        await self.session.commit()

        log = logger.bind(
            webhook_id=str(webhook_id),
            source=source.value,
            event_type=event_type.value,
        )

        try:
            order_id = await self._apply(webhook_id, source, event_type, payload)
        except Exception as e:
            await self.session.rollback()
            await self._mark_failed(webhook_id, e)
            log.warning("Webhook processing failed", error=str(e), error_type=type(e).__name__)
            raise

        try:
            webhook = await self.get_webhook(webhook_id)
            webhook.status = WebhookStatus.PROCESSED
            webhook.processed_at = datetime.now(timezone.utc)
            webhook.error_message = None
            await self.ledger.record(
                entity_type="webhook",
                entity_id=webhook_id,
                action="webhook_processed",
                metadata={
                    "event_type": event_type.value,
                    "order_id": str(order_id) if order_id else None,
                },
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        log.info("Webhook processed", order_id=str(order_id) if order_id else None)
        return webhook

    async def _mark_failed(self, webhook_id: uuid.UUID, error: Exception) -> None:
        try:
            webhook = await self.get_webhook(webhook_id)
            webhook.status = WebhookStatus.FAILED
            webhook.error_message = str(error)
            await self.ledger.record(
                entity_type="webhook",
                entity_id=webhook_id,
                action="webhook_failed",
                metadata={"error": str(error), "error_type": type(error).__name__},
            )
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(
                "Failed to record webhook failure",
                webhook_id=str(webhook_id),
                error=str(e),
                original_error=str(error),
            )

    async def _resolve_order(self, source: WebhookSource, payload: dict[str, Any]) -> Order:
        reference = get_classifier(source).order_reference(payload)
        if reference is None:
            raise InvalidWebhookPayloadError(
                "Webhook payload carries no order reference",
                source=source.value,
            )

        order = await self.orders.resolve_reference(reference)
        if order is None:
            raise OrderNotFoundError(
                f"No order matches webhook reference {reference}",
                reference=reference,
                source=source.value,
            )
        return order

    async def _apply(
        self,
        webhook_id: uuid.UUID,
        source: WebhookSource,
        event_type: WebhookEventType,
        payload: dict[str, Any],
    ) -> Optional[uuid.UUID]:
        if event_type == WebhookEventType.UNKNOWN:
            logger.info(
                "Unrecognized webhook event ignored",
                webhook_id=str(webhook_id),
                source=source.value,
                payload_keys=sorted(payload.keys()),
            )
            return None

        order = await self._resolve_order(source, payload)
        order_id = order.id
        actor = Actor.system(f"webhook:{source.value}")
        metadata = {"webhook_id": str(webhook_id), "source": source.value}

        if event_type == WebhookEventType.LABEL_CREATED:
            await self._record_label(order, source, payload, actor)
            await self.lifecycle.transition(
                order_id,
                OrderStatus.FULFILLED,
                reason="label_created",
                metadata=metadata,
                actor=actor,
                only_from={OrderStatus.PAID},
            )

        elif event_type == WebhookEventType.PACKAGE_DELIVERED:
            await self.lifecycle.transition(
                order_id,
                OrderStatus.COMPLETED,
                reason="package_delivered",
                metadata=metadata,
                actor=actor,
                only_from={OrderStatus.FULFILLED},
            )

        elif event_type == WebhookEventType.PACKAGE_RETURNED:
            await self.lifecycle.transition(
                order_id,
                OrderStatus.FAILED,
                reason="package_returned",
                metadata=metadata,
                actor=actor,
            )

        elif event_type == WebhookEventType.PAYMENT_CONFIRMED:
            await self.lifecycle.transition(
                order_id,
                OrderStatus.PAID,
                reason="payment_confirmed",
                metadata=metadata,
                actor=actor,
                only_from={OrderStatus.CONFIRMED},
            )

        elif event_type == WebhookEventType.PAYMENT_FAILED:
            await self.lifecycle.transition(
                order_id,
                OrderStatus.FAILED,
                reason=str(payload.get("reason") or "payment_failed"),
                metadata=metadata,
                actor=actor,
            )

        return order_id

    async def _record_label(
        self,
        order: Order,
        source: WebhookSource,
        payload: dict[str, Any],
        actor: Actor,
    ) -> None:
        carrier = order.carrier
        if source.is_carrier:
            carrier = Carrier(source.value)
        if carrier is None:
            raise InvalidWebhookPayloadError(
                "Cannot determine the carrier of the reported label",
                order_id=str(order.id),
            )

        shipment_id = payload.get("shipment_id")
        tracking_number = payload.get("tracking_number")
        try:
            await self.orchestrator.record_label(
                order,
                carrier,
                external_shipment_id=str(shipment_id) if shipment_id else None,
                tracking_number=str(tracking_number) if tracking_number else None,
                raw_response=payload,
                actor=actor,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Reprocessing
    # ------------------------------------------------------------------

    async def reprocess(self, webhook_id: uuid.UUID, actor: Optional[Actor] = None) -> Webhook:
        """
        Reset a webhook to pending and enqueue it again.

        Raises:
            WebhookNotFoundError: If the webhook does not exist
        """
        try:
            webhook = await self.get_webhook(webhook_id)
            previous_status = webhook.status
            webhook.status = WebhookStatus.PENDING
            webhook.error_message = None
            webhook.processed_at = None
            await self.ledger.record(
                entity_type="webhook",
                entity_id=webhook_id,
                action="webhook_reprocess_requested",
                actor=actor,
                metadata={"previous_status": previous_status.value},
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Webhook reset for reprocessing",
            webhook_id=str(webhook_id),
            previous_status=previous_status.value,
        )
        self._enqueue(webhook_id)
        return webhook


def get_webhook_service(session: AsyncSession, dispatcher: TaskDispatcher) -> WebhookService:
    """
    Factory function to create a WebhookService with its collaborators.

    Args:
        session: Async database session
        dispatcher: Task dispatcher

    Returns:
        WebhookService instance
    """
    return WebhookService(
        session,
        dispatcher,
        OrderLifecycleEngine(session, dispatcher),
        get_fulfillment_orchestrator(session, dispatcher),
    )
