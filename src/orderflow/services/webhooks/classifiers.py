"""Webhook event classification.

Each webhook source has its own classifier that maps the sender's payload
onto the internal event vocabulary and extracts the order reference. Any
payload a classifier does not recognize classifies as UNKNOWN.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from orderflow.database.models.webhook import WebhookSource


class WebhookEventType(str, Enum):
    """Internal webhook event vocabulary."""

    LABEL_CREATED = "label_created"
    PACKAGE_DELIVERED = "package_delivered"
    PACKAGE_RETURNED = "package_returned"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    UNKNOWN = "unknown"


class EventClassifier(ABC):
    """Maps one source's payloads onto internal events."""

    source: WebhookSource
    events: frozenset[WebhookEventType] = frozenset()
    reference_keys: tuple[str, ...] = ()

    def _explicit_event(
        self, payload: dict[str, Any], event_hint: Optional[str]
    ) -> Optional[WebhookEventType]:
        for candidate in (payload.get("event"), event_hint):
            if not isinstance(candidate, str):
                continue
            try:
                event_type = WebhookEventType(candidate.strip().lower())
            except ValueError:
                continue
            if event_type in self.events:
                return event_type
        return None

    @abstractmethod
    def classify(
        self, payload: dict[str, Any], event_hint: Optional[str] = None
    ) -> WebhookEventType:
        """Classify a payload."""
        ...

    def order_reference(self, payload: dict[str, Any]) -> Optional[str]:
        """Get the first non-empty order reference of the payload."""
        for key in self.reference_keys:
            value = payload.get(key)
            if value not in (None, ""):
                return str(value)
        return None


class CarrierEventClassifier(EventClassifier):
    """
    Classifier for carrier notifications.

    Precedence: explicit event name, then parcel status, then the
    label_created flag or a bare tracking number.
    """

    events = frozenset(
        {
            WebhookEventType.LABEL_CREATED,
            WebhookEventType.PACKAGE_DELIVERED,
            WebhookEventType.PACKAGE_RETURNED,
        }
    )
    reference_keys = ("order_id",)

    STATUS_EVENTS = {
        "delivered": WebhookEventType.PACKAGE_DELIVERED,
        "returned": WebhookEventType.PACKAGE_RETURNED,
    }

    def __init__(self, source: WebhookSource):
        self.source = source

    def classify(
        self, payload: dict[str, Any], event_hint: Optional[str] = None
    ) -> WebhookEventType:
        explicit = self._explicit_event(payload, event_hint)
        if explicit is not None:
            return explicit

        status = payload.get("status")
        if isinstance(status, str):
            event_type = self.STATUS_EVENTS.get(status.strip().lower())
            if event_type is not None:
                return event_type

        if payload.get("label_created") or payload.get("tracking_number"):
            return WebhookEventType.LABEL_CREATED

        return WebhookEventType.UNKNOWN


class PaymentEventClassifier(EventClassifier):
    """Classifier for payment provider notifications."""

    source = WebhookSource.PAYMENT
    events = frozenset({WebhookEventType.PAYMENT_CONFIRMED, WebhookEventType.PAYMENT_FAILED})
    reference_keys = ("pmi_id", "payment_id", "order_id")

    STATUS_EVENTS = {
        "confirmed": WebhookEventType.PAYMENT_CONFIRMED,
        "completed": WebhookEventType.PAYMENT_CONFIRMED,
        "paid": WebhookEventType.PAYMENT_CONFIRMED,
        "failed": WebhookEventType.PAYMENT_FAILED,
        "declined": WebhookEventType.PAYMENT_FAILED,
        "rejected": WebhookEventType.PAYMENT_FAILED,
    }

    def classify(
        self, payload: dict[str, Any], event_hint: Optional[str] = None
    ) -> WebhookEventType:
        status = payload.get("status")
        if isinstance(status, str):
            event_type = self.STATUS_EVENTS.get(status.strip().lower())
            if event_type is not None:
                return event_type

        explicit = self._explicit_event(payload, event_hint)
        if explicit is not None:
            return explicit

        return WebhookEventType.UNKNOWN


CLASSIFIERS: dict[WebhookSource, EventClassifier] = {
    WebhookSource.DPD: CarrierEventClassifier(WebhookSource.DPD),
    WebhookSource.BALIKOVNA: CarrierEventClassifier(WebhookSource.BALIKOVNA),
    WebhookSource.PAYMENT: PaymentEventClassifier(),
}


def get_classifier(source: WebhookSource) -> EventClassifier:
    """Get the classifier of a webhook source."""
    return CLASSIFIERS[source]
