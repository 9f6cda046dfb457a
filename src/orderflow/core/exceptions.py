"""
Exception hierarchy for the fulfillment core.

Every error carries a human readable message plus structured context that
is logged alongside it. API handlers map these to HTTP responses and Celery
tasks use the ``retryable`` flag to decide whether a failed attempt should be
scheduled again.
"""

from typing import Any


class OrderflowError(Exception):
    """Base exception for fulfillment core errors."""

    code = "ORDERFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidTransitionError(OrderflowError):
    """Raised when the requested status is unreachable from the current one."""

    code = "INVALID_TRANSITION"

    def __init__(self, message: str, current_status: Any, target_status: Any, **context: Any):
        super().__init__(
            message,
            current_status=getattr(current_status, "value", current_status),
            target_status=getattr(target_status, "value", target_status),
            **context,
        )
        self.current_status = current_status
        self.target_status = target_status


class PreconditionFailedError(OrderflowError):
    """Raised when a business rule guard is not met."""

    code = "PRECONDITION_FAILED"


class NotFoundError(OrderflowError):
    """Raised when a looked up record does not exist."""

    code = "NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    """Raised when an order cannot be resolved."""

    code = "ORDER_NOT_FOUND"
    # A miss may be read-replica lag; the queue retries it a bounded number of times.
    retryable = True


class ShipmentNotFoundError(NotFoundError):
    """Raised when an order carries no shipment to act on."""

    code = "SHIPMENT_NOT_FOUND"


class WebhookNotFoundError(NotFoundError):
    """Raised when a webhook record does not exist."""

    code = "WEBHOOK_NOT_FOUND"


class CarrierError(OrderflowError):
    """Base exception for carrier API failures."""

    code = "CARRIER_ERROR"


class TransientCarrierError(CarrierError):
    """Network failure, timeout, rate limit or 5xx from the carrier."""

    code = "CARRIER_UNAVAILABLE"
    retryable = True


class PermanentCarrierError(CarrierError):
    """The carrier rejected the request."""

    code = "CARRIER_REJECTED"


class ConsolidationConflictError(OrderflowError):
    """Raised when a consolidation group changed while the shipment was created."""

    code = "CONSOLIDATION_CONFLICT"
    retryable = True


class InvalidWebhookPayloadError(OrderflowError):
    """Raised when a webhook payload lacks the data needed to process it."""

    code = "INVALID_WEBHOOK_PAYLOAD"


class WebhookSignatureError(OrderflowError):
    """Raised when an inbound webhook fails signature verification."""

    code = "INVALID_SIGNATURE"
