"""
Database models package.

Importing this package registers every table on Base.metadata, which the
Alembic environment and the test fixtures rely on.
"""

from orderflow.database.models.audit_log import ActorType, AuditLogEntry
from orderflow.database.models.order import (
    Address,
    AddressType,
    Carrier,
    Client,
    Order,
    OrderItem,
)
from orderflow.database.models.shipping_label import LabelStatus, ShippingLabel
from orderflow.database.models.webhook import Webhook, WebhookSource, WebhookStatus

__all__ = [
    "ActorType",
    "Address",
    "AddressType",
    "AuditLogEntry",
    "Carrier",
    "Client",
    "LabelStatus",
    "Order",
    "OrderItem",
    "ShippingLabel",
    "Webhook",
    "WebhookSource",
    "WebhookStatus",
]
