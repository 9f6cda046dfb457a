"""
Inbound webhook model.

Every notification received from a carrier or the payment provider is
stored as a pending row before anything else happens to it, so a crash
between receipt and processing can be recovered by replaying the row.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import DateTime, Enum as SQLEnum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel, JSONType
from orderflow.database.models.order import _enum_values


class WebhookSource(str, Enum):
    """Third party that sent a webhook."""

    DPD = "dpd"
    BALIKOVNA = "balikovna"
    PAYMENT = "payment"

    @property
    def is_carrier(self) -> bool:
        """Check if the source is a shipping carrier."""
        return self in (WebhookSource.DPD, WebhookSource.BALIKOVNA)


class WebhookStatus(str, Enum):
    """Processing status of a stored webhook."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class Webhook(BaseModel):
    """
    Stored inbound webhook.

    Attributes:
        source: Sender of the webhook
        event: Event name supplied by the sender, if any
        event_type: Internal event classification assigned while processing
        payload: Raw JSON payload
        headers: Selected request headers
        status: Processing status
        processed_at: Timestamp of successful processing
        error_message: Error of the last failed processing attempt
        attempts: Number of processing attempts
    """

    __tablename__ = "webhooks"

    source: Mapped[WebhookSource] = mapped_column(
        SQLEnum(
            WebhookSource,
            name="webhook_source",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        index=True,
    )

    event: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    event_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    headers: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[WebhookStatus] = mapped_column(
        SQLEnum(
            WebhookStatus,
            name="webhook_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=WebhookStatus.PENDING,
        index=True,
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
