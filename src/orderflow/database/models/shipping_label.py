"""
Shipping label model.

A label row records one carrier shipment artifact for one order. Orders
consolidated into a single shipment each get their own row pointing at the
same external shipment and tracking number.
"""

import uuid
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Enum as SQLEnum, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel, JSONDict, JSONType
from orderflow.database.models.order import Carrier, _enum_values


class LabelStatus(str, Enum):
    """
    Shipping label status.

    Attributes:
        GENERATED: Active label for a live shipment
        VOIDED: Label of a deleted or cancelled shipment
        FAILED: Record of a failed shipment generation attempt
    """

    GENERATED = "generated"
    VOIDED = "voided"
    FAILED = "failed"


class ShippingLabel(BaseModel):
    """Shipping label issued by a carrier for an order."""

    __tablename__ = "shipping_labels"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    carrier: Mapped[Carrier] = mapped_column(
        SQLEnum(
            Carrier,
            name="carrier",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
    )

    external_shipment_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )

    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    file_path: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Stored label artifact path",
    )

    format: Mapped[str] = mapped_column(String(10), nullable=False, default="pdf")

    status: Mapped[LabelStatus] = mapped_column(
        SQLEnum(
            LabelStatus,
            name="label_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=LabelStatus.GENERATED,
        index=True,
    )

    raw_response: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Opaque carrier response or failure details",
    )

    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONDict,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        Index("ix_shipping_labels_order_shipment", "order_id", "external_shipment_id"),
    )
