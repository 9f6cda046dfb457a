"""
Order models for the fulfillment core.

This module defines the Order model together with the supporting Client,
Address and OrderItem records that the lifecycle guards and shipment
requests read. Clients, addresses and items are written by the order intake
collaborator; this service only reads them.
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import BaseModel, JSONDict
from orderflow.services.orders.enums import OrderStatus


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Carrier(str, Enum):
    """
    Shipping carriers supported by the orchestrator.

    Attributes:
        DPD: Parcel carrier with home and pickup point delivery
        BALIKOVNA: Postal pickup network carrier
    """

    DPD = "dpd"
    BALIKOVNA = "balikovna"


class AddressType(str, Enum):
    """Role of an address attached to an order."""

    SHIPPING = "shipping"
    BILLING = "billing"


class Client(BaseModel):
    """
    Customer placing orders.

    Attributes:
        name: Full customer name
        email: Contact email
        phone: Contact phone number
    """

    __tablename__ = "clients"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class Address(BaseModel):
    """Postal address used as shipment recipient or billing address."""

    __tablename__ = "addresses"

    type: Mapped[AddressType] = mapped_column(
        SQLEnum(
            AddressType,
            name="address_type",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AddressType.SHIPPING,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    street1: Mapped[str] = mapped_column(String(255), nullable=False)
    street2: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    postal_code: Mapped[str] = mapped_column(String(20), nullable=False)
    country_code: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        comment="ISO 3166-1 alpha-2 country code",
    )
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class OrderItem(BaseModel):
    """Line item of an order."""

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )


class Order(BaseModel):
    """
    Customer order moving through the fulfillment lifecycle.

    Status is written only by the lifecycle engine. Shipment fields
    (external_shipment_id, parcel_group_id, label_path) are written only by
    the fulfillment orchestrator.

    Attributes:
        number: Human-readable order number
        status: Current lifecycle status
        client_id: Customer who placed the order
        currency: ISO 4217 currency code
        total_amount: Total order amount
        carrier: Carrier assigned to ship the order
        shipping_method: Carrier shipping method name (Home, PickupPoint)
        pickup_point_id: Carrier pickup point for pickup methods
        external_shipment_id: Carrier shipment covering this order
        parcel_group_id: Shared identifier of consolidated orders
        label_path: Stored label artifact of the current shipment
        payment_reference: External payment correlation id
        meta: Free-form metadata map
    """

    __tablename__ = "orders"

    number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="Human-readable order number",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=OrderStatus.NEW,
        index=True,
        comment="Current order status",
    )

    client_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("clients.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CZK")

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=10, scale=2),
        nullable=False,
        default=Decimal("0.00"),
    )

    # Shipping options
    carrier: Mapped[Optional[Carrier]] = mapped_column(
        SQLEnum(
            Carrier,
            name="carrier",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=True,
    )

    shipping_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    pickup_point_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Shipment fields
    external_shipment_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Carrier shipment covering this order",
    )

    parcel_group_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Shared identifier of orders consolidated into one shipment",
    )

    label_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    payment_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        comment="External payment correlation id",
    )

    shipping_address_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("addresses.id", ondelete="SET NULL"),
        nullable=True,
    )

    billing_address_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("addresses.id", ondelete="SET NULL"),
        nullable=True,
    )

    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONDict,
        nullable=False,
        default=dict,
    )

    # Relationships
    client: Mapped["Client"] = relationship("Client", lazy="selectin")

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    shipping_address: Mapped[Optional["Address"]] = relationship(
        "Address",
        foreign_keys=[shipping_address_id],
        lazy="selectin",
    )

    billing_address: Mapped[Optional["Address"]] = relationship(
        "Address",
        foreign_keys=[billing_address_id],
        lazy="selectin",
    )

    __table_args__ = (
        # Consolidation candidate lookup
        Index(
            "ix_orders_consolidation",
            "client_id",
            "status",
            "shipping_method",
            "pickup_point_id",
        ),
        CheckConstraint(
            "parcel_group_id IS NULL OR external_shipment_id IS NOT NULL",
            name="ck_orders_parcel_group_has_shipment",
        ),
    )

    @property
    def item_count(self) -> int:
        """Total quantity across all line items."""
        return sum(item.quantity for item in self.items)

    @property
    def has_address(self) -> bool:
        """Check if any address is attached to the order."""
        return self.shipping_address_id is not None or self.billing_address_id is not None

    @property
    def has_shipment(self) -> bool:
        """Check if the order is already covered by a carrier shipment."""
        return self.external_shipment_id is not None
