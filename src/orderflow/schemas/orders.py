"""
Order lifecycle Pydantic schemas for API request/response validation.

Covers status transition commands, the allowed-transition listing and the
order summary returned by lifecycle endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orderflow.database.models.order import Carrier
from orderflow.services.orders.enums import OrderStatus


class OrderTransitionRequest(BaseModel):
    """Request schema for moving an order to a new status."""

    model_config = ConfigDict(validate_assignment=True)

    target_status: OrderStatus = Field(
        ...,
        description="Desired order status",
    )
    reason: Optional[str] = Field(
        None,
        max_length=500,
        description="Reason recorded with the status change",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Caller metadata recorded with the status change",
    )


class OrderSummaryResponse(BaseModel):
    """Order state as seen by the fulfillment core."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    number: str
    status: OrderStatus
    client_id: UUID
    currency: str
    total_amount: Decimal
    carrier: Optional[Carrier] = None
    shipping_method: Optional[str] = None
    pickup_point_id: Optional[str] = None
    external_shipment_id: Optional[str] = None
    parcel_group_id: Optional[str] = None
    label_path: Optional[str] = None
    payment_reference: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime
    updated_at: datetime


class AvailableTransitionsResponse(BaseModel):
    """Statuses reachable from the order's current status."""

    order_id: UUID
    current_status: OrderStatus
    available: list[OrderStatus]
