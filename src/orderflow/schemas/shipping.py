"""Shipment command and tracking schemas."""

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.database.models.order import Carrier


class ShipmentRequest(BaseModel):
    """Request schema for assigning carrier options and generating a shipment."""

    model_config = ConfigDict(validate_assignment=True)

    carrier: Carrier = Field(..., description="Carrier to ship with")
    shipping_method: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Carrier shipping method, e.g. Home or PickupPoint",
    )
    pickup_point_id: Optional[str] = Field(
        None,
        max_length=100,
        description="Pickup point identifier for pickup point deliveries",
    )

    @field_validator("pickup_point_id")
    @classmethod
    def blank_pickup_point_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class ShipmentAcceptedResponse(BaseModel):
    """Response for asynchronously processed shipment commands."""

    order_id: UUID
    status: str = Field(..., description="Command state, always 'accepted'")
    detail: Optional[str] = None


class TrackingResponse(BaseModel):
    """Latest tracking state of an order's shipment."""

    order_id: UUID
    tracking_number: str
    status: str
    events: list[dict[str, Any]] = Field(default_factory=list)
