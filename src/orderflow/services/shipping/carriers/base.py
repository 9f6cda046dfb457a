"""Carrier client interface and shipment contract.

All carrier clients implement CarrierClient. The orchestrator programs
against this interface; the concrete client is chosen via configuration.
Each carrier also has a static profile describing what it can service.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from orderflow.database.models.order import Carrier


class Package(BaseModel):
    """Physical package of a shipment. Weight in grams, dimensions in cm."""

    model_config = ConfigDict(frozen=True)

    weight: int = Field(..., ge=0)
    length: int = Field(..., gt=0)
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class Recipient(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class ShipmentAddress(BaseModel):
    street: str
    street2: Optional[str] = None
    city: str
    postal_code: str
    country_code: str


class ShipmentRequest(BaseModel):
    """Carrier-neutral shipment creation request."""

    carrier: Carrier
    service_code: str
    shipping_method: str
    order_number: str
    recipient: Recipient
    address: ShipmentAddress
    packages: list[Package] = Field(..., min_length=1)
    pickup_point_id: Optional[str] = None
    parcel_group_id: Optional[str] = None
    idempotency_key: str

    def to_payload(self) -> dict[str, Any]:
        """Build the JSON body sent to carrier APIs."""
        payload: dict[str, Any] = {
            "service": self.service_code,
            "order_id": self.order_number,
            "recipient": self.recipient.model_dump(),
            "address": self.address.model_dump(exclude_none=True),
            "packages": [package.model_dump() for package in self.packages],
        }
        if self.pickup_point_id:
            payload["pickup_point_id"] = self.pickup_point_id
        if self.parcel_group_id:
            payload["parcel_group_id"] = self.parcel_group_id
        return payload


class ShipmentResult(BaseModel):
    """Outcome of a successful shipment creation."""

    shipment_id: str
    tracking_number: Optional[str] = None
    parcel_group_id: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TrackingInfo(BaseModel):
    """Current tracking state of a parcel."""

    tracking_number: str
    status: str
    events: list[dict[str, Any]] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict)


class CarrierProfile(BaseModel):
    """
    Static capabilities of a carrier.

    Attributes:
        carrier: Carrier identifier
        countries: ISO country codes the carrier delivers to
        services: Shipping method name to carrier service code
        pickup_methods: Methods that deliver to a pickup point
    """

    model_config = ConfigDict(frozen=True)

    carrier: Carrier
    countries: frozenset[str]
    services: dict[str, str]
    pickup_methods: frozenset[str] = frozenset()

    def supports_method(self, method: Optional[str]) -> bool:
        return method is not None and method in self.services

    def requires_pickup_point(self, method: Optional[str]) -> bool:
        return method in self.pickup_methods

    def serves_country(self, country_code: Optional[str]) -> bool:
        return country_code is not None and country_code.upper() in self.countries

    def service_code(self, method: str) -> str:
        return self.services[method]


CARRIER_PROFILES: dict[Carrier, CarrierProfile] = {
    Carrier.DPD: CarrierProfile(
        carrier=Carrier.DPD,
        countries=frozenset({"CZ", "SK"}),
        services={"Home": "327", "PickupPoint": "337"},
        pickup_methods=frozenset({"PickupPoint"}),
    ),
    Carrier.BALIKOVNA: CarrierProfile(
        carrier=Carrier.BALIKOVNA,
        countries=frozenset({"CZ"}),
        services={"Home": "DR", "PickupPoint": "NB"},
        pickup_methods=frozenset({"PickupPoint"}),
    ),
}


def get_carrier_profile(carrier: Carrier) -> CarrierProfile:
    """Get the static profile of a carrier."""
    return CARRIER_PROFILES[carrier]


class CarrierClient(ABC):
    """Abstract interface for carrier API clients.

    Implementations raise TransientCarrierError for failures worth retrying
    and PermanentCarrierError when the carrier rejects the request.
    """

    carrier: Carrier

    @abstractmethod
    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        """Create a shipment covering all packages of the request."""
        ...

    @abstractmethod
    async def download_label(self, shipment_id: str) -> bytes:
        """Download the label document of a shipment."""
        ...

    @abstractmethod
    async def delete_shipment(self, shipment_id: str) -> None:
        """Void a shipment. Deleting an unknown shipment succeeds."""
        ...

    @abstractmethod
    async def get_tracking(self, tracking_number: str) -> TrackingInfo:
        """Get the current tracking state of a parcel."""
        ...

    async def aclose(self) -> None:
        """Release network resources held by the client."""
        return None

    async def __aenter__(self) -> "CarrierClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
