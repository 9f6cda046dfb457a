"""Carrier API clients."""

from orderflow.services.shipping.carriers.base import (
    CARRIER_PROFILES,
    CarrierClient,
    CarrierProfile,
    Package,
    ShipmentRequest,
    ShipmentResult,
    TrackingInfo,
    get_carrier_profile,
)
from orderflow.services.shipping.carriers.fake import FakeCarrierClient
from orderflow.services.shipping.carriers.http_client import HttpCarrierClient
from orderflow.services.shipping.carriers.registry import (
    CarrierClientFactory,
    build_carrier_factory,
)

__all__ = [
    "CARRIER_PROFILES",
    "CarrierClient",
    "CarrierClientFactory",
    "CarrierProfile",
    "FakeCarrierClient",
    "HttpCarrierClient",
    "Package",
    "ShipmentRequest",
    "ShipmentResult",
    "TrackingInfo",
    "build_carrier_factory",
    "get_carrier_profile",
]
