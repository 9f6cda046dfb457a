"""Fake carrier client: deterministic carrier for testing and development.

Shipment ids derive from the idempotency key, so a retried creation with
the same key yields the same shipment, as a deduplicating carrier would.
Failures can be configured per operation and every call is recorded.
"""

import hashlib
from typing import Optional

from orderflow.core.exceptions import CarrierError
from orderflow.database.models.order import Carrier
from orderflow.services.shipping.carriers.base import (
    CarrierClient,
    ShipmentRequest,
    ShipmentResult,
    TrackingInfo,
)

FAKE_LABEL = b"%PDF-1.4\n% fake shipping label\n%%EOF\n"


class FakeCarrierClient(CarrierClient):
    """Fake carrier that always succeeds by default."""

    def __init__(self, carrier: Carrier = Carrier.DPD):
        self.carrier = carrier
        self.calls: list[tuple[str, object]] = []
        self.shipments: dict[str, ShipmentRequest] = {}
        self.deleted: list[str] = []
        self.tracking_status = "in_transit"
        self._failures: dict[str, CarrierError] = {}

    def configure(
        self,
        operation: str,
        error: Optional[CarrierError] = None,
    ) -> None:
        """
        Configure the fake carrier behavior for testing.

        Args:
            operation: create_shipment, download_label, delete_shipment or get_tracking
            error: Error to raise from the operation, None to clear it
        """
        if error is None:
            self._failures.pop(operation, None)
        else:
            self._failures[operation] = error

    def _maybe_fail(self, operation: str) -> None:
        error = self._failures.get(operation)
        if error is not None:
            raise error

    def calls_to(self, operation: str) -> list[object]:
        return [argument for name, argument in self.calls if name == operation]

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        self.calls.append(("create_shipment", request))
        self._maybe_fail("create_shipment")

        digest = hashlib.sha1(request.idempotency_key.encode()).hexdigest()
        shipment_id = f"SHP{digest[:10].upper()}"
        tracking_number = f"{self.carrier.value.upper()}{digest[10:22].upper()}"
        self.shipments[shipment_id] = request

        return ShipmentResult(
            shipment_id=shipment_id,
            tracking_number=tracking_number,
            parcel_group_id=request.parcel_group_id,
            raw={
                "shipment_id": shipment_id,
                "tracking_number": tracking_number,
                "packages": len(request.packages),
            },
        )

    async def download_label(self, shipment_id: str) -> bytes:
        self.calls.append(("download_label", shipment_id))
        self._maybe_fail("download_label")
        return FAKE_LABEL

    async def delete_shipment(self, shipment_id: str) -> None:
        self.calls.append(("delete_shipment", shipment_id))
        self._maybe_fail("delete_shipment")
        self.shipments.pop(shipment_id, None)
        self.deleted.append(shipment_id)

    async def get_tracking(self, tracking_number: str) -> TrackingInfo:
        self.calls.append(("get_tracking", tracking_number))
        self._maybe_fail("get_tracking")
        return TrackingInfo(
            tracking_number=tracking_number,
            status=self.tracking_status,
            events=[{"status": self.tracking_status, "description": "Parcel scanned"}],
            raw={"status": self.tracking_status},
        )
