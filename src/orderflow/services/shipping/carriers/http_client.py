"""
HTTP carrier API client.

A single httpx based client serves both carriers; the carriers differ only
in base URL and authentication. Responses are classified so that callers
can tell retryable failures from rejected requests:

- network errors, timeouts, 429 and 5xx raise TransientCarrierError
- any other 4xx raises PermanentCarrierError
- 404 on delete means the shipment is already gone and is treated as success
"""

from typing import Any, Optional

import httpx

from orderflow.core.config import Settings
from orderflow.core.exceptions import (
    CarrierError,
    PermanentCarrierError,
    TransientCarrierError,
)
from orderflow.core.logging import get_logger, log_performance
from orderflow.database.models.order import Carrier
from orderflow.services.shipping.carriers.base import (
    CarrierClient,
    ShipmentRequest,
    ShipmentResult,
    TrackingInfo,
)

logger = get_logger(__name__)


class HttpCarrierClient(CarrierClient):
    """Carrier client talking to a carrier REST API."""

    def __init__(
        self,
        carrier: Carrier,
        base_url: str,
        timeout: float = 30.0,
        auth: Optional[httpx.Auth] = None,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.carrier = carrier
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            auth=auth,
            headers={"Accept": "application/json", **(headers or {})},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, carrier: Carrier, settings: Settings) -> "HttpCarrierClient":
        """
        Build a client for a carrier from application settings.

        Args:
            carrier: Carrier to talk to
            settings: Application settings

        Returns:
            Configured HTTP carrier client
        """
        if carrier == Carrier.DPD:
            auth = None
            if settings.dpd_username and settings.dpd_password:
                auth = httpx.BasicAuth(settings.dpd_username, settings.dpd_password)
            return cls(
                carrier,
                settings.dpd_api_url,
                timeout=settings.carrier_timeout_seconds,
                auth=auth,
            )

        headers = {}
        if settings.balikovna_api_key:
            headers["X-Api-Key"] = settings.balikovna_api_key
        return cls(
            carrier,
            settings.balikovna_api_url,
            timeout=settings.carrier_timeout_seconds,
            headers=headers,
        )

    @property
    def is_closed(self) -> bool:
        return self.client.is_closed

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and classify failures.

        Raises:
            TransientCarrierError: On network failure, timeout, 429 or 5xx
            PermanentCarrierError: On any other 4xx
        """
        context = {"carrier": self.carrier.value, "operation": operation}

        try:
            with log_performance(logger, f"carrier.{operation}", carrier=self.carrier.value):
                response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientCarrierError(
                f"{self.carrier.value} API timed out during {operation}", **context
            ) from e
        except httpx.TransportError as e:
            raise TransientCarrierError(
                f"{self.carrier.value} API unreachable during {operation}: {e}", **context
            ) from e

        status = response.status_code
        if status < 400:
            return response

        body = response.text[:500]
        if status == 429 or status >= 500:
            raise TransientCarrierError(
                f"{self.carrier.value} API returned {status} during {operation}",
                status_code=status,
                retry_after=response.headers.get("Retry-After"),
                body=body,
                **context,
            )
        raise PermanentCarrierError(
            f"{self.carrier.value} API rejected {operation} with {status}",
            status_code=status,
            body=body,
            **context,
        )

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        response = await self._request(
            "POST",
            "/shipment",
            "create_shipment",
            json=request.to_payload(),
            headers={"Idempotency-Key": request.idempotency_key},
        )
        data = response.json()

        shipment_id = data.get("shipment_id")
        if not shipment_id:
            raise PermanentCarrierError(
                f"{self.carrier.value} API response carries no shipment id",
                carrier=self.carrier.value,
                response=data,
            )

        logger.info(
            "Carrier shipment created",
            carrier=self.carrier.value,
            shipment_id=shipment_id,
            order_number=request.order_number,
        )
        return ShipmentResult(
            shipment_id=str(shipment_id),
            tracking_number=data.get("tracking_number"),
            parcel_group_id=data.get("parcel_group_id"),
            raw=data,
        )

    async def download_label(self, shipment_id: str) -> bytes:
        response = await self._request(
            "GET",
            f"/shipment/{shipment_id}/label",
            "download_label",
            headers={"Accept": "application/pdf"},
        )
        if not response.content:
            raise TransientCarrierError(
                f"{self.carrier.value} API returned an empty label",
                carrier=self.carrier.value,
                shipment_id=shipment_id,
            )
        return response.content

    async def delete_shipment(self, shipment_id: str) -> None:
        try:
            await self._request("DELETE", f"/shipment/{shipment_id}", "delete_shipment")
        except PermanentCarrierError as e:
            if e.context.get("status_code") != 404:
                raise
            logger.info(
                "Carrier shipment already gone",
                carrier=self.carrier.value,
                shipment_id=shipment_id,
            )
            return

        logger.info(
            "Carrier shipment deleted",
            carrier=self.carrier.value,
            shipment_id=shipment_id,
        )

    async def get_tracking(self, tracking_number: str) -> TrackingInfo:
        response = await self._request(
            "GET",
            f"/parcels/{tracking_number}/tracking",
            "get_tracking",
        )
        try:
            data = response.json()
        except ValueError as e:
            raise CarrierError(
                f"{self.carrier.value} API returned invalid tracking data",
                carrier=self.carrier.value,
                tracking_number=tracking_number,
            ) from e

        return TrackingInfo(
            tracking_number=tracking_number,
            status=str(data.get("status", "unknown")),
            events=data.get("events") or [],
            raw=data,
        )
