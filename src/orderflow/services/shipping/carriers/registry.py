"""Carrier client factory selected by configuration."""

from typing import Callable

from orderflow.core.config import Settings
from orderflow.database.models.order import Carrier
from orderflow.services.shipping.carriers.base import CarrierClient
from orderflow.services.shipping.carriers.fake import FakeCarrierClient
from orderflow.services.shipping.carriers.http_client import HttpCarrierClient

CarrierClientFactory = Callable[[Carrier], CarrierClient]


def build_carrier_factory(settings: Settings) -> CarrierClientFactory:
    """
    Build the factory the orchestrator uses to obtain carrier clients.

    Args:
        settings: Application settings; carrier_client_mode selects http or fake

    Returns:
        Callable returning a client for a carrier
    """
    if settings.carrier_client_mode == "fake":
        fakes: dict[Carrier, FakeCarrierClient] = {}

        def fake_factory(carrier: Carrier) -> CarrierClient:
            return fakes.setdefault(carrier, FakeCarrierClient(carrier))

        return fake_factory

    def http_factory(carrier: Carrier) -> CarrierClient:
        return HttpCarrierClient.from_settings(carrier, settings)

    return http_factory
