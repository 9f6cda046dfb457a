"""Order fulfillment core: lifecycle engine, shipment orchestration and webhook ingestion."""

__version__ = "1.0.0"
