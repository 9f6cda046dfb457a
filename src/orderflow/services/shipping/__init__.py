"""Shipment generation, consolidation and label storage."""
