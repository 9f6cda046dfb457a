"""Inbound webhook ingestion and processing."""
