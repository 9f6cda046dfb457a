"""Tests for the health, readiness and liveness endpoints."""

import pytest
from httpx import AsyncClient

import orderflow.main


class TestHealthEndpoints:
    """Test the operational endpoints."""

    async def test_health(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["environment"] == "test"

    async def test_request_id_is_echoed(self, api_client: AsyncClient) -> None:
        response = await api_client.get("/live", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert response.headers["X-Request-ID"] == "req-123"

    async def test_ready(self, api_client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
        async def healthy(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
            return True

        monkeypatch.setattr(orderflow.main, "check_database_health", healthy)

        response = await api_client.get("/ready")

        assert response.status_code == 200
        assert response.json()["dependencies_ready"] is True

    async def test_not_ready(self, api_client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
        async def unhealthy(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
            return False

        monkeypatch.setattr(orderflow.main, "check_database_health", unhealthy)

        response = await api_client.get("/ready")

        assert response.status_code == 503
        assert response.json()["database"] == "unhealthy"
