"""Tests for the inbound webhook endpoints."""

import json
import uuid

from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings
from orderflow.database.models import Webhook, WebhookSource, WebhookStatus
from orderflow.services.webhooks.signatures import SIGNATURE_HEADER, compute_signature

PREFIX = "/api/v1/webhooks"


async def webhook_count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Webhook))
    return result.scalar_one()


class TestReceiveWebhook:
    """Test webhook intake over HTTP."""

    async def test_accepts_and_stores(
        self, api_client: AsyncClient, session: AsyncSession, dispatcher
    ) -> None:
        response = await api_client.post(
            f"{PREFIX}/dpd",
            json={"order_id": "ORD-00001", "status": "delivered"},
            params={"event": "parcel_update"},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["source"] == "dpd"
        assert body["status"] == "pending"
        assert body["event"] == "parcel_update"

        stored = await session.get(Webhook, uuid.UUID(body["id"]))
        assert stored.payload == {"order_id": "ORD-00001", "status": "delivered"}
        assert dispatcher.webhooks == [stored.id]

    async def test_invalid_json(self, api_client: AsyncClient, session: AsyncSession) -> None:
        response = await api_client.post(
            f"{PREFIX}/payment",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_JSON"
        assert await webhook_count(session) == 0

    async def test_non_object_body(self, api_client: AsyncClient) -> None:
        response = await api_client.post(f"{PREFIX}/payment", json=[1, 2, 3])

        assert response.status_code == 400

    async def test_unknown_source(self, api_client: AsyncClient) -> None:
        response = await api_client.post(f"{PREFIX}/ups", json={"status": "delivered"})

        assert response.status_code == 422

    async def test_bad_signature_is_rejected_before_storage(
        self, api_client: AsyncClient, session: AsyncSession, settings: Settings
    ) -> None:
        settings.verify_webhook_signatures = True
        settings.payment_webhook_secret = "s3cret"

        response = await api_client.post(
            f"{PREFIX}/payment",
            content=b'{"pmi_id": "PMI-1", "status": "paid"}',
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: "bogus"},
        )

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"
        assert await webhook_count(session) == 0

    async def test_valid_signature_is_accepted(
        self, api_client: AsyncClient, session: AsyncSession, settings: Settings
    ) -> None:
        settings.verify_webhook_signatures = True
        settings.payment_webhook_secret = "s3cret"
        body = json.dumps({"pmi_id": "PMI-1", "status": "paid"}).encode()

        response = await api_client.post(
            f"{PREFIX}/payment",
            content=body,
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: compute_signature("s3cret", body),
            },
        )

        assert response.status_code == 202
        stored = await session.get(Webhook, uuid.UUID(response.json()["id"]))
        assert stored.headers[SIGNATURE_HEADER.lower()] == compute_signature("s3cret", body)


class TestReprocessWebhook:
    """Test manual webhook reprocessing over HTTP."""

    async def test_reprocess(
        self, api_client: AsyncClient, session: AsyncSession, dispatcher
    ) -> None:
        webhook = Webhook(
            source=WebhookSource.DPD,
            payload={"order_id": "ORD-9"},
            headers={},
            status=WebhookStatus.FAILED,
            error_message="No order matches webhook reference ORD-9",
            attempts=3,
        )
        session.add(webhook)
        await session.commit()

        response = await api_client.post(f"{PREFIX}/{webhook.id}/reprocess")

        assert response.status_code == 202
        assert response.json()["status"] == "pending"
        assert dispatcher.webhooks == [webhook.id]

    async def test_reprocess_missing_webhook(self, api_client: AsyncClient) -> None:
        response = await api_client.post(f"{PREFIX}/{uuid.uuid4()}/reprocess")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "WEBHOOK_NOT_FOUND"
