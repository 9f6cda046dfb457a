"""
Pytest configuration and shared test fixtures.

Tests run against an in-memory SQLite database through aiosqlite, a fake
carrier and a dispatcher that records enqueued work instead of sending it
to the broker.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_CARRIER_CLIENT_MODE", "fake")
os.environ.setdefault("APP_CELERY_BROKER_URL", "memory://")

import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from orderflow.api.deps import get_dispatcher, get_orchestrator
from orderflow.core.config import Settings, get_settings
from orderflow.database.base import Base
from orderflow.database.connection import build_session_factory, get_db
from orderflow.database.models import Address, AddressType, Carrier, Client, Order, OrderItem
from orderflow.main import app
from orderflow.services.dispatch import TaskDispatcher
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.orders.state_machine import OrderLifecycleEngine
from orderflow.services.shipping.carriers.base import CarrierClient
from orderflow.services.shipping.carriers.fake import FakeCarrierClient
from orderflow.services.shipping.orchestrator import FulfillmentOrchestrator
from orderflow.services.shipping.storage import LabelStorage
from orderflow.services.webhooks.service import WebhookService


class RecordingDispatcher(TaskDispatcher):
    """Task dispatcher that records enqueued work."""

    def __init__(self) -> None:
        self.status_changes: list[dict[str, Any]] = []
        self.generated: list[tuple[uuid.UUID, Optional[int]]] = []
        self.deleted: list[uuid.UUID] = []
        self.webhooks: list[uuid.UUID] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("broker unavailable")

    def order_status_changed(
        self,
        order_id: uuid.UUID,
        previous_status: str,
        new_status: str,
        reason: Optional[str] = None,
        audit_entry_id: Optional[uuid.UUID] = None,
    ) -> None:
        self._check()
        self.status_changes.append(
            {
                "order_id": order_id,
                "previous_status": previous_status,
                "new_status": new_status,
                "reason": reason,
                "audit_entry_id": audit_entry_id,
            }
        )

    def generate_shipment(self, order_id: uuid.UUID, countdown: Optional[int] = None) -> None:
        self._check()
        self.generated.append((order_id, countdown))

    def delete_shipment(self, order_id: uuid.UUID) -> None:
        self._check()
        self.deleted.append(order_id)

    def process_webhook(self, webhook_id: uuid.UUID) -> None:
        self._check()
        self.webhooks.append(webhook_id)


# ============================================================================
# Settings and infrastructure
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Test settings with fake carriers and a temporary label store."""
    return Settings(
        environment="test",
        database_url="sqlite+aiosqlite://",
        carrier_client_mode="fake",
        label_storage_path=str(tmp_path / "storage"),
        verify_webhook_signatures=False,
    )


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory database with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Session configured like the application's sessions."""
    factory = build_session_factory(db_engine)
    async with factory() as session:
        yield session


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def fake_carriers() -> dict[Carrier, FakeCarrierClient]:
    return {carrier: FakeCarrierClient(carrier) for carrier in Carrier}


@pytest.fixture
def fake_dpd(fake_carriers: dict[Carrier, FakeCarrierClient]) -> FakeCarrierClient:
    return fake_carriers[Carrier.DPD]


@pytest.fixture
def storage(settings: Settings) -> LabelStorage:
    return LabelStorage.from_settings(settings)


@pytest.fixture
def orchestrator(
    session: AsyncSession,
    fake_carriers: dict[Carrier, FakeCarrierClient],
    storage: LabelStorage,
    dispatcher: RecordingDispatcher,
    settings: Settings,
) -> FulfillmentOrchestrator:
    def factory(carrier: Carrier) -> CarrierClient:
        return fake_carriers[carrier]

    return FulfillmentOrchestrator(
        session=session,
        carrier_factory=factory,
        storage=storage,
        dispatcher=dispatcher,
        settings=settings,
    )


@pytest.fixture
def lifecycle(session: AsyncSession, dispatcher: RecordingDispatcher) -> OrderLifecycleEngine:
    return OrderLifecycleEngine(session, dispatcher)


@pytest.fixture
def webhook_service(
    session: AsyncSession,
    dispatcher: RecordingDispatcher,
    lifecycle: OrderLifecycleEngine,
    orchestrator: FulfillmentOrchestrator,
) -> WebhookService:
    return WebhookService(session, dispatcher, lifecycle, orchestrator)


# ============================================================================
# Data factories
# ============================================================================


@pytest.fixture
async def client(session: AsyncSession) -> Client:
    """Default customer for created orders."""
    customer = Client(name="Jana Novakova", email="jana@example.com", phone="+420600000000")
    session.add(customer)
    await session.commit()
    return customer


OrderFactory = Callable[..., Awaitable[Order]]


@pytest.fixture
def make_order(session: AsyncSession, client: Client) -> OrderFactory:
    """
    Factory creating committed orders.

    Keyword arguments override the defaults: a PAID order of three items
    shipped with DPD Home to a Czech address.
    """
    counter = {"value": 0}

    async def factory(
        status: OrderStatus = OrderStatus.PAID,
        quantities: tuple[int, ...] = (3,),
        carrier: Optional[Carrier] = Carrier.DPD,
        shipping_method: Optional[str] = "Home",
        pickup_point_id: Optional[str] = None,
        country_code: str = "CZ",
        with_address: bool = True,
        payment_reference: Optional[str] = "auto",
        customer: Optional[Client] = None,
        **fields: Any,
    ) -> Order:
        counter["value"] += 1
        number = fields.pop("number", f"ORD-{counter['value']:05d}")

        address = None
        if with_address:
            address = Address(
                type=AddressType.SHIPPING,
                name="Jana Novakova",
                street1="Vodickova 12",
                city="Praha",
                postal_code="11000",
                country_code=country_code,
                phone="+420600000000",
            )
            session.add(address)

        if payment_reference == "auto":
            payment_reference = f"PMI-{number}"

        order = Order(
            number=number,
            status=status,
            client=customer or client,
            currency="CZK",
            total_amount=Decimal("499.00"),
            carrier=carrier,
            shipping_method=shipping_method,
            pickup_point_id=pickup_point_id,
            payment_reference=payment_reference,
            shipping_address=address,
            meta={},
            items=[
                OrderItem(
                    sku=f"SKU-{index}",
                    name=f"Item {index}",
                    quantity=quantity,
                    unit_price=Decimal("10.00"),
                )
                for index, quantity in enumerate(quantities)
            ],
            **fields,
        )
        session.add(order)
        await session.commit()
        return order

    return factory


# ============================================================================
# API client
# ============================================================================


@pytest.fixture
async def api_client(
    session: AsyncSession,
    dispatcher: RecordingDispatcher,
    settings: Settings,
    orchestrator: FulfillmentOrchestrator,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the application bound to the test session and fakes."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()
