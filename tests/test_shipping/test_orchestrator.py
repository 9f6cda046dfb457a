"""
Test suite for the fulfillment orchestrator.

Covers shipment generation and consolidation, preconditions, failure
recording and retries, consolidation conflicts, group deletion, label
voiding and tracking refresh.
"""

import uuid

import httpx
import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings
from orderflow.core.exceptions import (
    ConsolidationConflictError,
    PermanentCarrierError,
    PreconditionFailedError,
    ShipmentNotFoundError,
    TransientCarrierError,
)
from orderflow.database.models import Carrier, Client, LabelStatus, Order, ShippingLabel
from orderflow.services.audit.ledger import AuditLedger
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.shipping.carriers.fake import FAKE_LABEL, FakeCarrierClient
from orderflow.services.shipping.carriers.http_client import HttpCarrierClient
from orderflow.services.shipping.orchestrator import (
    IDEMPOTENCY_KEY_FIELD,
    FulfillmentOrchestrator,
    ShipmentOptions,
)
from orderflow.services.shipping.storage import LabelStorage


async def labels_of(session: AsyncSession, order_id: uuid.UUID) -> list[ShippingLabel]:
    result = await session.execute(
        select(ShippingLabel)
        .where(ShippingLabel.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ============================================================================
# Generation
# ============================================================================


class TestGenerateShipment:
    """Test shipment generation for single and consolidated orders."""

    async def test_single_order(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        storage: LabelStorage,
        make_order,
    ) -> None:
        order = await make_order(quantities=(2, 1))

        outcome = await orchestrator.generate_shipment(order.id)

        assert outcome.order_ids == [order.id]
        assert outcome.parcel_group_id is None
        assert outcome.package_count == 1

        stored = await session.get(Order, order.id, populate_existing=True)
        assert stored.external_shipment_id == outcome.shipment_id
        assert stored.label_path == outcome.label_path
        assert stored.parcel_group_id is None
        assert stored.status == OrderStatus.PAID
        assert outcome.label_path == f"labels/dpd_label_{order.number}_{outcome.shipment_id}.pdf"
        assert await storage.read(outcome.label_path) == FAKE_LABEL

        labels = await labels_of(session, order.id)
        assert len(labels) == 1
        assert labels[0].status == LabelStatus.GENERATED
        assert labels[0].tracking_number == outcome.tracking_number

        request = fake_dpd.calls_to("create_shipment")[0]
        assert request.service_code == "327"
        assert request.packages[0].weight == 3 * 20
        assert request.idempotency_key == stored.meta[IDEMPOTENCY_KEY_FIELD]
        assert request.idempotency_key.startswith(order.number)

        entries = await AuditLedger(session).entries_for("order", order.id, "shipment_created")
        assert len(entries) == 1

    async def test_consolidates_matching_orders(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        trigger = await make_order(quantities=(20,))
        second = await make_order(quantities=(5,))
        third = await make_order(quantities=(3,))

        outcome = await orchestrator.generate_shipment(trigger.id)

        assert len(fake_dpd.calls_to("create_shipment")) == 1
        assert sorted(outcome.order_ids) == sorted([trigger.id, second.id, third.id])
        assert outcome.parcel_group_id.startswith(f"GRP_{trigger.number}_")
        assert outcome.package_count == 2

        for order_id in outcome.order_ids:
            stored = await session.get(Order, order_id, populate_existing=True)
            assert stored.external_shipment_id == outcome.shipment_id
            assert stored.parcel_group_id == outcome.parcel_group_id
            labels = await labels_of(session, order_id)
            assert [label.status for label in labels] == [LabelStatus.GENERATED]

    async def test_does_not_consolidate_different_options(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        make_order,
    ) -> None:
        trigger = await make_order(shipping_method="PickupPoint", pickup_point_id="PP-1")
        other_point = await make_order(shipping_method="PickupPoint", pickup_point_id="PP-2")
        other_carrier = await make_order(
            carrier=Carrier.BALIKOVNA, shipping_method="PickupPoint", pickup_point_id="PP-1"
        )
        not_paid = await make_order(
            status=OrderStatus.CONFIRMED, shipping_method="PickupPoint", pickup_point_id="PP-1"
        )
        stranger = Client(name="Petr Svoboda", email="petr@example.com")
        session.add(stranger)
        await session.commit()
        other_client = await make_order(
            shipping_method="PickupPoint", pickup_point_id="PP-1", customer=stranger
        )

        outcome = await orchestrator.generate_shipment(trigger.id)

        assert outcome.order_ids == [trigger.id]
        assert outcome.parcel_group_id is None
        for order in (other_point, other_carrier, not_paid, other_client):
            stored = await session.get(Order, order.id, populate_existing=True)
            assert stored.external_shipment_id is None

    async def test_already_shipped_orders_are_not_regrouped(
        self,
        orchestrator: FulfillmentOrchestrator,
        make_order,
    ) -> None:
        first = await make_order()
        await orchestrator.generate_shipment(first.id)
        second = await make_order()

        outcome = await orchestrator.generate_shipment(second.id)

        assert outcome.order_ids == [second.id]


# ============================================================================
# Preconditions
# ============================================================================


class TestGenerationPreconditions:
    """Test that unshippable orders are rejected without side effects."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"status": OrderStatus.CONFIRMED},
            {"carrier": None},
            {"with_address": False},
            {"shipping_method": "Express"},
            {"shipping_method": "PickupPoint", "pickup_point_id": None},
            {"carrier": Carrier.BALIKOVNA, "country_code": "SK"},
        ],
    )
    async def test_precondition_failures(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_carriers,
        make_order,
        overrides: dict,
    ) -> None:
        order = await make_order(**overrides)

        with pytest.raises(PreconditionFailedError):
            await orchestrator.generate_shipment(order.id)

        assert all(not fake.calls for fake in fake_carriers.values())
        assert await labels_of(session, order.id) == []

    async def test_already_shipped(
        self,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        await orchestrator.generate_shipment(order.id)

        with pytest.raises(PreconditionFailedError, match="already has a shipment"):
            await orchestrator.generate_shipment(order.id)

        assert len(fake_dpd.calls_to("create_shipment")) == 1


# ============================================================================
# Failures and retries
# ============================================================================


class TestGenerationFailures:
    """Test failure recording and retry behavior."""

    async def test_transient_failure_records_one_failed_label(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        order_id = order.id
        fake_dpd.configure("create_shipment", TransientCarrierError("carrier down"))

        with pytest.raises(TransientCarrierError):
            await orchestrator.generate_shipment(order_id)

        stored = await session.get(Order, order_id, populate_existing=True)
        assert stored.external_shipment_id is None
        assert stored.label_path is None

        labels = await labels_of(session, order_id)
        assert len(labels) == 1
        assert labels[0].status == LabelStatus.FAILED
        assert labels[0].raw_response["error"] == "carrier down"
        assert labels[0].raw_response["error_type"] == "TransientCarrierError"
        assert "failed_at" in labels[0].raw_response

        entries = await AuditLedger(session).entries_for("order", order_id, "shipment_failed")
        assert len(entries) == 1

    async def test_retry_reuses_idempotency_key(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        order_id = order.id
        fake_dpd.configure("download_label", TransientCarrierError("label not ready"))

        with pytest.raises(TransientCarrierError):
            await orchestrator.generate_shipment(order_id)

        fake_dpd.configure("download_label", None)
        outcome = await orchestrator.generate_shipment(order_id)

        first_request, second_request = fake_dpd.calls_to("create_shipment")
        assert first_request.idempotency_key == second_request.idempotency_key

        labels = await labels_of(session, order_id)
        assert sorted(label.status.value for label in labels) == ["failed", "generated"]
        stored = await session.get(Order, order_id, populate_existing=True)
        assert stored.external_shipment_id == outcome.shipment_id

    async def test_permanent_failure_is_recorded(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        order_id = order.id
        fake_dpd.configure("create_shipment", PermanentCarrierError("invalid address"))

        with pytest.raises(PermanentCarrierError) as exc_info:
            await orchestrator.generate_shipment(order_id)

        assert not exc_info.value.retryable
        labels = await labels_of(session, order_id)
        assert [label.status for label in labels] == [LabelStatus.FAILED]

    async def test_conflicting_group_is_compensated(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        storage: LabelStorage,
        make_order,
    ) -> None:
        trigger = await make_order()
        other = await make_order()
        trigger_id, other_id = trigger.id, other.id

        create_shipment = fake_dpd.create_shipment

        async def create_and_claim(request):
            result = await create_shipment(request)
            # Another worker ships the candidate meanwhile
            await session.execute(
                update(Order)
                .where(Order.id == other_id)
                .values(external_shipment_id="SHP-CONCURRENT")
            )
            return result

        fake_dpd.create_shipment = create_and_claim

        with pytest.raises(ConsolidationConflictError) as exc_info:
            await orchestrator.generate_shipment(trigger_id)

        assert exc_info.value.retryable
        shipment_id = exc_info.value.context["shipment_id"]
        assert fake_dpd.deleted == [shipment_id]

        stored = await session.get(Order, trigger_id, populate_existing=True)
        assert stored.external_shipment_id is None
        assert IDEMPOTENCY_KEY_FIELD not in stored.meta
        assert not storage.exists(
            LabelStorage.label_path("dpd", stored.number, shipment_id)
        )

        labels = await labels_of(session, trigger_id)
        assert [label.status for label in labels] == [LabelStatus.FAILED]
        assert labels[0].raw_response["error_type"] == "ConsolidationConflictError"
        assert await labels_of(session, other_id) == []


# ============================================================================
# Requests, deletion, voiding and tracking
# ============================================================================


class TestRequestShipment:
    """Test assigning carrier options to paid orders."""

    async def test_request_sets_options_and_enqueues(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        dispatcher,
        make_order,
    ) -> None:
        order = await make_order(carrier=None, shipping_method=None)

        await orchestrator.request_shipment(
            order.id,
            ShipmentOptions(
                carrier=Carrier.BALIKOVNA,
                shipping_method="PickupPoint",
                pickup_point_id="NB-42",
            ),
        )

        stored = await session.get(Order, order.id, populate_existing=True)
        assert stored.carrier == Carrier.BALIKOVNA
        assert stored.shipping_method == "PickupPoint"
        assert stored.pickup_point_id == "NB-42"
        assert dispatcher.generated == [(order.id, None)]

        entries = await AuditLedger(session).entries_for("order", order.id, "shipment_requested")
        assert len(entries) == 1

    async def test_home_delivery_drops_pickup_point(
        self, session: AsyncSession, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order(carrier=None, shipping_method=None)

        await orchestrator.request_shipment(
            order.id,
            ShipmentOptions(carrier=Carrier.DPD, shipping_method="Home", pickup_point_id="PP-1"),
        )

        stored = await session.get(Order, order.id, populate_existing=True)
        assert stored.pickup_point_id is None

    async def test_request_requires_paid_order(
        self, orchestrator: FulfillmentOrchestrator, dispatcher, make_order
    ) -> None:
        order = await make_order(status=OrderStatus.CONFIRMED)

        with pytest.raises(PreconditionFailedError):
            await orchestrator.request_shipment(
                order.id, ShipmentOptions(carrier=Carrier.DPD, shipping_method="Home")
            )

        assert dispatcher.generated == []

    async def test_request_rejects_unknown_method(
        self, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order()

        with pytest.raises(PreconditionFailedError):
            await orchestrator.request_shipment(
                order.id, ShipmentOptions(carrier=Carrier.DPD, shipping_method="Drone")
            )


class TestDeleteShipment:
    """Test shipment deletion across parcel groups."""

    async def test_delete_clears_whole_group(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        storage: LabelStorage,
        make_order,
    ) -> None:
        first = await make_order()
        second = await make_order()
        outcome = await orchestrator.generate_shipment(first.id)

        cleared = await orchestrator.delete_shipment(second.id)

        assert sorted(cleared) == sorted([first.id, second.id])
        assert fake_dpd.deleted == [outcome.shipment_id]
        assert not storage.exists(outcome.label_path)

        for order_id in (first.id, second.id):
            stored = await session.get(Order, order_id, populate_existing=True)
            assert stored.external_shipment_id is None
            assert stored.parcel_group_id is None
            assert stored.label_path is None
            assert IDEMPOTENCY_KEY_FIELD not in stored.meta

            labels = await labels_of(session, order_id)
            assert [label.status for label in labels] == [LabelStatus.VOIDED]

            entries = await AuditLedger(session).entries_for("order", order_id, "shipment_deleted")
            assert len(entries) == 1

    async def test_regeneration_after_delete_uses_new_key(
        self,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        first = await orchestrator.generate_shipment(order.id)
        await orchestrator.delete_shipment(order.id)

        second = await orchestrator.generate_shipment(order.id)

        assert second.shipment_id != first.shipment_id

    async def test_delete_without_shipment(
        self, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order()

        with pytest.raises(ShipmentNotFoundError):
            await orchestrator.delete_shipment(order.id)

    async def test_carrier_refusal_keeps_shipment(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        outcome = await orchestrator.generate_shipment(order.id)
        fake_dpd.configure("delete_shipment", PermanentCarrierError("already picked up"))

        with pytest.raises(PermanentCarrierError):
            await orchestrator.delete_shipment(order.id)

        stored = await session.get(Order, order.id, populate_existing=True)
        assert stored.external_shipment_id == outcome.shipment_id


class TestLabelsAndTracking:
    """Test label voiding, recording and tracking refresh."""

    async def test_void_active_labels(
        self, session: AsyncSession, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order()
        await orchestrator.generate_shipment(order.id)

        voided = await orchestrator.void_active_labels(order.id)

        assert voided == 1
        assert await orchestrator.void_active_labels(order.id) == 0
        entries = await AuditLedger(session).entries_for("order", order.id, "labels_voided")
        assert len(entries) == 1

    async def test_record_label_deduplicates(
        self, session: AsyncSession, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order()

        first, created = await orchestrator.record_label(order, Carrier.DPD, "SHP-EXT", "TN-1")
        second, created_again = await orchestrator.record_label(
            order, Carrier.DPD, "SHP-EXT", "TN-1"
        )
        await session.commit()

        assert created is True
        assert created_again is False
        assert first.id == second.id

    async def test_record_label_falls_back_to_tracking_number(
        self, session: AsyncSession, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order()

        await orchestrator.record_label(order, Carrier.DPD, None, "TN-9")
        _, created = await orchestrator.record_label(order, Carrier.DPD, None, "TN-9")
        await session.commit()

        assert created is False
        assert len(await labels_of(session, order.id)) == 1

    async def test_refresh_tracking(
        self,
        session: AsyncSession,
        orchestrator: FulfillmentOrchestrator,
        fake_dpd: FakeCarrierClient,
        make_order,
    ) -> None:
        order = await make_order()
        outcome = await orchestrator.generate_shipment(order.id)
        fake_dpd.tracking_status = "out_for_delivery"

        info = await orchestrator.refresh_tracking(order.id)

        assert info.tracking_number == outcome.tracking_number
        assert info.status == "out_for_delivery"
        labels = await labels_of(session, order.id)
        assert labels[0].meta["tracking_data"]["status"] == "out_for_delivery"
        assert "last_tracking_update" in labels[0].meta

    async def test_refresh_tracking_without_shipment(
        self, orchestrator: FulfillmentOrchestrator, make_order
    ) -> None:
        order = await make_order()

        with pytest.raises(ShipmentNotFoundError):
            await orchestrator.refresh_tracking(order.id)


# ============================================================================
# Carrier Client Lifecycle
# ============================================================================


def carrier_api(request: httpx.Request) -> httpx.Response:
    """Minimal carrier API answering every operation the orchestrator uses."""
    path = request.url.path
    if request.method == "POST" and path.endswith("/shipment"):
        return httpx.Response(
            200, json={"shipment_id": "SHP-HTTP-1", "tracking_number": "TN-HTTP-1"}
        )
    if request.method == "GET" and path.endswith("/label"):
        return httpx.Response(200, content=FAKE_LABEL)
    if request.method == "GET" and path.endswith("/tracking"):
        return httpx.Response(200, json={"status": "in_transit", "events": []})
    if request.method == "DELETE":
        return httpx.Response(204)
    return httpx.Response(404)


class TestCarrierClientLifecycle:
    """Test that carrier clients built per operation are closed afterwards."""

    @pytest.fixture
    def built(self) -> list[HttpCarrierClient]:
        return []

    def http_orchestrator(
        self,
        session: AsyncSession,
        storage: LabelStorage,
        dispatcher,
        settings: Settings,
        built: list[HttpCarrierClient],
        handler=carrier_api,
    ) -> FulfillmentOrchestrator:
        def factory(carrier: Carrier) -> HttpCarrierClient:
            client = HttpCarrierClient(
                carrier,
                "https://carrier.test/v1",
                transport=httpx.MockTransport(handler),
            )
            built.append(client)
            return client

        return FulfillmentOrchestrator(
            session=session,
            carrier_factory=factory,
            storage=storage,
            dispatcher=dispatcher,
            settings=settings,
        )

    async def test_generation_closes_client(
        self, session, storage, dispatcher, settings, built, make_order
    ) -> None:
        orchestrator = self.http_orchestrator(session, storage, dispatcher, settings, built)
        order = await make_order()

        outcome = await orchestrator.generate_shipment(order.id)

        assert outcome.shipment_id == "SHP-HTTP-1"
        assert len(built) == 1
        assert built[0].is_closed

    async def test_failed_generation_closes_client(
        self, session, storage, dispatcher, settings, built, make_order
    ) -> None:
        orchestrator = self.http_orchestrator(
            session,
            storage,
            dispatcher,
            settings,
            built,
            handler=lambda request: httpx.Response(503, text="down"),
        )
        order = await make_order()
        order_id = order.id

        with pytest.raises(TransientCarrierError):
            await orchestrator.generate_shipment(order_id)

        assert len(built) == 1
        assert built[0].is_closed

    async def test_tracking_and_deletion_close_clients(
        self, session, storage, dispatcher, settings, built, make_order
    ) -> None:
        orchestrator = self.http_orchestrator(session, storage, dispatcher, settings, built)
        order = await make_order()
        await orchestrator.generate_shipment(order.id)

        await orchestrator.refresh_tracking(order.id)
        await orchestrator.delete_shipment(order.id)

        assert len(built) == 3
        assert all(client.is_closed for client in built)
