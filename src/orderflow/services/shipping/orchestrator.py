"""Fulfillment orchestrator for carrier shipments.

This module implements the FulfillmentOrchestrator, the only writer of
order shipment fields. Shipment generation consolidates every PAID,
unshipped order of the same client that shares carrier, shipping method
and pickup point into a single carrier shipment, then applies the result
to all of them under a group lock taken in ascending id order.

Generation either updates every order of the group or none of them. Any
failure after the precondition check leaves exactly one failed label row
behind and is re-raised so the queue can apply its retry policy.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import (
    CarrierError,
    ConsolidationConflictError,
    OrderNotFoundError,
    PreconditionFailedError,
    ShipmentNotFoundError,
)
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Carrier, Order
from orderflow.database.models.shipping_label import LabelStatus, ShippingLabel
from orderflow.services.audit.ledger import Actor, AuditLedger
from orderflow.services.dispatch import TaskDispatcher
from orderflow.services.orders.enums import OrderStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.shipping.carriers.base import (
    CarrierClient,
    CarrierProfile,
    Recipient,
    ShipmentAddress,
    ShipmentRequest,
    TrackingInfo,
    get_carrier_profile,
)
from orderflow.services.shipping.carriers.registry import (
    CarrierClientFactory,
    build_carrier_factory,
)
from orderflow.services.shipping.packages import calculate_packages
from orderflow.services.shipping.repository import ShippingLabelRepository
from orderflow.services.shipping.storage import LabelStorage

logger = get_logger(__name__)

IDEMPOTENCY_KEY_FIELD = "shipment_idempotency_key"

FULFILLMENT_ACTOR = Actor.system("fulfillment")


class ShipmentOptions(BaseModel):
    """Carrier options requested for an order."""

    carrier: Carrier
    shipping_method: str
    pickup_point_id: Optional[str] = None


class ShipmentOutcome(BaseModel):
    """Result of a successful shipment generation."""

    shipment_id: str
    tracking_number: Optional[str] = None
    parcel_group_id: Optional[str] = None
    label_path: str
    order_ids: list[uuid.UUID]
    package_count: int


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FulfillmentOrchestrator:
    """
    Generates, deletes and tracks carrier shipments for orders.

    Every public operation owns its transaction and commits or rolls back
    before returning.
    """

    def __init__(
        self,
        session: AsyncSession,
        carrier_factory: CarrierClientFactory,
        storage: LabelStorage,
        dispatcher: TaskDispatcher,
        settings: Settings,
    ):
        self.session = session
        self.carrier_factory = carrier_factory
        self.storage = storage
        self.dispatcher = dispatcher
        self.settings = settings
        self.orders = OrderRepository(session)
        self.labels = ShippingLabelRepository(session)
        self.ledger = AuditLedger(session)

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        return order

    # ------------------------------------------------------------------
    # Shipment request
    # ------------------------------------------------------------------

    async def request_shipment(
        self,
        order_id: uuid.UUID,
        options: ShipmentOptions,
        actor: Optional[Actor] = None,
    ) -> Order:
        """
        Assign carrier options to a paid order and enqueue generation.

        Args:
            order_id: Order to ship
            options: Carrier, shipping method and pickup point
            actor: Actor requesting the shipment

        Returns:
            The updated order

        Raises:
            OrderNotFoundError: If the order does not exist
            PreconditionFailedError: If the order is not PAID, already has a
                shipment, or the options are not valid for the carrier
        """
        try:
            order = await self.orders.lock(order_id)

            if order.status != OrderStatus.PAID:
                raise PreconditionFailedError(
                    "Shipments can only be requested for paid orders",
                    order_id=str(order_id),
                    status=order.status.value,
                )
            if order.has_shipment:
                raise PreconditionFailedError(
                    "Order already has a shipment",
                    order_id=str(order_id),
                    external_shipment_id=order.external_shipment_id,
                )

            profile = get_carrier_profile(options.carrier)
            self._check_method(profile, options.shipping_method, options.pickup_point_id, order_id)

            order.carrier = options.carrier
            order.shipping_method = options.shipping_method
            order.pickup_point_id = (
                options.pickup_point_id
                if profile.requires_pickup_point(options.shipping_method)
                else None
            )

            await self.ledger.record(
                entity_type="order",
                entity_id=order.id,
                action="shipment_requested",
                actor=actor,
                metadata=options.model_dump(mode="json"),
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Shipment requested",
            order_id=str(order_id),
            carrier=options.carrier.value,
            shipping_method=options.shipping_method,
        )

        try:
            self.dispatcher.generate_shipment(order_id)
        except Exception as e:
            logger.error(
                "Failed to enqueue shipment generation",
                order_id=str(order_id),
                error=str(e),
            )
            raise

        return order

    # ------------------------------------------------------------------
    # Shipment generation
    # ------------------------------------------------------------------

    def _check_method(
        self,
        profile: CarrierProfile,
        method: Optional[str],
        pickup_point_id: Optional[str],
        order_id: uuid.UUID,
    ) -> None:
        if not profile.supports_method(method):
            raise PreconditionFailedError(
                f"Shipping method {method!r} is not offered by {profile.carrier.value}",
                order_id=str(order_id),
                shipping_method=method,
                carrier=profile.carrier.value,
            )
        if profile.requires_pickup_point(method) and not pickup_point_id:
            raise PreconditionFailedError(
                "Pickup point delivery requires a pickup point id",
                order_id=str(order_id),
                shipping_method=method,
            )

    def _check_preconditions(self, order: Order) -> CarrierProfile:
        """
        Validate that an order can be shipped.

        Returns:
            Profile of the order's carrier

        Raises:
            PreconditionFailedError: If any check fails
        """
        order_ref = str(order.id)

        if order.status != OrderStatus.PAID:
            raise PreconditionFailedError(
                "Only paid orders can be shipped",
                order_id=order_ref,
                status=order.status.value,
            )
        if order.has_shipment:
            raise PreconditionFailedError(
                "Order already has a shipment",
                order_id=order_ref,
                external_shipment_id=order.external_shipment_id,
            )
        if order.carrier is None:
            raise PreconditionFailedError("Order has no carrier assigned", order_id=order_ref)
        if order.shipping_address is None:
            raise PreconditionFailedError("Order has no shipping address", order_id=order_ref)

        profile = get_carrier_profile(order.carrier)
        self._check_method(profile, order.shipping_method, order.pickup_point_id, order.id)

        country = order.shipping_address.country_code
        if not profile.serves_country(country):
            raise PreconditionFailedError(
                f"{profile.carrier.value} does not deliver to {country}",
                order_id=order_ref,
                country_code=country,
                carrier=profile.carrier.value,
            )
        return profile

    async def _ensure_idempotency_key(self, order: Order) -> str:
        """Persist the order's shipment idempotency key before any carrier call."""
        key = order.meta.get(IDEMPOTENCY_KEY_FIELD)
        if key:
            return key

        key = f"{order.number}-{uuid.uuid4().hex[:12]}"
        order.meta[IDEMPOTENCY_KEY_FIELD] = key
        await self.session.commit()
        return key

    def _build_request(
        self,
        order: Order,
        profile: CarrierProfile,
        packages: list,
        parcel_group_id: Optional[str],
        idempotency_key: str,
    ) -> ShipmentRequest:
        address = order.shipping_address
        client = order.client
        return ShipmentRequest(
            carrier=profile.carrier,
            service_code=profile.service_code(order.shipping_method),
            shipping_method=order.shipping_method,
            order_number=order.number,
            recipient=Recipient(
                name=address.name,
                email=address.email or (client.email if client else None),
                phone=address.phone or (client.phone if client else None),
            ),
            address=ShipmentAddress(
                street=address.street1,
                street2=address.street2,
                city=address.city,
                postal_code=address.postal_code,
                country_code=address.country_code.upper(),
            ),
            packages=packages,
            pickup_point_id=order.pickup_point_id,
            parcel_group_id=parcel_group_id,
            idempotency_key=idempotency_key,
        )

    async def generate_shipment(
        self,
        order_id: uuid.UUID,
        actor: Optional[Actor] = None,
    ) -> ShipmentOutcome:
        """
        Create one carrier shipment for an order and its consolidation group.

        Args:
            order_id: Triggering order
            actor: Actor responsible, defaults to the fulfillment system actor

        Returns:
            Outcome describing the shipment and the orders it covers

        Raises:
            OrderNotFoundError: If the order does not exist
            PreconditionFailedError: If the order cannot be shipped (no side effects)
            CarrierError: If the carrier call fails
            ConsolidationConflictError: If the group changed while the shipment was created
        """
        actor = actor or FULFILLMENT_ACTOR
        order = await self._get_order(order_id)
        profile = self._check_preconditions(order)
        carrier = profile.carrier

        idempotency_key = await self._ensure_idempotency_key(order)

        try:
            return await self._generate(order, profile, idempotency_key, actor)
        except Exception as e:
            await self.session.rollback()
            await self._record_failure(order_id, carrier, e, actor)
            raise

    async def _generate(
        self,
        order: Order,
        profile: CarrierProfile,
        idempotency_key: str,
        actor: Actor,
    ) -> ShipmentOutcome:
        candidates = await self.orders.find_consolidation_candidates(order)
        group: list[Order] = sorted([order, *candidates], key=lambda o: o.id)
        group_ids = [member.id for member in group]

        packages = calculate_packages(sum(member.item_count for member in group), self.settings)

        parcel_group_id = None
        if len(group) > 1:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
            parcel_group_id = f"GRP_{order.number}_{stamp}"

        request = self._build_request(order, profile, packages, parcel_group_id, idempotency_key)

        logger.info(
            "Generating shipment",
            order_id=str(order.id),
            carrier=profile.carrier.value,
            group_size=len(group),
            package_count=len(packages),
            parcel_group_id=parcel_group_id,
        )

        async with self.carrier_factory(profile.carrier) as client:
            result = await client.create_shipment(request)
            label_content = await client.download_label(result.shipment_id)

            label_path = LabelStorage.label_path(
                profile.carrier.value, order.number, result.shipment_id
            )
            await self.storage.save(label_path, label_content)

            locked = await self.orders.lock_many(group_ids)
            trigger = next((member for member in locked if member.id == order.id), None)
            conflicts = [
                str(member_id)
                for member_id in group_ids
                if member_id not in {m.id for m in locked}
            ]
            if trigger is None or trigger.status != OrderStatus.PAID or trigger.has_shipment:
                conflicts.append(str(order.id))
            else:
                conflicts.extend(
                    str(member.id)
                    for member in locked
                    if member.id != trigger.id
                    and not self.orders.is_consolidation_match(trigger, member)
                )

            if conflicts:
                await self._compensate(client, result.shipment_id, label_path)
                raise ConsolidationConflictError(
                    "Consolidation group changed while the shipment was created",
                    order_id=str(order.id),
                    conflicting_order_ids=sorted(set(conflicts)),
                    shipment_id=result.shipment_id,
                )

        raw = result.raw or {}
        for member in locked:
            member.external_shipment_id = result.shipment_id
            member.parcel_group_id = parcel_group_id
            member.label_path = label_path

            await self.labels.record(
                order_id=member.id,
                carrier=profile.carrier,
                external_shipment_id=result.shipment_id,
                tracking_number=result.tracking_number,
                file_path=label_path,
                raw_response=raw,
                metadata={"parcel_group_id": parcel_group_id, "packages": len(packages)},
            )
            await self.ledger.record(
                entity_type="order",
                entity_id=member.id,
                action="shipment_created",
                actor=actor,
                metadata={
                    "carrier": profile.carrier.value,
                    "external_shipment_id": result.shipment_id,
                    "tracking_number": result.tracking_number,
                    "parcel_group_id": parcel_group_id,
                    "label_path": label_path,
                    "triggered_by": str(order.id),
                },
            )

        await self.session.commit()

        logger.info(
            "Shipment generated",
            order_id=str(order.id),
            shipment_id=result.shipment_id,
            tracking_number=result.tracking_number,
            parcel_group_id=parcel_group_id,
            order_count=len(locked),
        )

        return ShipmentOutcome(
            shipment_id=result.shipment_id,
            tracking_number=result.tracking_number,
            parcel_group_id=parcel_group_id,
            label_path=label_path,
            order_ids=group_ids,
            package_count=len(packages),
        )

    async def _compensate(self, client: CarrierClient, shipment_id: str, label_path: str) -> None:
        """Undo a carrier shipment that cannot be applied to the group."""
        try:
            await client.delete_shipment(shipment_id)
        except CarrierError as e:
            logger.error(
                "Failed to delete carrier shipment during compensation",
                shipment_id=shipment_id,
                error=str(e),
            )
        await self.storage.delete(label_path)

    async def _record_failure(
        self,
        order_id: uuid.UUID,
        carrier: Carrier,
        error: Exception,
        actor: Actor,
    ) -> None:
        """Write the single failed label row of a failed generation attempt."""
        try:
            await self.labels.record_failure(
                order_id=order_id,
                carrier=carrier,
                raw_response={
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "failed_at": _utcnow_iso(),
                },
            )
            await self.ledger.record(
                entity_type="order",
                entity_id=order_id,
                action="shipment_failed",
                actor=actor,
                metadata={"error": str(error), "error_type": type(error).__name__},
            )
            if isinstance(error, ConsolidationConflictError):
                # The compensated shipment must not be revived by the next attempt
                order = await self.orders.lock(order_id)
                order.meta.pop(IDEMPOTENCY_KEY_FIELD, None)
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            logger.error(
                "Failed to record shipment failure",
                order_id=str(order_id),
                error=str(e),
                original_error=str(error),
            )

        logger.error(
            "Shipment generation failed",
            order_id=str(order_id),
            carrier=carrier.value,
            error=str(error),
            error_type=type(error).__name__,
        )

    # ------------------------------------------------------------------
    # Shipment deletion
    # ------------------------------------------------------------------

    async def delete_shipment(
        self,
        order_id: uuid.UUID,
        actor: Optional[Actor] = None,
    ) -> list[uuid.UUID]:
        """
        Void an order's shipment across its whole parcel group.

        Args:
            order_id: Any order of the group
            actor: Actor requesting the deletion

        Returns:
            Identifiers of the orders whose shipment was cleared

        Raises:
            OrderNotFoundError: If the order does not exist
            ShipmentNotFoundError: If the order carries no shipment
            CarrierError: If the carrier refuses the deletion
        """
        actor = actor or FULFILLMENT_ACTOR
        order = await self._get_order(order_id)
        if not order.has_shipment:
            raise ShipmentNotFoundError(
                f"Order {order.number} has no shipment",
                order_id=str(order_id),
            )

        shipment_id = order.external_shipment_id
        carrier = order.carrier
        if carrier is not None:
            async with self.carrier_factory(carrier) as client:
                await client.delete_shipment(shipment_id)

        artifact_paths: set[str] = set()
        try:
            members = [
                member
                for member in await self.orders.lock_shipment_group(order)
                if member.external_shipment_id == shipment_id
            ]
            if not members:
                raise ShipmentNotFoundError(
                    f"Shipment {shipment_id} was already deleted",
                    order_id=str(order_id),
                    shipment_id=shipment_id,
                )
            member_ids = [member.id for member in members]

            for member in members:
                if member.label_path:
                    artifact_paths.add(member.label_path)
                await self.ledger.record(
                    entity_type="order",
                    entity_id=member.id,
                    action="shipment_deleted",
                    actor=actor,
                    metadata={
                        "external_shipment_id": member.external_shipment_id,
                        "parcel_group_id": member.parcel_group_id,
                        "triggered_by": str(order_id),
                    },
                )
                member.external_shipment_id = None
                member.parcel_group_id = None
                member.label_path = None
                member.meta.pop(IDEMPOTENCY_KEY_FIELD, None)

            voided_at = _utcnow_iso()
            for label in await self.labels.generated_for_orders(member_ids):
                if label.file_path:
                    artifact_paths.add(label.file_path)
                self._void(label, voided_at, "shipment_deleted")

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        for path in sorted(artifact_paths):
            await self.storage.delete(path)

        logger.info(
            "Shipment deleted",
            order_id=str(order_id),
            shipment_id=shipment_id,
            order_count=len(member_ids),
        )
        return member_ids

    @staticmethod
    def _void(label: ShippingLabel, voided_at: str, reason: str) -> None:
        label.status = LabelStatus.VOIDED
        label.meta["voided_at"] = voided_at
        label.meta["void_reason"] = reason

    async def void_active_labels(
        self,
        order_id: uuid.UUID,
        reason: str = "order_cancelled",
        actor: Optional[Actor] = None,
    ) -> int:
        """
        Void the generated labels of a single order.

        Returns:
            Number of labels voided
        """
        try:
            labels = await self.labels.generated_for_orders([order_id])
            voided_at = _utcnow_iso()
            for label in labels:
                self._void(label, voided_at, reason)

            if labels:
                await self.ledger.record(
                    entity_type="order",
                    entity_id=order_id,
                    action="labels_voided",
                    actor=actor or FULFILLMENT_ACTOR,
                    metadata={
                        "reason": reason,
                        "label_ids": [str(label.id) for label in labels],
                    },
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        if labels:
            logger.info("Labels voided", order_id=str(order_id), count=len(labels), reason=reason)
        return len(labels)

    # ------------------------------------------------------------------
    # Tracking and label artifacts
    # ------------------------------------------------------------------

    async def refresh_tracking(
        self,
        order_id: uuid.UUID,
        actor: Optional[Actor] = None,
    ) -> TrackingInfo:
        """
        Fetch the latest tracking state and store it on the active label.

        Raises:
            OrderNotFoundError: If the order does not exist
            ShipmentNotFoundError: If the order has no tracked shipment
            CarrierError: If the carrier call fails
        """
        order = await self._get_order(order_id)
        label = await self.labels.active_for_order(order_id)
        if not order.has_shipment or label is None or not label.tracking_number:
            raise ShipmentNotFoundError(
                f"Order {order.number} has no tracked shipment",
                order_id=str(order_id),
            )

        async with self.carrier_factory(label.carrier) as client:
            info = await client.get_tracking(label.tracking_number)

        try:
            label.meta["tracking_data"] = info.model_dump(mode="json", exclude={"raw"})
            label.meta["last_tracking_update"] = _utcnow_iso()
            await self.ledger.record(
                entity_type="order",
                entity_id=order_id,
                action="tracking_refreshed",
                actor=actor or FULFILLMENT_ACTOR,
                metadata={"tracking_number": info.tracking_number, "status": info.status},
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Tracking refreshed",
            order_id=str(order_id),
            tracking_number=info.tracking_number,
            status=info.status,
        )
        return info

    async def record_label(
        self,
        order: Order,
        carrier: Carrier,
        external_shipment_id: Optional[str],
        tracking_number: Optional[str] = None,
        file_path: Optional[str] = None,
        raw_response: Optional[dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> tuple[ShippingLabel, bool]:
        """
        Record a label reported by a carrier notification.

        Runs inside the caller's transaction and does not commit.

        Returns:
            Tuple of the label and whether it was newly created
        """
        label, created = await self.labels.record(
            order_id=order.id,
            carrier=carrier,
            external_shipment_id=external_shipment_id,
            tracking_number=tracking_number,
            file_path=file_path or order.label_path,
            raw_response=raw_response,
        )
        if created:
            await self.ledger.record(
                entity_type="order",
                entity_id=order.id,
                action="label_created",
                actor=actor,
                metadata={
                    "label_id": str(label.id),
                    "external_shipment_id": external_shipment_id,
                    "tracking_number": tracking_number,
                },
            )
        return label, created

    async def labels_for_order(self, order_id: uuid.UUID) -> Sequence[ShippingLabel]:
        return await self.labels.list_for_order(order_id)


def get_fulfillment_orchestrator(
    session: AsyncSession,
    dispatcher: TaskDispatcher,
    settings: Optional[Settings] = None,
) -> FulfillmentOrchestrator:
    """
    Factory function to create a FulfillmentOrchestrator from settings.

    Args:
        session: Async database session
        dispatcher: Task dispatcher
        settings: Application settings, defaults to the cached settings

    Returns:
        FulfillmentOrchestrator instance
    """
    settings = settings or get_settings()
    return FulfillmentOrchestrator(
        session=session,
        carrier_factory=build_carrier_factory(settings),
        storage=LabelStorage.from_settings(settings),
        dispatcher=dispatcher,
        settings=settings,
    )
