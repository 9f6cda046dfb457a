"""
Order data access repository with row locking support.

This module implements the OrderRepository class providing async lookups,
row-locking reads for lifecycle and fulfillment mutations, and the
consolidation queries used by the fulfillment orchestrator. Locks are
always taken in ascending id order so that two transactions touching
overlapping sets of orders cannot deadlock.
"""

import uuid
from typing import Iterable, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.exceptions import OrderNotFoundError
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.services.orders.enums import OrderStatus

logger = get_logger(__name__)


class OrderRepository:
    """
    Repository for order data access operations.

    Never commits; transaction boundaries belong to the calling service.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        """Fetch an order without locking it."""
        result = await self.session.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def get_by_number(self, number: str) -> Optional[Order]:
        result = await self.session.execute(select(Order).where(Order.number == number))
        return result.scalar_one_or_none()

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.payment_reference == reference)
        )
        return result.scalar_one_or_none()

    async def lock(self, order_id: uuid.UUID) -> Order:
        """
        Load an order holding its row lock until the transaction ends.

        Args:
            order_id: Order identifier

        Returns:
            Freshly loaded order

        Raises:
            OrderNotFoundError: If the order does not exist
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        order = result.scalar_one_or_none()

        if order is None:
            raise OrderNotFoundError(
                f"Order {order_id} not found",
                order_id=str(order_id),
            )
        return order

    async def lock_many(self, order_ids: Iterable[uuid.UUID]) -> Sequence[Order]:
        """
        Lock a set of orders in ascending id order.

        Args:
            order_ids: Identifiers of the orders to lock

        Returns:
            Locked orders sorted by id; missing ids are absent from the result
        """
        ids = sorted(set(order_ids))
        if not ids:
            return []

        stmt = (
            select(Order)
            .where(Order.id.in_(ids))
            .order_by(Order.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def resolve_reference(self, reference: str) -> Optional[Order]:
        """
        Resolve an external reference to an order.

        Tries, in order: internal id, order number, payment correlation id.

        Args:
            reference: Reference taken from an external payload

        Returns:
            The matching order or None
        """
        try:
            order = await self.get_by_id(uuid.UUID(str(reference)))
        except ValueError:
            order = None

        if order is None:
            order = await self.get_by_number(str(reference))
        if order is None:
            order = await self.get_by_payment_reference(str(reference))
        return order

    def _consolidation_filter(self, order: Order):
        pickup_clause = (
            Order.pickup_point_id.is_(None)
            if order.pickup_point_id is None
            else Order.pickup_point_id == order.pickup_point_id
        )
        return (
            Order.client_id == order.client_id,
            Order.status == OrderStatus.PAID,
            Order.external_shipment_id.is_(None),
            Order.carrier == order.carrier,
            Order.shipping_method == order.shipping_method,
            pickup_clause,
        )

    async def find_consolidation_candidates(self, order: Order) -> Sequence[Order]:
        """
        Find other orders that can share a shipment with the given order.

        Candidates belong to the same client, are PAID, carry no shipment
        yet and share carrier, shipping method and pickup point.

        Args:
            order: Triggering order

        Returns:
            Candidate orders sorted by id, excluding the triggering order
        """
        stmt = (
            select(Order)
            .where(*self._consolidation_filter(order), Order.id != order.id)
            .order_by(Order.id)
        )
        result = await self.session.execute(stmt)
        candidates = result.scalars().all()

        logger.debug(
            "Consolidation candidates found",
            order_id=str(order.id),
            candidate_count=len(candidates),
        )
        return candidates

    def is_consolidation_match(self, trigger: Order, other: Order) -> bool:
        """Check in memory whether a locked order still matches the trigger's group."""
        return (
            other.client_id == trigger.client_id
            and other.status == OrderStatus.PAID
            and other.external_shipment_id is None
            and other.carrier == trigger.carrier
            and other.shipping_method == trigger.shipping_method
            and other.pickup_point_id == trigger.pickup_point_id
        )

    async def lock_shipment_group(self, order: Order) -> Sequence[Order]:
        """
        Lock every order sharing the given order's shipment.

        Members are the orders with the same parcel_group_id or, for a
        singleton shipment, the same external_shipment_id.

        Args:
            order: Any member of the group

        Returns:
            Locked group members sorted by id
        """
        clauses = []
        if order.parcel_group_id:
            clauses.append(Order.parcel_group_id == order.parcel_group_id)
        if order.external_shipment_id:
            clauses.append(Order.external_shipment_id == order.external_shipment_id)
        if not clauses:
            return await self.lock_many([order.id])

        result = await self.session.execute(
            select(Order.id).where(or_(*clauses))
        )
        member_ids = set(result.scalars().all())
        member_ids.add(order.id)
        return await self.lock_many(member_ids)
