"""
Shipping label data access repository.

Label rows are inserted through ``record``, which deduplicates on
(order_id, external_shipment_id) so that replayed notifications and retried
generations do not create duplicate labels.
"""

import uuid
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Carrier
from orderflow.database.models.shipping_label import LabelStatus, ShippingLabel

logger = get_logger(__name__)


class ShippingLabelRepository:
    """Repository for shipping label rows. Never commits."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_existing(
        self,
        order_id: uuid.UUID,
        external_shipment_id: Optional[str],
        tracking_number: Optional[str] = None,
    ) -> Optional[ShippingLabel]:
        """
        Find a non-failed label of an order for the same shipment.

        Matches on external shipment id, falling back to the tracking number
        when no shipment id is known.
        """
        stmt = select(ShippingLabel).where(
            ShippingLabel.order_id == order_id,
            ShippingLabel.status != LabelStatus.FAILED,
        )
        if external_shipment_id:
            stmt = stmt.where(ShippingLabel.external_shipment_id == external_shipment_id)
        elif tracking_number:
            stmt = stmt.where(ShippingLabel.tracking_number == tracking_number)
        else:
            return None

        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def record(
        self,
        order_id: uuid.UUID,
        carrier: Carrier,
        external_shipment_id: Optional[str],
        tracking_number: Optional[str] = None,
        file_path: Optional[str] = None,
        raw_response: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> tuple[ShippingLabel, bool]:
        """
        Insert a generated label unless an equivalent one exists.

        Returns:
            Tuple of the label and whether it was newly created
        """
        existing = await self.find_existing(order_id, external_shipment_id, tracking_number)
        if existing is not None:
            logger.info(
                "Shipping label already recorded",
                order_id=str(order_id),
                label_id=str(existing.id),
                external_shipment_id=external_shipment_id,
            )
            return existing, False

        label = ShippingLabel(
            order_id=order_id,
            carrier=carrier,
            external_shipment_id=external_shipment_id,
            tracking_number=tracking_number,
            file_path=file_path,
            status=LabelStatus.GENERATED,
            raw_response=raw_response,
            meta=dict(metadata or {}),
        )
        self.session.add(label)
        await self.session.flush()
        return label, True

    async def record_failure(
        self,
        order_id: uuid.UUID,
        carrier: Carrier,
        raw_response: dict[str, Any],
    ) -> ShippingLabel:
        """Insert a failed label recording a generation error."""
        label = ShippingLabel(
            order_id=order_id,
            carrier=carrier,
            status=LabelStatus.FAILED,
            raw_response=raw_response,
            meta={},
        )
        self.session.add(label)
        await self.session.flush()
        return label

    async def list_for_order(self, order_id: uuid.UUID) -> Sequence[ShippingLabel]:
        result = await self.session.execute(
            select(ShippingLabel)
            .where(ShippingLabel.order_id == order_id)
            .order_by(ShippingLabel.created_at)
        )
        return result.scalars().all()

    async def active_for_order(self, order_id: uuid.UUID) -> Optional[ShippingLabel]:
        """Get the most recent generated label of an order."""
        result = await self.session.execute(
            select(ShippingLabel)
            .where(
                ShippingLabel.order_id == order_id,
                ShippingLabel.status == LabelStatus.GENERATED,
            )
            .order_by(ShippingLabel.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def generated_for_orders(
        self, order_ids: Iterable[uuid.UUID]
    ) -> Sequence[ShippingLabel]:
        ids = list(order_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(ShippingLabel).where(
                ShippingLabel.order_id.in_(ids),
                ShippingLabel.status == LabelStatus.GENERATED,
            )
        )
        return result.scalars().all()
