"""
Order fulfillment API endpoints.

This module implements the command surface of the fulfillment core: status
transitions, shipment requests and deletion, and tracking refresh. Shipment
generation and deletion run in the background; their endpoints answer 202
once the work is enqueued.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from orderflow.api.deps import Dispatcher, LifecycleEngine, Orchestrator
from orderflow.api.errors import to_http_exception
from orderflow.core.exceptions import OrderflowError, OrderNotFoundError, ShipmentNotFoundError
from orderflow.core.logging import get_logger
from orderflow.schemas.orders import (
    AvailableTransitionsResponse,
    OrderSummaryResponse,
    OrderTransitionRequest,
)
from orderflow.schemas.shipping import (
    ShipmentAcceptedResponse,
    ShipmentRequest,
    TrackingResponse,
)
from orderflow.services.audit.ledger import Actor
from orderflow.services.shipping.orchestrator import ShipmentOptions

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

API_ACTOR = Actor.api("api_v1")


@router.post(
    "/{order_id}/transitions",
    response_model=OrderSummaryResponse,
    status_code=status.HTTP_200_OK,
    summary="Transition order status",
    description="Move an order to a new status through the lifecycle engine",
)
async def transition_order(
    order_id: UUID,
    request: OrderTransitionRequest,
    engine: LifecycleEngine,
) -> OrderSummaryResponse:
    """
    Transition an order to a new status.

    Args:
        order_id: Order to transition
        request: Target status, reason and metadata
        engine: Order lifecycle engine

    Returns:
        OrderSummaryResponse: Order in its resulting status

    Raises:
        HTTPException: 404 if the order does not exist, 422 if the transition
            is invalid or a guard is not met
    """
    logger.info(
        "Order transition requested",
        order_id=str(order_id),
        target_status=request.target_status.value,
    )

    try:
        order = await engine.transition(
            order_id,
            request.target_status,
            reason=request.reason,
            metadata=request.metadata,
            actor=API_ACTOR,
        )
    except OrderflowError as e:
        logger.warning(
            "Order transition rejected",
            order_id=str(order_id),
            target_status=request.target_status.value,
            error_code=e.code,
            error=e.message,
        )
        raise to_http_exception(e)

    return OrderSummaryResponse.model_validate(order)


@router.get(
    "/{order_id}/transitions",
    response_model=AvailableTransitionsResponse,
    summary="List available transitions",
)
async def get_available_transitions(
    order_id: UUID,
    engine: LifecycleEngine,
) -> AvailableTransitionsResponse:
    """
    Get the statuses an order can currently move to.

    Raises:
        HTTPException: 404 if the order does not exist
    """
    order = await engine.orders.get_by_id(order_id)
    if order is None:
        raise to_http_exception(
            OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        )

    available = await engine.available_transitions(order_id)
    return AvailableTransitionsResponse(
        order_id=order.id,
        current_status=order.status,
        available=sorted(available, key=lambda s: s.value),
    )


@router.post(
    "/{order_id}/shipment",
    response_model=ShipmentAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request shipment",
    description="Assign carrier options to a paid order and enqueue shipment generation",
)
async def request_shipment(
    order_id: UUID,
    request: ShipmentRequest,
    orchestrator: Orchestrator,
) -> ShipmentAcceptedResponse:
    """
    Request a carrier shipment for a paid order.

    Args:
        order_id: Order to ship
        request: Carrier, shipping method and pickup point
        orchestrator: Fulfillment orchestrator

    Returns:
        ShipmentAcceptedResponse: Acknowledgement of the enqueued generation

    Raises:
        HTTPException: 404 if the order does not exist, 422 if the order
            cannot be shipped with the given options
    """
    options = ShipmentOptions(
        carrier=request.carrier,
        shipping_method=request.shipping_method,
        pickup_point_id=request.pickup_point_id,
    )

    try:
        await orchestrator.request_shipment(order_id, options, actor=API_ACTOR)
    except OrderflowError as e:
        logger.warning(
            "Shipment request rejected",
            order_id=str(order_id),
            error_code=e.code,
            error=e.message,
        )
        raise to_http_exception(e)

    return ShipmentAcceptedResponse(
        order_id=order_id,
        status="accepted",
        detail="Shipment generation enqueued",
    )


@router.delete(
    "/{order_id}/shipment",
    response_model=ShipmentAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Delete shipment",
    description="Void the order's carrier shipment across its parcel group",
)
async def delete_shipment(
    order_id: UUID,
    orchestrator: Orchestrator,
    dispatcher: Dispatcher,
) -> ShipmentAcceptedResponse:
    """
    Enqueue deletion of an order's shipment.

    Raises:
        HTTPException: 404 if the order or its shipment does not exist
    """
    order = await orchestrator.orders.get_by_id(order_id)
    if order is None:
        raise to_http_exception(
            OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        )
    if not order.has_shipment:
        raise to_http_exception(
            ShipmentNotFoundError(
                f"Order {order.number} has no shipment",
                order_id=str(order_id),
            )
        )

    try:
        dispatcher.delete_shipment(order_id)
    except Exception as e:
        logger.error(
            "Failed to enqueue shipment deletion",
            order_id=str(order_id),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": "Shipment deletion could not be enqueued", "code": "QUEUE_UNAVAILABLE"},
        )

    logger.info(
        "Shipment deletion enqueued",
        order_id=str(order_id),
        external_shipment_id=order.external_shipment_id,
    )
    return ShipmentAcceptedResponse(
        order_id=order_id,
        status="accepted",
        detail="Shipment deletion enqueued",
    )


@router.post(
    "/{order_id}/tracking/refresh",
    response_model=TrackingResponse,
    summary="Refresh tracking",
)
async def refresh_tracking(
    order_id: UUID,
    orchestrator: Orchestrator,
) -> TrackingResponse:
    """
    Fetch the latest carrier tracking state of an order's shipment.

    Raises:
        HTTPException: 404 if the order has no tracked shipment, 500 if the
            carrier call fails
    """
    try:
        info = await orchestrator.refresh_tracking(order_id, actor=API_ACTOR)
    except OrderflowError as e:
        logger.warning(
            "Tracking refresh failed",
            order_id=str(order_id),
            error_code=e.code,
            error=e.message,
        )
        raise to_http_exception(e)

    return TrackingResponse(
        order_id=order_id,
        tracking_number=info.tracking_number,
        status=info.status,
        events=info.events,
    )
