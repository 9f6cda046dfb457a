"""
FastAPI dependencies for database sessions and fulfillment services.

Every request gets its own session; the services built on top of it commit
their own units of work.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.database.connection import get_db
from orderflow.services.dispatch import TaskDispatcher, get_task_dispatcher
from orderflow.services.orders.state_machine import (
    OrderLifecycleEngine,
    get_order_lifecycle_engine,
)
from orderflow.services.shipping.orchestrator import (
    FulfillmentOrchestrator,
    get_fulfillment_orchestrator,
)
from orderflow.services.webhooks.service import WebhookService, get_webhook_service

DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]


def get_dispatcher() -> TaskDispatcher:
    """Task dispatcher used to enqueue background work."""
    return get_task_dispatcher()


Dispatcher = Annotated[TaskDispatcher, Depends(get_dispatcher)]


def get_lifecycle_engine(db: DatabaseSession, dispatcher: Dispatcher) -> OrderLifecycleEngine:
    """
    Build the order lifecycle engine for a request.

    Args:
        db: Database session
        dispatcher: Task dispatcher

    Returns:
        OrderLifecycleEngine bound to the request session
    """
    return get_order_lifecycle_engine(db, dispatcher)


def get_orchestrator(
    db: DatabaseSession,
    dispatcher: Dispatcher,
    settings: AppSettings,
) -> FulfillmentOrchestrator:
    """
    Build the fulfillment orchestrator for a request.

    Args:
        db: Database session
        dispatcher: Task dispatcher
        settings: Application settings

    Returns:
        FulfillmentOrchestrator bound to the request session
    """
    return get_fulfillment_orchestrator(db, dispatcher, settings)


def get_webhooks(db: DatabaseSession, dispatcher: Dispatcher) -> WebhookService:
    """Build the webhook service for a request."""
    return get_webhook_service(db, dispatcher)


LifecycleEngine = Annotated[OrderLifecycleEngine, Depends(get_lifecycle_engine)]
Orchestrator = Annotated[FulfillmentOrchestrator, Depends(get_orchestrator)]
Webhooks = Annotated[WebhookService, Depends(get_webhooks)]
