"""
Celery task for webhook processing.

Processing is retried with a fixed delay, and only for retryable failures
such as an order lookup miss caused by replica lag. The webhook row
already carries the failure before a retry is scheduled.
"""

import uuid
from typing import Any

from celery import Task, shared_task

from orderflow.core.config import get_settings
from orderflow.core.exceptions import WebhookNotFoundError
from orderflow.core.logging import get_logger
from orderflow.database.connection import get_session
from orderflow.services.dispatch import get_task_dispatcher
from orderflow.services.webhooks.service import get_webhook_service
from orderflow.worker import FulfillmentTask, is_retryable, run_async

logger = get_logger(__name__)
settings = get_settings()


async def process_webhook(webhook_id: uuid.UUID) -> dict[str, Any]:
    async with get_session() as session:
        service = get_webhook_service(session, get_task_dispatcher())
        webhook = await service.process(webhook_id)
        return {
            "webhook_id": str(webhook.id),
            "status": webhook.status.value,
            "event_type": webhook.event_type,
        }


@shared_task(
    bind=True,
    base=FulfillmentTask,
    name="webhooks.process_webhook",
    max_retries=settings.webhook_max_attempts - 1,
    time_limit=settings.webhook_task_time_limit,
    soft_time_limit=max(settings.webhook_task_time_limit - 10, 1),
)
def process_webhook_task(self: Task, webhook_id: str) -> dict[str, Any]:
    """
    Process a stored webhook.

    Args:
        self: Task instance
        webhook_id: Webhook to process

    Returns:
        Final webhook status and classified event type

    Raises:
        Retry: If processing failed with a retryable error and retries remain
    """
    logger.info(
        "Processing webhook task",
        task_id=self.request.id,
        webhook_id=webhook_id,
        attempt=self.request.retries + 1,
    )

    try:
        return run_async(lambda: process_webhook(uuid.UUID(webhook_id)))

    except WebhookNotFoundError:
        logger.error("Webhook to process does not exist", webhook_id=webhook_id)
        raise

    except Exception as e:
        if is_retryable(e):
            raise self.retry(exc=e, countdown=settings.webhook_retry_delay)
        raise
