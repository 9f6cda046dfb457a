"""
Celery application and shared task plumbing.

Start a worker with::

    celery -A orderflow.worker:celery_app worker --loglevel=info

Tasks are plain synchronous Celery tasks that run the async services through
``run_async``. Each run owns a fresh event loop, so the database engine is
disposed at the end of every run instead of being shared across loops.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from celery import Celery, Task
from celery.signals import task_postrun, task_prerun, worker_process_init
from sqlalchemy.exc import OperationalError

from orderflow.core.config import get_settings
from orderflow.core.exceptions import OrderflowError
from orderflow.core.logging import clear_context, configure_logging, get_logger, set_task_id
from orderflow.database.connection import close_database_connections

logger = get_logger(__name__)
settings = get_settings()

T = TypeVar("T")

celery_app = Celery(
    "orderflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "orderflow.services.orders.tasks",
        "orderflow.services.shipping.tasks",
        "orderflow.services.webhooks.tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Acknowledge after the task finishes so a crashed worker's task is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=settings.celery_result_backend is None,
)


@worker_process_init.connect
def _init_worker_logging(**kwargs: Any) -> None:
    configure_logging()


@task_prerun.connect
def _bind_task_id(task_id: Optional[str] = None, **kwargs: Any) -> None:
    set_task_id(task_id)


@task_postrun.connect
def _clear_task_context(**kwargs: Any) -> None:
    clear_context()


def run_async(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """
    Run an async unit of work from a synchronous task.

    Args:
        coro_factory: Zero-argument callable returning the coroutine to run

    Returns:
        The coroutine's result
    """

    async def runner() -> T:
        try:
            return await coro_factory()
        finally:
            await close_database_connections()

    return asyncio.run(runner())


def is_retryable(exc: Exception) -> bool:
    """Check whether a failed attempt should be scheduled again."""
    if isinstance(exc, OrderflowError):
        return exc.retryable
    return isinstance(exc, OperationalError)


class FulfillmentTask(Task):
    """
    Base task class with structured lifecycle logging.

    Retry decisions are made by each task from the error's ``retryable``
    flag; this class only reports task outcomes.
    """

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        """
        Handle task failure.

        Args:
            exc: Exception that caused the failure
            task_id: Unique task identifier
            args: Task positional arguments
            kwargs: Task keyword arguments
            einfo: Exception info object
        """
        logger.error(
            "Task failed",
            task=self.name,
            task_id=task_id,
            exception=str(exc),
            error_type=type(exc).__name__,
            kwargs=kwargs,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Task retrying",
            task=self.name,
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
            max_retries=self.max_retries,
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        logger.info(
            "Task completed successfully",
            task=self.name,
            task_id=task_id,
            result=retval,
        )
