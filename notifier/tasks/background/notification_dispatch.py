import asyncio
from typing import Any, Dict, Union

from sqlalchemy.exc import SQLAlchemyError

from notifier.celery import celery
from notifier.pipeline import get_pipeline
from notifier.services.task_queue.base import QueuePolicy
from notifier.utils.errors import (
    PayloadDecodeError,
    TransientDispatchError,
    describe_error,
)
from notifier.utils.logging import get_logger

dispatch_policy = QueuePolicy.from_settings()


@celery.task(
    bind=True,
    max_retries=dispatch_policy.max_retries,
    acks_late=True,
)
def dispatch_notification_task(
    self, request_id: str, body: Union[str, Dict[str, Any]]
):
    """
    Delivers one scheduled notification.

    ``body`` is the encoded notification payload (see payload_codec). Bad
    payloads are dropped without retry; infrastructure failures are retried
    with exponential backoff. The last attempt in the budget finalizes the
    record as in-app only when the push provider is still down.

    Args:
        request_id: Notification id, reused as the task id
        body: Base64 JSON payload, or the decoded payload dict
    """
    logger = get_logger().bind(request_id=request_id)
    final_attempt = self.request.retries >= dispatch_policy.max_retries

    try:
        return asyncio.run(
            _async_dispatch_notification(request_id, body, final_attempt=final_attempt)
        )
    except (TransientDispatchError, SQLAlchemyError) as e:
        countdown = dispatch_policy.backoff_for(self.request.retries)
        logger.warning(
            f"Dispatch attempt {self.request.retries + 1}/{dispatch_policy.max_attempts} "
            f"failed, retrying in {countdown}s: {describe_error(e)}"
        )
        raise self.retry(exc=e, countdown=countdown)


async def _async_dispatch_notification(
    request_id: str,
    body: Union[str, Dict[str, Any]],
    final_attempt: bool = False,
):
    logger = get_logger().bind(request_id=request_id)
    pipeline = get_pipeline()

    try:
        outcome = await pipeline.dispatcher.handle(body, final_attempt=final_attempt)
    except PayloadDecodeError as e:
        logger.error(f"Dropping undecodable dispatch task: {e.message}")
        return {
            "success": False,
            "error": e.message,
            "request_id": request_id,
        }

    return {
        "success": True,
        "outcome": outcome.to_response().model_dump(mode="json", by_alias=True),
        "request_id": request_id,
    }
