import asyncio

from notifier.celery import celery
from notifier.pipeline import get_pipeline
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=300)
def scheduled_marker_cleanup_task(self, request_id: str, **kwargs):
    """Deletes idempotency markers whose retention period has passed."""
    return asyncio.run(_async_scheduled_marker_cleanup(request_id, **kwargs))


async def _async_scheduled_marker_cleanup(request_id: str, **kwargs):
    logger = get_logger().bind(request_id=request_id)
    pipeline = get_pipeline()

    try:
        purged = pipeline.idempotency.purge_expired(kwargs.get("current_datetime"))
        logger.info(f"Purged {purged} expired scheduling markers")
        return {"success": True, "purged": purged, "request_id": request_id}
    except Exception as e:
        logger.error(f"Marker cleanup failed: {describe_error(e)}")
        return {"success": False, "error": str(e), "request_id": request_id}
