import asyncio

from notifier.celery import celery
from notifier.pipeline import get_pipeline
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger


@celery.task(bind=True, max_retries=0)
def daily_notification_scheduler_task(self, request_id: str, **kwargs):
    """
    Plans and enqueues today's notification windows for every active user.

    Runs once a day from beat. Safe to run more than once: windows already
    claimed for a user's local date are skipped, so a rerun only picks up
    users or windows the earlier run missed.
    """
    return asyncio.run(_async_daily_notification_scheduler(request_id, **kwargs))


async def _async_daily_notification_scheduler(request_id: str, **kwargs):
    logger = get_logger().bind(request_id=request_id)
    pipeline = get_pipeline()

    try:
        now = kwargs.get("current_datetime") or pipeline.clock()
        logger.info(f"Starting daily notification scheduling at {now.isoformat()}")

        report = pipeline.daily_job.run(now)

        if not report.queue_ready:
            return {
                "success": False,
                "error": "Task queue unavailable",
                "report": report.to_dict(),
                "request_id": request_id,
            }

        logger.info(
            f"Daily notification scheduling finished: {report.scheduled} scheduled, "
            f"{report.already_claimed} already claimed, {report.failed} failed"
        )
        return {
            "success": True,
            "report": report.to_dict(),
            "request_id": request_id,
        }

    except Exception as e:
        logger.error(f"Daily notification scheduling failed: {describe_error(e)}")
        return {
            "success": False,
            "error": str(e),
            "request_id": request_id,
        }
