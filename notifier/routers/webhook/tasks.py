from typing import Annotated

from fastapi import APIRouter, Depends, Request

from notifier.pipeline import Pipeline, get_pipeline
from notifier.utils.auth import AuthUtils
from notifier.utils.errors import AuthenticationError
from notifier.utils.logging import get_logger
from notifier.utils.responses import ResponseBuilder

tasks_router = APIRouter()
logger = get_logger()

SIGNATURE_HEADER = "x-notifier-signature"
RETRY_COUNT_HEADER = "x-cloudtasks-taskretrycount"


@tasks_router.post("/dispatch")
async def dispatch_notification(
    request: Request,
    pipeline: Annotated[Pipeline, Depends(get_pipeline)],
):
    """
    Deliver one scheduled notification pushed by an HTTP task runner.

    The runner signs the raw body with the shared webhook secret and sends
    ``X-Notifier-Signature: sha256=<hex>``; unsigned or mis-signed requests
    answer 401. Every handled outcome answers 200 so the runner does not
    retry it, including ``duplicate`` and ``skipped_quota``. Malformed
    payloads answer 400; transient push failures answer 503 and the runner
    retries until its last attempt, which finalizes the record in-app only.
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    if not signature:
        raise AuthenticationError("Missing X-Notifier-Signature header")
    if not AuthUtils.verify_webhook_signature(
        body, signature, pipeline.settings.WEBHOOK_SIGNING_SECRET
    ):
        logger.warning("Rejected dispatch webhook with an invalid signature")
        raise AuthenticationError("Invalid webhook signature")

    outcome = await pipeline.dispatcher.handle(
        body, final_attempt=_is_final_attempt(request, pipeline)
    )

    return ResponseBuilder.success(
        request=request,
        data=outcome.to_response().model_dump(by_alias=True, exclude_none=True),
        message=f"Notification {outcome.status.value}",
    )


def _is_final_attempt(request: Request, pipeline: Pipeline) -> bool:
    try:
        retries = int(request.headers.get(RETRY_COUNT_HEADER, "0"))
    except ValueError:
        return False
    return retries >= pipeline.task_queue.policy.max_retries
