from typing import Annotated

from fastapi import APIRouter, Depends, Request

from notifier.middlewares.auth_middleware import AuthState, get_current_user
from notifier.pipeline import Pipeline, get_pipeline
from notifier.schemas.chat_schemas import ChatAdmissionResponse
from notifier.utils.responses import ResponseBuilder

chat_router = APIRouter()


@chat_router.post("/admission")
async def admit_chat_message(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    pipeline: Annotated[Pipeline, Depends(get_pipeline)],
):
    """
    Gate one chat message against the caller's quota.

    Denied callers get 429 with ``limitType`` in the meta; premium callers
    over the daily ceiling are admitted after the penalty delay. An admitted
    message is counted before the response is returned.
    """
    quota = pipeline.quota
    user_id = current_user.user_id
    quota.ensure_user(user_id, current_user.auth_provider)

    tier = quota.classify(user_id, is_anonymous=current_user.is_anonymous)
    admission = quota.claim_chat_message(user_id, tier)
    await quota.run_admitted(admission)

    data = ChatAdmissionResponse(
        tier=tier.value,
        decision=admission.decision.value,
        delay_seconds=admission.delay_seconds,
        reason=admission.reason,
    )
    return ResponseBuilder.success(
        request=request,
        data=data.model_dump(by_alias=True, exclude_none=True),
        message="Message admitted",
    )
