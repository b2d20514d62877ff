from typing import Optional

from fastapi import Depends, Request

from notifier.pipeline import Pipeline, get_pipeline
from notifier.utils.errors import RateLimitExceededError
from notifier.utils.logging import get_logger

logger = get_logger()


def get_client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return None


def enforce_rate_limit(
    request: Request, pipeline: Pipeline = Depends(get_pipeline)
) -> None:
    """Dependency that rejects the request with 429 once the client is over its window."""
    client_ip = get_client_ip(request)
    decision = pipeline.rate_limiter.check_and_increment(client_ip)
    if decision.allowed:
        return

    logger.warning(
        f"Rate limited {client_ip or 'unknown client'} on {request.url.path} "
        f"({decision.reason})"
    )
    if decision.reason == "missing_identity":
        raise RateLimitExceededError(
            "Could not identify the client for rate limiting.",
            retry_after_seconds=decision.retry_after_seconds or 1,
            error_code="RATE_LIMIT_IDENTITY",
        )
    if decision.reason == "unavailable":
        raise RateLimitExceededError(
            "Rate limiting is temporarily unavailable. Please try again shortly.",
            retry_after_seconds=decision.retry_after_seconds or 1,
            error_code="RATE_LIMIT_UNAVAILABLE",
        )
    raise RateLimitExceededError(retry_after_seconds=decision.retry_after_seconds)
