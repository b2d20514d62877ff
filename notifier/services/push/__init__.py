from .base import (
    INVALID_TOKEN,
    SEND_FAILED,
    PushBatchError,
    PushResult,
    PushSender,
)
from .firebase_sender import FirebasePushSender

__all__ = [
    "INVALID_TOKEN",
    "SEND_FAILED",
    "PushBatchError",
    "PushResult",
    "PushSender",
    "FirebasePushSender",
]
