from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from notifier.schemas.push_schemas import PushMessage

INVALID_TOKEN = "invalid_token"
SEND_FAILED = "send_failed"


@dataclass(frozen=True)
class PushResult:
    token: str
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def invalid_token(self) -> bool:
        return not self.success and self.error_code == INVALID_TOKEN


class PushBatchError(Exception):
    """The batch call failed as a whole; no per-message results exist."""


class PushSender(ABC):
    """Sends push messages; one result per message, in input order."""

    @abstractmethod
    async def send_batch(self, messages: List[PushMessage]) -> List[PushResult]:
        pass
