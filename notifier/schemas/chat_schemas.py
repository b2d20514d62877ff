from typing import Optional

from notifier.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class ChatAdmissionResponse(BaseModel):
    tier: str
    decision: str
    delay_seconds: float = 0.0
    reason: Optional[str] = None
