from .chat import chat_router
from .devices import devices_router
from .habits import habits_router
from .notifications import notifications_router

__all__ = ["chat_router", "devices_router", "habits_router", "notifications_router"]
