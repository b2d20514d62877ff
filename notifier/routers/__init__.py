from .main import main_router
from .webhook import webhook_router
from .health import health_router

__all__ = ["main_router", "webhook_router", "health_router"]
