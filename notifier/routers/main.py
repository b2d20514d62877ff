from fastapi import APIRouter, Depends

from notifier.middlewares.rate_limit_middleware import enforce_rate_limit
from notifier.routers.api import (
    chat_router,
    devices_router,
    habits_router,
    notifications_router,
)

main_router = APIRouter(dependencies=[Depends(enforce_rate_limit)])

# Include domain-based routers
main_router.include_router(devices_router, prefix="/devices", tags=["Devices"])
main_router.include_router(chat_router, prefix="/chat", tags=["Chat"])
main_router.include_router(habits_router, prefix="/habits", tags=["Habits"])
main_router.include_router(
    notifications_router, prefix="/notifications", tags=["Notifications"]
)
