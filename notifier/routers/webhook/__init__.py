from fastapi import APIRouter

from .tasks import tasks_router

webhook_router = APIRouter()

webhook_router.include_router(tasks_router, prefix="/tasks", tags=["Task Webhook"])
