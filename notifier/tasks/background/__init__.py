from .notification_dispatch import dispatch_notification_task

__all__ = ["dispatch_notification_task"]
