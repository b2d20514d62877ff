import asyncio
from typing import List, Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from notifier.config.settings import Settings, settings as default_settings
from notifier.schemas.push_schemas import PushMessage
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger

from .base import INVALID_TOKEN, SEND_FAILED, PushBatchError, PushResult, PushSender

logger = get_logger()

FIREBASE_APP_NAME = "notifier"


class FirebasePushSender(PushSender):
    """PushSender over Firebase Cloud Messaging (``messaging.send_each``)"""

    def __init__(self, settings: Settings = default_settings):
        self.credentials_path = settings.FIREBASE_CREDENTIALS_PATH
        self._app: Optional[firebase_admin.App] = None

    def _get_app(self) -> firebase_admin.App:
        if self._app is None:
            try:
                self._app = firebase_admin.get_app(FIREBASE_APP_NAME)
            except ValueError:
                cred = (
                    credentials.Certificate(self.credentials_path)
                    if self.credentials_path
                    else credentials.ApplicationDefault()
                )
                self._app = firebase_admin.initialize_app(cred, name=FIREBASE_APP_NAME)
        return self._app

    @staticmethod
    def to_fcm_message(message: PushMessage) -> messaging.Message:
        overrides = message.platform_overrides
        high_priority = overrides.priority == "high"

        return messaging.Message(
            token=message.token,
            notification=messaging.Notification(
                title=message.notification.title, body=message.notification.body
            ),
            data=message.data,
            apns=messaging.APNSConfig(
                headers={
                    "apns-priority": "10" if high_priority else "5",
                    "apns-push-type": "alert",
                },
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(
                        sound=overrides.sound,
                        badge=overrides.badge,
                        content_available=True,
                        mutable_content=True,
                    )
                ),
            ),
            android=messaging.AndroidConfig(
                priority="high" if high_priority else "normal",
                notification=messaging.AndroidNotification(
                    sound=overrides.sound,
                    channel_id=overrides.channel_id,
                    notification_count=overrides.badge,
                    default_sound=True,
                    visibility="public",
                ),
            ),
        )

    async def send_batch(self, messages: List[PushMessage]) -> List[PushResult]:
        if not messages:
            return []

        fcm_messages = [self.to_fcm_message(m) for m in messages]
        try:
            response = await asyncio.to_thread(
                messaging.send_each, fcm_messages, app=self._get_app()
            )
        except Exception as e:
            raise PushBatchError(f"FCM batch send failed: {describe_error(e)}") from e

        results: List[PushResult] = []
        for message, send_response in zip(messages, response.responses):
            if send_response.success:
                results.append(
                    PushResult(
                        token=message.token,
                        success=True,
                        message_id=send_response.message_id,
                    )
                )
                continue

            exc = send_response.exception
            results.append(
                PushResult(
                    token=message.token,
                    success=False,
                    error_code=INVALID_TOKEN if _is_invalid_token(exc) else SEND_FAILED,
                    error_message=str(exc) if exc else "unknown_fcm_error",
                )
            )

        logger.debug(
            f"FCM batch sent: {response.success_count} succeeded, {response.failure_count} failed"
        )
        return results


def _is_invalid_token(exc: Optional[BaseException]) -> bool:
    if isinstance(exc, (messaging.UnregisteredError, messaging.SenderIdMismatchError)):
        return True
    # Malformed tokens come back as INVALID_ARGUMENT
    return isinstance(exc, exceptions.InvalidArgumentError) and (
        "registration token" in str(exc).lower()
    )
