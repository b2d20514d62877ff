import base64
import json

import pytest

from notifier.schemas.dispatch_schemas import NotificationPayload, Recurrence
from notifier.services.payload_codec import (
    decode_dispatch_body,
    derive_notification_id,
    encode_dispatch_body,
    successor_notification_id,
)
from notifier.utils.errors import PayloadDecodeError

PAYLOAD_JSON = {
    "userId": "u1",
    "notificationId": "n-1",
    "notificationPayload": "Small steps count.",
    "windowType": "notification_morning",
    "quotaFlag": True,
}


def b64(data) -> str:
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


class TestDecodeShapes:
    """Accepted wire encodings."""

    def test_direct_json_object(self):
        payload = decode_dispatch_body(PAYLOAD_JSON)

        assert payload.user_id == "u1"
        assert payload.notification_id == "n-1"
        assert payload.quota_flag is True
        assert payload.recurrence == Recurrence.ONCE

    def test_json_bytes(self):
        payload = decode_dispatch_body(json.dumps(PAYLOAD_JSON).encode("utf-8"))
        assert payload.window_type == "notification_morning"

    def test_raw_base64_body(self):
        payload = decode_dispatch_body(b64(PAYLOAD_JSON).encode("ascii"))
        assert payload.notification_payload == "Small steps count."

    def test_base64_as_json_string(self):
        payload = decode_dispatch_body(json.dumps(b64(PAYLOAD_JSON)))
        assert payload.notification_id == "n-1"

    def test_message_envelope(self):
        payload = decode_dispatch_body({"message": {"data": b64(PAYLOAD_JSON)}})
        assert payload.user_id == "u1"

    def test_legacy_field_names(self):
        payload = decode_dispatch_body(
            {
                "userId": "u1",
                "quote": "Keep going",
                "sendType": "notification_evening",
                "limitReached": True,
            }
        )

        assert payload.notification_payload == "Keep going"
        assert payload.window_type == "notification_evening"
        assert payload.quota_flag is True

    def test_encode_then_decode_keeps_fields(self):
        original = NotificationPayload(
            user_id="u1",
            notification_id="n-9",
            notification_payload="Drink water",
            window_type="habit_reminder",
            recurrence=Recurrence.DAILY,
            habit_id="h-1",
        )

        decoded = decode_dispatch_body(encode_dispatch_body(original))

        assert decoded.model_dump() == original.model_dump()


class TestDecodeErrors:
    """Malformed bodies are rejected."""

    @pytest.mark.parametrize(
        "body",
        [
            None,
            b"",
            b"   ",
            b"\xff\xfe",
            "not base64 !!",
            "[1, 2, 3]",
            {"message": {"data": "%%%"}},
            {"message": {"data": b64(["not", "an", "object"])}},
            {"something": "else"},
        ],
    )
    def test_undecodable(self, body):
        with pytest.raises(PayloadDecodeError):
            decode_dispatch_body(body)

    def test_missing_required_field(self):
        with pytest.raises(PayloadDecodeError) as exc_info:
            decode_dispatch_body({"userId": "u1", "windowType": "notification_morning"})

        assert "notificationPayload" in exc_info.value.message

    def test_blank_user_id(self):
        with pytest.raises(PayloadDecodeError):
            decode_dispatch_body({**PAYLOAD_JSON, "userId": "  "})


class TestNotificationIds:
    """Derived and successor ids are deterministic."""

    def test_missing_id_derived_from_content(self):
        body = {k: v for k, v in PAYLOAD_JSON.items() if k != "notificationId"}

        first = decode_dispatch_body(dict(body))
        second = decode_dispatch_body(dict(body))
        other = decode_dispatch_body({**body, "notificationPayload": "Different"})

        assert first.notification_id == second.notification_id
        assert first.notification_id != other.notification_id
        assert first.notification_id == derive_notification_id(first)

    def test_successor_id_is_stable_and_distinct(self):
        assert successor_notification_id("n-1") == successor_notification_id("n-1")
        assert successor_notification_id("n-1") != "n-1"
        assert successor_notification_id(successor_notification_id("n-1")) != successor_notification_id("n-1")
