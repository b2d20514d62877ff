import base64
import binascii
import json
import uuid
from typing import Any, Dict, Union

from pydantic import ValidationError

from notifier.schemas.dispatch_schemas import NotificationPayload
from notifier.utils.errors import PayloadDecodeError

# Field names written by older schedulers
LEGACY_FIELD_ALIASES = {
    "quote": "notificationPayload",
    "sendType": "windowType",
    "limitReached": "quotaFlag",
}

NOTIFICATION_ID_NAMESPACE = uuid.UUID("6f1c2d4e-8a3b-5c7d-9e0f-1a2b3c4d5e6f")


def encode_dispatch_body(payload: NotificationPayload) -> str:
    """Base64 JSON, the opaque single argument carried by the durable task."""
    raw = json.dumps(_payload_dict(payload), sort_keys=True, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_dispatch_body(body: Union[bytes, str, Dict[str, Any], None]) -> NotificationPayload:
    """
    Decode a dispatch body in any of the accepted wire encodings:

    - a JSON object carrying ``userId``
    - an envelope ``{"message": {"data": "<base64 JSON>"}}``
    - a base64 string of the JSON object, sent raw or as a JSON string

    A body without ``notificationId`` gets one derived from its content, so
    redeliveries of the same legacy body map to the same record.
    """
    data = _to_mapping(body)

    for legacy, current in LEGACY_FIELD_ALIASES.items():
        if legacy in data and current not in data:
            data[current] = data.pop(legacy)

    try:
        payload = NotificationPayload.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) for error in e.errors()
        )
        raise PayloadDecodeError(f"Invalid dispatch payload fields: {fields}")

    if not payload.notification_id:
        payload = payload.model_copy(
            update={"notification_id": derive_notification_id(payload)}
        )
    return payload


def derive_notification_id(payload: NotificationPayload) -> str:
    canonical = _payload_dict(payload)
    canonical.pop("notificationId", None)
    return str(
        uuid.uuid5(
            NOTIFICATION_ID_NAMESPACE,
            json.dumps(canonical, sort_keys=True, separators=(",", ":")),
        )
    )


def successor_notification_id(notification_id: str) -> str:
    """Stable id for the next occurrence of a recurring notification."""
    return str(uuid.uuid5(NOTIFICATION_ID_NAMESPACE, f"next:{notification_id}"))


def _payload_dict(payload: NotificationPayload) -> Dict[str, Any]:
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


def _to_mapping(body: Union[bytes, str, Dict[str, Any], None]) -> Dict[str, Any]:
    if body is None:
        raise PayloadDecodeError("Empty dispatch body")

    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8").strip()
        except UnicodeDecodeError:
            raise PayloadDecodeError("Dispatch body is not valid UTF-8")

    if isinstance(body, str):
        if not body:
            raise PayloadDecodeError("Empty dispatch body")
        try:
            parsed: Any = json.loads(body)
        except json.JSONDecodeError:
            parsed = body
        # A JSON string literal wraps the base64 body
        if isinstance(parsed, str):
            return _decode_base64_json(parsed)
        body = parsed

    if not isinstance(body, dict):
        raise PayloadDecodeError("Dispatch body must be a JSON object")

    message = body.get("message")
    if isinstance(message, dict) and message.get("data"):
        return _decode_base64_json(message["data"])

    if body.get("userId") or body.get("user_id"):
        return dict(body)

    raise PayloadDecodeError("Dispatch body has no recognizable payload")


def _decode_base64_json(encoded: Any) -> Dict[str, Any]:
    if not isinstance(encoded, str):
        raise PayloadDecodeError("Encoded payload must be a base64 string")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        data = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError):
        raise PayloadDecodeError("Payload is not base64-encoded JSON")
    if not isinstance(data, dict):
        raise PayloadDecodeError("Decoded payload must be a JSON object")
    return data
