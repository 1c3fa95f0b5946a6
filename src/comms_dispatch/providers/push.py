"""Push channel profile (Firebase Cloud Messaging style payload).

Push is the only multicast channel: one provider call fans out to many
device tokens and may succeed for some of them only.
"""

import re
from collections.abc import Mapping
from typing import Any

from comms_shared.enums import Channel
from comms_shared.errors import InputError
from comms_shared.schemas import NotificationRequest

from comms_dispatch.providers.base import ChannelProfile

MIN_TOKEN_LENGTH = 100
_TOKEN_PATTERN = re.compile(r"[A-Za-z0-9_:\-]+")
DEFAULT_TITLE = "Notification"


def validate_device_token(token: str) -> bool:
    return len(token) > MIN_TOKEN_LENGTH and bool(_TOKEN_PATTERN.fullmatch(token))


def build_push_payload(request: NotificationRequest, token: str) -> dict[str, Any]:
    title = request.subject or DEFAULT_TITLE
    raw_data = request.metadata.get("data") or {}
    if not isinstance(raw_data, Mapping):
        raise InputError("push data must be a mapping")
    data = {str(k): str(v) for k, v in raw_data.items()}
    return {
        "token": token,
        "notification": {"title": title, "body": request.body},
        "data": data,
        "android": {"priority": "high"},
        "apns": {"payload": {"aps": {"alert": {"title": title, "body": request.body}}}},
    }


PROFILE = ChannelProfile(
    channel=Channel.PUSH,
    message_id_prefix="push",
    validate=validate_device_token,
    build_payload=build_push_payload,
    simulated_error="Unregistered device token",
    multicast=True,
)
