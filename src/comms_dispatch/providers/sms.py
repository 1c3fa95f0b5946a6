"""SMS channel profile (Twilio / AWS SNS style payload)."""

import re
from typing import Any

from comms_shared.enums import Channel
from comms_shared.schemas import NotificationRequest

from comms_dispatch.providers.base import ChannelProfile

E164_PATTERN = re.compile(r"\+[1-9]\d{1,14}")
_PHONE_PUNCTUATION = re.compile(r"[\s\-.()]")


def normalize_phone_number(number: str) -> str:
    """Drop spaces, dashes, dots and parentheses: '+1 (555) 123-4567' -> '+15551234567'."""
    return _PHONE_PUNCTUATION.sub("", number)


def validate_phone_number(number: str) -> bool:
    return bool(E164_PATTERN.fullmatch(number))


def build_sms_payload(request: NotificationRequest, to: str) -> dict[str, Any]:
    payload: dict[str, Any] = {"to": to, "body": request.body}
    sender = request.metadata.get("from")
    if sender:
        payload["from"] = sender
    return payload


PROFILE = ChannelProfile(
    channel=Channel.SMS,
    message_id_prefix="sms",
    validate=validate_phone_number,
    normalize=normalize_phone_number,
    build_payload=build_sms_payload,
    simulated_error="Carrier rejected message",
)
