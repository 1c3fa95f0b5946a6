"""Email channel profile (SendGrid style payload)."""

import re
from typing import Any

from comms_shared.enums import Channel
from comms_shared.schemas import NotificationRequest

from comms_dispatch.providers.base import ChannelProfile

EMAIL_PATTERN = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
DEFAULT_SUBJECT = "Notification"


def validate_email(address: str) -> bool:
    return bool(EMAIL_PATTERN.fullmatch(address))


def build_email_payload(request: NotificationRequest, to: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "to": to,
        "subject": request.subject or DEFAULT_SUBJECT,
        "html": request.metadata.get("html", request.body),
        "text": request.body,
    }
    for key in ("cc", "bcc", "reply_to", "attachments"):
        if key in request.metadata:
            payload[key] = request.metadata[key]
    return payload


PROFILE = ChannelProfile(
    channel=Channel.EMAIL,
    message_id_prefix="email",
    validate=validate_email,
    build_payload=build_email_payload,
    simulated_error="Mailbox full",
)
