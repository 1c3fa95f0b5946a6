"""Telegram channel profile (Bot API sendMessage payload)."""

import re
from typing import Any

from comms_shared.enums import Channel
from comms_shared.schemas import NotificationRequest

from comms_dispatch.providers.base import ChannelProfile

CHAT_ID_PATTERN = re.compile(r"-?\d+")
MAX_CHAT_ID_LENGTH = 20


def validate_chat_id(chat_id: str) -> bool:
    if len(chat_id) > MAX_CHAT_ID_LENGTH:
        return False
    return bool(CHAT_ID_PATTERN.fullmatch(chat_id))


def build_telegram_payload(request: NotificationRequest, chat_id: str) -> dict[str, Any]:
    text = request.body
    if request.subject:
        text = f"<b>{request.subject}</b>\n{request.body}"
    return {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": request.metadata.get("parse_mode", "HTML"),
        "disable_notification": bool(request.metadata.get("silent", False)),
    }


PROFILE = ChannelProfile(
    channel=Channel.TELEGRAM,
    message_id_prefix="tg",
    validate=validate_chat_id,
    build_payload=build_telegram_payload,
    simulated_error="Forbidden: bot was blocked by the user",
)
