"""WhatsApp channel profile (WhatsApp Business Cloud API style payload)."""

from decimal import Decimal
from typing import Any

from comms_shared.enums import Channel
from comms_shared.schemas import NotificationRequest

from comms_dispatch.config import ChannelSettings
from comms_dispatch.providers.base import ChannelProfile
from comms_dispatch.providers.sms import normalize_phone_number, validate_phone_number

MEDIA_TYPES = frozenset({"image", "document", "audio", "video", "sticker"})
MESSAGE_TYPES = MEDIA_TYPES | {"text", "location", "contact"}


def message_type(request: NotificationRequest) -> str:
    kind = str(request.metadata.get("message_type", "text"))
    return kind if kind in MESSAGE_TYPES else "text"


def whatsapp_cost_multiplier(
    request: NotificationRequest, settings: ChannelSettings
) -> Decimal:
    """Template messages cost the most, then anything that is not plain text."""
    if request.template_id:
        return settings.template_multiplier
    if message_type(request) != "text":
        return settings.media_multiplier
    return Decimal("1")


def build_whatsapp_payload(request: NotificationRequest, to: str) -> dict[str, Any]:
    payload: dict[str, Any] = {"messaging_product": "whatsapp", "to": to}
    if request.template_id:
        payload["type"] = "template"
        payload["template"] = {
            "name": request.template_id,
            "language": {"code": request.metadata.get("language", "en")},
            "components": request.metadata.get("components", []),
        }
        return payload

    kind = message_type(request)
    payload["type"] = kind
    if kind in MEDIA_TYPES:
        payload[kind] = {
            "link": request.metadata.get("media_url"),
            "caption": request.body,
        }
    elif kind == "location":
        payload[kind] = request.metadata.get("location", {})
    elif kind == "contact":
        payload["contacts"] = [request.metadata.get("contact", {})]
    else:
        payload["text"] = {"body": request.body}
    return payload


PROFILE = ChannelProfile(
    channel=Channel.WHATSAPP,
    message_id_prefix="wa",
    validate=validate_phone_number,
    normalize=normalize_phone_number,
    build_payload=build_whatsapp_payload,
    cost_multiplier=whatsapp_cost_multiplier,
    simulated_error="Message blocked by recipient",
)
