"""Test doubles and builders shared across the test packages."""

import asyncio
import datetime
from typing import Any

from comms_shared.enums import Channel

from comms_dispatch.config import (
    DispatchConfig,
    EmailSettings,
    PushSettings,
    SmsSettings,
    TelegramSettings,
    WhatsAppSettings,
)

ADDRESSES: dict[Channel, str] = {
    Channel.SMS: "+15551234567",
    Channel.EMAIL: "parent@example.com",
    Channel.PUSH: "f" * 120,
    Channel.WHATSAPP: "+447911123456",
    Channel.TELEGRAM: "123456789",
}

_SETTINGS = {
    "sms": SmsSettings,
    "email": EmailSettings,
    "push": PushSettings,
    "whatsapp": WhatsAppSettings,
    "telegram": TelegramSettings,
}


class FakeClock:
    """Deterministic UTC clock that only moves when told to."""

    def __init__(self, start: datetime.datetime | None = None) -> None:
        self.now = start or datetime.datetime(2026, 1, 5, 9, 0, tzinfo=datetime.UTC)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


class SleepRecorder:
    """Async sleep replacement that records requested delays.

    Still yields to the event loop so concurrent tasks interleave.
    """

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_config(success_rate: float | None = None, **overrides: Any) -> DispatchConfig:
    """DispatchConfig with every channel forced to *success_rate* when given."""
    if success_rate is not None:
        for name, settings_cls in _SETTINGS.items():
            overrides.setdefault(name, settings_cls(success_rate=success_rate))
    return DispatchConfig(**overrides)
