from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from comms_shared.enums import Channel


class ChannelSettings(BaseModel):
    """Batching, simulation and cost parameters for one channel."""

    batch_size: int = Field(gt=0)
    batch_delay_seconds: float = Field(default=1.0, ge=0)
    success_rate: float = Field(ge=0, le=1)
    base_cost: Decimal = Decimal("0")
    # Multicast channels split large recipient lists into sub-batches.
    sub_batch_size: int | None = Field(default=None, gt=0)
    sub_batch_delay_seconds: float = Field(default=0.0, ge=0)
    partial_failure_ratio: float = Field(default=0.1, ge=0, le=1)
    media_multiplier: Decimal = Decimal("1")
    template_multiplier: Decimal = Decimal("1")


class SmsSettings(ChannelSettings):
    batch_size: int = 10
    success_rate: float = 0.90
    base_cost: Decimal = Decimal("0.01")


class EmailSettings(ChannelSettings):
    batch_size: int = 100
    success_rate: float = 0.95
    base_cost: Decimal = Decimal("0.0001")


class PushSettings(ChannelSettings):
    batch_size: int = 500
    success_rate: float = 0.92
    sub_batch_size: int | None = 500
    sub_batch_delay_seconds: float = 0.5


class WhatsAppSettings(ChannelSettings):
    batch_size: int = 100
    success_rate: float = 0.95
    base_cost: Decimal = Decimal("0.005")
    media_multiplier: Decimal = Decimal("1.5")
    template_multiplier: Decimal = Decimal("2")


class TelegramSettings(ChannelSettings):
    batch_size: int = 30
    success_rate: float = 0.98


class DispatchConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_", env_nested_delimiter="__"
    )

    log_level: str = "INFO"
    simulate: bool = True
    retry_mode: Literal["deferred", "polled"] = "deferred"
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: list[float] = [1.0, 2.0, 4.0]
    rate_limit_retry_seconds: float = 10.0
    provider_timeout_seconds: float = 30.0
    currency: str = "USD"
    retry_poll_interval_seconds: float = 5.0
    retry_poll_batch_size: int = 100

    sms: SmsSettings = SmsSettings()
    email: EmailSettings = EmailSettings()
    push: PushSettings = PushSettings()
    whatsapp: WhatsAppSettings = WhatsAppSettings()
    telegram: TelegramSettings = TelegramSettings()

    def channel_settings(self, channel: str) -> ChannelSettings:
        """Return the settings block for a given channel."""
        settings = {
            Channel.SMS: self.sms,
            Channel.EMAIL: self.email,
            Channel.PUSH: self.push,
            Channel.WHATSAPP: self.whatsapp,
            Channel.TELEGRAM: self.telegram,
        }.get(channel)
        if settings is None:
            raise ValueError(f"Unknown channel: {channel!r}")
        return settings


class RateLimitConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_")

    enabled: bool = False
    sms_per_minute: int = 600
    email_per_minute: int = 6000
    push_per_minute: int = 30000
    whatsapp_per_minute: int = 6000
    telegram_per_minute: int = 1800
    window_seconds: int = 60

    def limit_for_channel(self, channel: str) -> int:
        """Return the per-window limit for a given channel."""
        limits = {
            Channel.SMS: self.sms_per_minute,
            Channel.EMAIL: self.email_per_minute,
            Channel.PUSH: self.push_per_minute,
            Channel.WHATSAPP: self.whatsapp_per_minute,
            Channel.TELEGRAM: self.telegram_per_minute,
        }
        limit = limits.get(channel)
        if limit is None:
            raise ValueError(f"Unknown channel: {channel!r}")
        return limit


class HttpProviderConfig(BaseSettings):
    """Gateway used by HttpProvider when simulation is off."""

    model_config = SettingsConfigDict(env_prefix="PROVIDER_")

    base_url: str = "http://localhost:8080"
    api_token: str | None = None
    sms_path: str = "/v1/sms/messages"
    email_path: str = "/v1/email/messages"
    push_path: str = "/v1/push/messages"
    whatsapp_path: str = "/v1/whatsapp/messages"
    telegram_path: str = "/v1/telegram/messages"

    def path_for_channel(self, channel: str) -> str:
        paths = {
            Channel.SMS: self.sms_path,
            Channel.EMAIL: self.email_path,
            Channel.PUSH: self.push_path,
            Channel.WHATSAPP: self.whatsapp_path,
            Channel.TELEGRAM: self.telegram_path,
        }
        path = paths.get(channel)
        if path is None:
            raise ValueError(f"Unknown channel: {channel!r}")
        return path


class CeleryConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CELERY_")

    broker_url: str = "redis://localhost:6379/0"
    retry_sweep_interval_seconds: float = 5.0
