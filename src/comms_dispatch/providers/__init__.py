"""Provider registry for channel-based delivery dispatch."""

import asyncio
import logging
import random

import httpx

from comms_shared.enums import Channel

from comms_dispatch.config import DispatchConfig, HttpProviderConfig
from comms_dispatch.providers import email, push, sms, telegram, whatsapp
from comms_dispatch.providers.base import (
    INVALID_ADDRESS,
    BaseChannelProvider,
    ChannelProfile,
    ChannelProvider,
    MulticastResult,
    ProviderResult,
    Sleep,
)
from comms_dispatch.providers.http import HttpProvider, create_http_client
from comms_dispatch.providers.simulated import SimulatedProvider

__all__ = [
    "CHANNEL_PROFILES",
    "INVALID_ADDRESS",
    "BaseChannelProvider",
    "ChannelProfile",
    "ChannelProvider",
    "HttpProvider",
    "MulticastResult",
    "ProviderRegistry",
    "ProviderResult",
    "SimulatedProvider",
    "create_default_registry",
]

CHANNEL_PROFILES: dict[Channel, ChannelProfile] = {
    profile.channel: profile
    for profile in (
        sms.PROFILE,
        email.PROFILE,
        push.PROFILE,
        whatsapp.PROFILE,
        telegram.PROFILE,
    )
}


class ProviderRegistry:
    """Maps channel names to delivery provider instances."""

    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._providers: dict[str, ChannelProvider] = {}
        self._http_client = http_client

    def register(self, channel: str, provider: ChannelProvider) -> None:
        self._providers[channel] = provider

    def get(self, channel: str) -> ChannelProvider:
        """Return the provider for a channel.

        Raises KeyError if no provider is registered for the channel.
        """
        return self._providers[channel]

    @property
    def channels(self) -> list[str]:
        return sorted(self._providers)

    async def aclose(self) -> None:
        """Close the shared HTTP client, if any."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def create_default_registry(
    config: DispatchConfig | None = None,
    *,
    rng: random.Random | None = None,
    http_config: HttpProviderConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
    logger: logging.Logger | None = None,
) -> ProviderRegistry:
    """Create a registry with a provider for every channel.

    ``config.simulate`` picks the implementation once, here: simulated
    providers share one ``rng``; HTTP providers share one ``AsyncClient``.
    """
    config = config or DispatchConfig()
    common = {
        "timeout_seconds": config.provider_timeout_seconds,
        "sleep": sleep,
        "logger": logger,
    }

    if config.simulate:
        rng = rng or random.Random()
        registry = ProviderRegistry()
        for channel, profile in CHANNEL_PROFILES.items():
            registry.register(
                channel,
                SimulatedProvider(
                    profile, config.channel_settings(channel), rng=rng, **common
                ),
            )
        return registry

    http_config = http_config or HttpProviderConfig()
    client = http_client or create_http_client(
        http_config, config.provider_timeout_seconds
    )
    registry = ProviderRegistry(http_client=client)
    for channel, profile in CHANNEL_PROFILES.items():
        registry.register(
            channel,
            HttpProvider(
                profile,
                config.channel_settings(channel),
                client=client,
                path=http_config.path_for_channel(channel),
                **common,
            ),
        )
    return registry
