"""Simulated provider: no network, configurable failure injection."""

import asyncio
import math
import random
import string
import time
from collections.abc import Callable, Sequence
from typing import Any

from comms_shared.schemas import NotificationRequest

from comms_dispatch.config import ChannelSettings
from comms_dispatch.providers.base import (
    BaseChannelProvider,
    ChannelProfile,
    ProviderResult,
)

_ID_ALPHABET = string.ascii_lowercase + string.digits


class SimulatedProvider(BaseChannelProvider):
    """Provider that fabricates outcomes from ``settings.success_rate``.

    Pass a seeded ``random.Random`` for deterministic tests.  Each call
    still suspends (``latency_seconds``, default a bare yield) so
    concurrency behaves like real I/O.
    """

    def __init__(
        self,
        profile: ChannelProfile,
        settings: ChannelSettings,
        *,
        rng: random.Random | None = None,
        latency_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
        **kwargs: Any,
    ) -> None:
        super().__init__(profile, settings, **kwargs)
        self._rng = rng or random.Random()
        self._latency = latency_seconds
        self._clock = clock

    def _message_id(self) -> str:
        suffix = "".join(self._rng.choices(_ID_ALPHABET, k=6))
        millis = int(self._clock() * 1000)
        return f"sim_{self._profile.message_id_prefix}_{millis}_{suffix}"

    async def _transmit(
        self, request: NotificationRequest, payload: dict[str, Any]
    ) -> ProviderResult:
        await asyncio.sleep(self._latency)
        if self._rng.random() < self._settings.success_rate:
            return ProviderResult(
                success=True,
                provider_message_id=self._message_id(),
                cost=self.estimate_cost(request),
                raw_response={
                    "simulated": True,
                    "status": "sent",
                    "channel": str(self.channel),
                    "payload": payload,
                },
            )
        return ProviderResult.failure(
            f"Simulated {self.channel} failure",
            raw_response={"simulated": True, "error": self._profile.simulated_error},
        )

    async def _transmit_multicast(
        self,
        requests: Sequence[NotificationRequest],
        payloads: Sequence[dict[str, Any]],
    ) -> list[ProviderResult]:
        """One call for many tokens; on the failure roll a subset of recipients fail."""
        await asyncio.sleep(self._latency)
        count = len(requests)
        multicast_id = self._message_id()

        failed: set[int] = set()
        if self._rng.random() >= self._settings.success_rate:
            failure_count = max(1, math.floor(count * self._settings.partial_failure_ratio))
            failed = set(self._rng.sample(range(count), min(failure_count, count)))

        status = "partial_success" if failed else "sent"
        results: list[ProviderResult] = []
        for index, request in enumerate(requests):
            raw = {
                "simulated": True,
                "status": status,
                "multicast_id": multicast_id,
                "recipient_count": count,
                "failures": len(failed),
            }
            if index in failed:
                results.append(
                    ProviderResult.failure(self._profile.simulated_error, raw_response=raw)
                )
            else:
                results.append(
                    ProviderResult(
                        success=True,
                        provider_message_id=f"{multicast_id}_{index}",
                        cost=self.estimate_cost(request),
                        raw_response=raw,
                    )
                )
        return results
