"""Channel provider interface, result types and the shared send pipeline."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from comms_shared.enums import Channel
from comms_shared.errors import InputError, TransientProviderError
from comms_shared.log import get_logger
from comms_shared.schemas import NotificationRequest

from comms_dispatch.config import ChannelSettings

INVALID_ADDRESS = "invalid address"

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ProviderResult:
    """Outcome of one provider call for one recipient."""

    success: bool
    provider_message_id: str | None = None
    cost: Decimal | None = None
    error_message: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)
    # False for input defects that a re-attempt cannot fix.
    retryable: bool = True

    @classmethod
    def failure(
        cls,
        error_message: str,
        *,
        raw_response: dict[str, Any] | None = None,
        retryable: bool = True,
    ) -> "ProviderResult":
        return cls(
            success=False,
            error_message=error_message,
            raw_response=raw_response or {},
            retryable=retryable,
        )


@dataclass(frozen=True, slots=True)
class MulticastResult:
    """Outcome of a multicast (push) call: one result per recipient, in order.

    Counts are derived from ``results`` so they always add up to the
    recipient count.
    """

    results: tuple[ProviderResult, ...]
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def recipient_count(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def is_partial(self) -> bool:
        return 0 < self.failure_count < self.recipient_count


def _identity(address: str) -> str:
    return address


def _flat_multiplier(
    _request: NotificationRequest, _settings: ChannelSettings
) -> Decimal:
    return Decimal("1")


@dataclass(frozen=True, slots=True)
class ChannelProfile:
    """Per-channel strategy: address rules, payload shape, cost model."""

    channel: Channel
    message_id_prefix: str
    validate: Callable[[str], bool]
    build_payload: Callable[[NotificationRequest, str], dict[str, Any]]
    normalize: Callable[[str], str] = _identity
    cost_multiplier: Callable[
        [NotificationRequest, ChannelSettings], Decimal
    ] = _flat_multiplier
    simulated_error: str = "Simulated provider failure"
    multicast: bool = False


def chunked(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    """Split *items* into consecutive slices of at most *size* elements."""
    return [items[i : i + size] for i in range(0, len(items), size)]


class ChannelProvider(ABC):
    """Uniform send contract for one channel."""

    channel: Channel

    @property
    @abstractmethod
    def settings(self) -> ChannelSettings:
        """Batching, simulation and cost parameters in effect."""

    @property
    def supports_multicast(self) -> bool:
        return False

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """Return True if *address* is syntactically valid for this channel."""

    @abstractmethod
    def estimate_cost(self, request: NotificationRequest, count: int = 1) -> Decimal:
        """Cost of sending *request* to *count* recipients."""

    @abstractmethod
    async def send(self, request: NotificationRequest) -> ProviderResult:
        """Attempt to deliver a notification.

        Implementations must not raise: return
        ``ProviderResult(success=False)`` on failure instead.
        """

    @abstractmethod
    async def send_bulk(
        self, requests: Sequence[NotificationRequest]
    ) -> list[ProviderResult]:
        """Send many requests, chunked by the channel batch size."""

    async def send_multicast(
        self, requests: Sequence[NotificationRequest]
    ) -> MulticastResult:
        raise NotImplementedError(f"{self.channel} does not support multicast")


class BaseChannelProvider(ChannelProvider):
    """Validation, batching, timeouts and error conversion shared by providers.

    Subclasses only implement the transmission of an already validated
    payload (``_transmit`` and optionally ``_transmit_multicast``) and may
    raise freely there: everything is converted to ProviderResult values.
    """

    def __init__(
        self,
        profile: ChannelProfile,
        settings: ChannelSettings,
        *,
        timeout_seconds: float = 30.0,
        sleep: Sleep = asyncio.sleep,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.channel = profile.channel
        self._profile = profile
        self._settings = settings
        self._timeout = timeout_seconds
        self._sleep = sleep
        self._log = get_logger(__name__, logger, {"channel": str(profile.channel)})

    @property
    def settings(self) -> ChannelSettings:
        return self._settings

    @property
    def profile(self) -> ChannelProfile:
        return self._profile

    @property
    def supports_multicast(self) -> bool:
        return self._profile.multicast

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        return self._profile.validate(self._profile.normalize(address))

    def estimate_cost(self, request: NotificationRequest, count: int = 1) -> Decimal:
        multiplier = self._profile.cost_multiplier(request, self._settings)
        return self._settings.base_cost * multiplier * count

    async def send(self, request: NotificationRequest) -> ProviderResult:
        if not self.validate_address(request.recipient_address):
            self._log.warning(
                "Rejected invalid address",
                extra={"recipient": request.recipient_address},
            )
            return ProviderResult.failure(INVALID_ADDRESS, retryable=False)

        address = self._profile.normalize(request.recipient_address)
        payload, rejected = self._build_payload(request, address)
        if rejected is not None:
            return rejected
        try:
            return await asyncio.wait_for(
                self._transmit(request, payload), self._timeout
            )
        except TimeoutError:
            self._log.warning("Provider timed out", extra={"recipient": address})
            return ProviderResult.failure(
                f"provider timeout after {self._timeout}s"
            )
        except InputError as exc:
            return ProviderResult.failure(str(exc), retryable=False)
        except TransientProviderError as exc:
            self._log.warning(
                "Transient provider error",
                extra={"recipient": address, "reason": str(exc)},
            )
            return ProviderResult.failure(str(exc))
        except Exception as exc:
            self._log.exception("Provider error", extra={"recipient": address})
            return ProviderResult.failure(str(exc) or type(exc).__name__)

    async def send_bulk(
        self, requests: Sequence[NotificationRequest]
    ) -> list[ProviderResult]:
        results: list[ProviderResult] = []
        batches = chunked(list(requests), self._settings.batch_size)
        for index, batch in enumerate(batches):
            results.extend(await asyncio.gather(*(self.send(r) for r in batch)))
            if index < len(batches) - 1:
                await self._sleep(self._settings.batch_delay_seconds)
        return results

    async def send_multicast(
        self, requests: Sequence[NotificationRequest]
    ) -> MulticastResult:
        if not self.supports_multicast:
            return await super().send_multicast(requests)

        results: list[ProviderResult | None] = [None] * len(requests)
        valid: list[int] = []
        for index, request in enumerate(requests):
            if self.validate_address(request.recipient_address):
                valid.append(index)
            else:
                results[index] = ProviderResult.failure(
                    INVALID_ADDRESS, retryable=False
                )

        size = self._settings.sub_batch_size or max(len(valid), 1)
        sub_batches = chunked(valid, size)
        for position, indices in enumerate(sub_batches):
            batch = [requests[i] for i in indices]
            for index, result in zip(indices, await self._multicast_batch(batch)):
                results[index] = result
            if position < len(sub_batches) - 1:
                await self._sleep(self._settings.sub_batch_delay_seconds)

        outcome = MulticastResult(tuple(r for r in results if r is not None))
        if outcome.is_partial:
            self._log.info(
                "Multicast partially failed",
                extra={
                    "recipient_count": outcome.recipient_count,
                    "success_count": outcome.success_count,
                    "failure_count": outcome.failure_count,
                },
            )
        return outcome

    async def _multicast_batch(
        self, batch: Sequence[NotificationRequest]
    ) -> list[ProviderResult]:
        results: list[ProviderResult | None] = [None] * len(batch)
        buildable: list[int] = []
        payloads: list[dict[str, Any]] = []
        for index, request in enumerate(batch):
            address = self._profile.normalize(request.recipient_address)
            payload, rejected = self._build_payload(request, address)
            if rejected is not None:
                results[index] = rejected
            else:
                buildable.append(index)
                payloads.append(payload)
        if not buildable:
            return [r for r in results if r is not None]

        sent = await self._transmit_payloads([batch[i] for i in buildable], payloads)
        for index, result in zip(buildable, sent):
            results[index] = result
        return [r for r in results if r is not None]

    def _build_payload(
        self, request: NotificationRequest, address: str
    ) -> tuple[dict[str, Any], ProviderResult | None]:
        try:
            return self._profile.build_payload(request, address), None
        except (InputError, TypeError, ValueError, AttributeError) as exc:
            self._log.warning(
                "Rejected unbuildable payload",
                extra={"recipient": address, "reason": str(exc)},
            )
            return {}, ProviderResult.failure(
                f"invalid payload: {exc}", retryable=False
            )

    async def _transmit_payloads(
        self,
        batch: Sequence[NotificationRequest],
        payloads: Sequence[dict[str, Any]],
    ) -> list[ProviderResult]:
        try:
            results = await asyncio.wait_for(
                self._transmit_multicast(batch, payloads), self._timeout
            )
        except TimeoutError:
            reason = f"provider timeout after {self._timeout}s"
            return [ProviderResult.failure(reason) for _ in batch]
        except TransientProviderError as exc:
            self._log.warning("Transient multicast error", extra={"reason": str(exc)})
            return [ProviderResult.failure(str(exc)) for _ in batch]
        except Exception as exc:
            self._log.exception("Multicast provider error")
            reason = str(exc) or type(exc).__name__
            return [ProviderResult.failure(reason) for _ in batch]

        if len(results) != len(batch):
            reason = (
                f"provider returned {len(results)} results for {len(batch)} recipients"
            )
            self._log.error("Multicast result count mismatch", extra={"reason": reason})
            return [ProviderResult.failure(reason) for _ in batch]
        return list(results)

    @abstractmethod
    async def _transmit(
        self, request: NotificationRequest, payload: dict[str, Any]
    ) -> ProviderResult:
        """Hand one validated payload to the backing service."""

    async def _transmit_multicast(
        self,
        requests: Sequence[NotificationRequest],
        payloads: Sequence[dict[str, Any]],
    ) -> list[ProviderResult]:
        return list(
            await asyncio.gather(
                *(self._transmit(r, p) for r, p in zip(requests, payloads))
            )
        )
