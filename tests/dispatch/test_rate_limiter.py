"""Tests for the Redis sliding window rate limiter."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from comms_shared.enums import Channel

from comms_dispatch.config import RateLimitConfig
from comms_dispatch.rate_limiter import RateLimiter


def _limiter(script_result: int) -> tuple[RateLimiter, MagicMock, AsyncMock]:
    redis = MagicMock()
    redis.aclose = AsyncMock()
    script = AsyncMock(return_value=script_result)
    redis.register_script.return_value = script
    limiter = RateLimiter(
        redis, RateLimitConfig(sms_per_minute=5), clock=lambda: 1000.0
    )
    return limiter, redis, script


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_slot_granted(self) -> None:
        limiter, redis, script = _limiter(1)

        assert await limiter.acquire(Channel.SMS) is True
        redis.register_script.assert_called_once()
        script.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slot_denied(self) -> None:
        limiter, _, _ = _limiter(0)

        assert await limiter.acquire(Channel.SMS) is False

    @pytest.mark.asyncio
    async def test_script_arguments(self) -> None:
        limiter, _, script = _limiter(1)

        await limiter.acquire(Channel.SMS)

        kwargs = script.await_args.kwargs
        assert kwargs["keys"] == ["ratelimit:sms"]
        window_start, limit, now, member, ttl = kwargs["args"]
        assert (window_start, limit, now, ttl) == (940.0, 5, 1000.0, 61)
        assert member

    @pytest.mark.asyncio
    async def test_members_are_unique(self) -> None:
        limiter, _, script = _limiter(1)

        await limiter.acquire(Channel.PUSH)
        await limiter.acquire(Channel.PUSH)

        members = {c.kwargs["args"][3] for c in script.await_args_list}
        assert len(members) == 2

    @pytest.mark.asyncio
    async def test_unknown_channel(self) -> None:
        limiter, _, _ = _limiter(1)

        with pytest.raises(ValueError):
            await limiter.acquire("fax")

    @pytest.mark.asyncio
    async def test_aclose(self) -> None:
        limiter, redis, _ = _limiter(1)

        await limiter.aclose()

        redis.aclose.assert_awaited_once()


class TestRateLimitConfig:
    def test_limits_per_channel(self) -> None:
        config = RateLimitConfig()

        assert config.limit_for_channel(Channel.SMS) == 600
        assert config.limit_for_channel(Channel.TELEGRAM) == 1800

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
        monkeypatch.setenv("RATE_LIMIT_SMS_PER_MINUTE", "30")

        config = RateLimitConfig()

        assert config.enabled is True
        assert config.limit_for_channel(Channel.SMS) == 30
