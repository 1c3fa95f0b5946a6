"""Redis sliding window rate limiter shared by all dispatch instances."""

import time
import uuid
from collections.abc import Callable

from redis.asyncio import Redis

from comms_dispatch.config import RateLimitConfig

# Trims expired entries, checks count, and conditionally adds a new member
# in a single EVAL, so concurrent workers cannot both take the last slot.
_RATE_LIMIT_LUA = """
local key = KEYS[1]
local window_start = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start)
local count = redis.call('ZCARD', key)
if count >= limit then
    return 0
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, ttl)
return 1
"""


class RateLimiter:
    """Per-channel rate limiter using Redis sorted sets (sliding window).

    Each send attempt is recorded as a member in a sorted set keyed by
    channel name, scored by UNIX timestamp.  Before allowing a new attempt
    the window is trimmed and the current count compared against the
    channel's configured limit.
    """

    KEY_PREFIX = "ratelimit"

    def __init__(
        self,
        redis_client: Redis,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis_client
        self._config = config
        self._clock = clock
        self._script = self._redis.register_script(_RATE_LIMIT_LUA)

    async def acquire(self, channel: str) -> bool:
        """Try to acquire a slot for *channel*.

        Returns True if the attempt is allowed, False if the limit has
        been reached for the current window.
        """
        key = f"{self.KEY_PREFIX}:{channel}"
        now = self._clock()
        window_start = now - self._config.window_seconds
        limit = self._config.limit_for_channel(channel)
        ttl = self._config.window_seconds + 1

        result = await self._script(
            keys=[key],
            args=[window_start, limit, now, str(uuid.uuid4()), ttl],
        )
        return bool(result)

    async def aclose(self) -> None:
        await self._redis.aclose()
