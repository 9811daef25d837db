"""
Sliding-window rate limiting on Redis.

Guards like toggles (keyed per user) and view recording (keyed per client
IP). State lives in Redis so the limit holds across every worker and
instance, not per process.
"""

import math
import time
import uuid
import logging
from dataclasses import dataclass

from utils.async_redis_utils import AsyncRedisService

logger = logging.getLogger(__name__)


# KEYS[1] = window zset
# ARGV[1] = now (ms), ARGV[2] = window (ms), ARGV[3] = limit, ARGV[4] = member
# Returns {allowed, remaining, retry_after_ms}
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local used = redis.call('ZCARD', key)

if used < limit then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, window)
    return {1, limit - used - 1, 0}
end

local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
local retry_after = window
if oldest[2] then
    retry_after = tonumber(oldest[2]) + window - now
end
return {0, 0, retry_after}
"""


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: int  # seconds until the next call would be admitted


class SlidingWindowRateLimiter:
    """
    Sliding-window limiter: at most ``limit`` calls per ``window`` seconds.

    Algorithm:
        - One Redis sorted set per identifier, scored by call time (ms)
        - On limit(): drop entries older than the window, count the rest
        - If under limit: record this call and admit it
        - If at/over limit: reject without recording, report retry-after

    The check-and-record runs as one Lua script so concurrent callers on
    different workers cannot both slip under the limit.

    Args:
        redis_service: Connected AsyncRedisService
        limit: Max calls per identifier per window
        window: Window length in seconds
        prefix: Key prefix, e.g. ``ratelimit:like``
    """

    def __init__(
        self,
        redis_service: AsyncRedisService,
        limit: int,
        window: int = 60,
        prefix: str = "ratelimit",
    ):
        self.redis_service = redis_service
        self.limit = limit
        self.window = window
        self.prefix = prefix
        self._script = None

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}:{identifier}"

    async def limit_call(self, identifier: str) -> RateLimitResult:
        """
        Count one call for ``identifier`` if the window allows it.

        Args:
            identifier: User id or client IP

        Returns:
            RateLimitResult; ``allowed`` is False when the call was rejected
        """
        if self._script is None:
            self._script = self.redis_service.client.register_script(SLIDING_WINDOW_SCRIPT)

        now_ms = int(time.time() * 1000)
        member = f"{now_ms}:{uuid.uuid4().hex}"
        allowed, remaining, retry_after_ms = await self._script(
            keys=[self._key(identifier)],
            args=[now_ms, self.window * 1000, self.limit, member],
        )

        if not allowed:
            logger.info(f"Rate limit hit for {self._key(identifier)}")

        return RateLimitResult(
            allowed=bool(allowed),
            remaining=int(remaining),
            retry_after=max(1, math.ceil(int(retry_after_ms) / 1000)) if not allowed else 0,
        )

    async def reset(self, identifier: str) -> None:
        """Forget every recorded call for ``identifier``."""
        await self.redis_service.delete(self._key(identifier))
