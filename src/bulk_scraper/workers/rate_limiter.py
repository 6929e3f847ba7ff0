"""Cluster-wide sliding window limiter for execution jobs.

Every execution worker shares one Redis sorted set per limiter key.  Each
acquired slot is a member scored with its acquisition time; a Lua script
drops members older than the window, counts the rest and adds the new
member only if the count is under the limit, all in one round trip.

Celery's per-worker ``rate_limit`` on the execution task is the outer cap;
this limiter is the inner one that holds across workers.

Typical usage::

    redis_client = await get_redis_client()
    limiter = RateLimiter(redis_client)
    await limiter.wait_for_slot(EXECUTION_RATE_LIMIT_KEY, 50, 60)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import redis.asyncio as aioredis

from bulk_scraper.core.exceptions import RateLimitTimeoutError

logger = logging.getLogger(__name__)

#: Upper bound on a single poll interval in :meth:`RateLimiter.wait_for_slot`.
MAX_POLL_SECONDS = 5.0

#: Seconds a window key outlives its window, so idle keys expire.
KEY_TTL_PADDING = 10

# KEYS[1]  sorted set for the window
# ARGV     now, window seconds, limit, member id, key ttl
# Returns 1 when the slot was taken, 0 when the window is full.
_SLIDING_WINDOW_SCRIPT = """
local now    = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit  = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
if redis.call('ZCARD', KEYS[1]) >= limit then
    return 0
end
redis.call('ZADD', KEYS[1], now, ARGV[4])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
return 1
"""


def poll_interval(max_calls: int, window_seconds: int) -> float:
    """Average spacing between slots in a window, capped at :data:`MAX_POLL_SECONDS`."""
    return min(window_seconds / max(max_calls, 1), MAX_POLL_SECONDS)


@dataclass
class RateLimiter:
    """Sliding window limiter over an explicit Redis key.

    Fails open: a Redis error grants the slot and is logged, so a limiter
    outage never stalls execution.

    Attributes:
        redis_client: An initialised ``redis.asyncio.Redis`` connection.
    """

    redis_client: aioredis.Redis
    _script: Any = field(default=None, init=False, repr=False)

    def _window_script(self) -> Any:
        # register_script handles EVALSHA and reloads the script on NOSCRIPT.
        if self._script is None:
            self._script = self.redis_client.register_script(_SLIDING_WINDOW_SCRIPT)
        return self._script

    async def acquire(self, key: str, max_calls: int, window_seconds: int) -> bool:
        """Take one slot in the window for *key*.

        Returns:
            ``True`` if the slot was taken (or Redis failed), ``False`` if
            the window is full.
        """
        try:
            taken = await self._window_script()(
                keys=[key],
                args=[
                    time.time(),
                    window_seconds,
                    max_calls,
                    uuid.uuid4().hex,
                    window_seconds + KEY_TTL_PADDING,
                ],
            )
        except Exception:
            logger.warning(
                "rate limiter: redis error for %s; allowing request", key, exc_info=True
            )
            return True
        return bool(taken)

    async def wait_for_slot(
        self,
        key: str,
        max_calls: int,
        window_seconds: int,
        timeout: float = 60.0,
    ) -> None:
        """Poll :meth:`acquire` until a slot is taken or *timeout* elapses.

        Raises:
            RateLimitTimeoutError: No slot was taken within *timeout*.
        """
        deadline = time.monotonic() + timeout
        interval = poll_interval(max_calls, window_seconds)
        while not await self.acquire(key, max_calls, window_seconds):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("rate limiter: no slot for %s within %ss", key, timeout)
                raise RateLimitTimeoutError(key=key, timeout=timeout)
            await asyncio.sleep(min(interval, remaining))


async def get_redis_client() -> aioredis.Redis:
    """Create an async Redis client from application settings.

    A client is bound to the event loop that first uses it, so callers that
    run under ``asyncio.run`` create one per run.
    """
    from bulk_scraper.config.settings import get_settings  # noqa: PLC0415

    return aioredis.from_url(get_settings().redis_url, decode_responses=True)
