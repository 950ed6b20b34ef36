"""Fixed-window request throttling backed by Redis.

Used to slow down password guessing on the login endpoint. Each window is
a single counter key ``ratelimit:{scope}:{identity}`` that expires when the
window closes, so all API replicas share one budget per client.
"""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int
    retry_after: int


class FixedWindowRateLimiter:
    """Counts hits per identity and rejects once ``limit`` is exceeded.

    Args:
        redis_client: Async Redis client (decode_responses=True).
        scope: Key namespace, e.g. "login".
        limit: Allowed hits per window.
        window_seconds: Window length.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        scope: str,
        limit: int,
        window_seconds: int,
    ) -> None:
        self._redis = redis_client
        self._scope = scope
        self._limit = limit
        self._window = window_seconds

    def _key(self, identity: str) -> str:
        return f"ratelimit:{self._scope}:{identity}"

    async def hit(self, identity: str) -> RateLimitResult:
        """Record one hit for ``identity`` and report whether it is allowed.

        Redis outages fail open: login stays available and the outage is
        logged, since the password check still guards the endpoint.
        """
        key = self._key(identity)
        try:
            count = int(await self._redis.incr(key))
            if count == 1:
                await self._redis.expire(key, self._window)
            ttl = int(await self._redis.ttl(key))
            if ttl < 0:
                # Counter survived without a TTL (crash between INCR and EXPIRE)
                await self._redis.expire(key, self._window)
                ttl = self._window
        except RedisError:
            logger.warning("rate_limit.backend_unavailable", scope=self._scope, exc_info=True)
            return RateLimitResult(allowed=True, count=0, retry_after=0)

        allowed = count <= self._limit
        if not allowed:
            logger.warning(
                "rate_limit.exceeded",
                scope=self._scope,
                identity=identity,
                count=count,
                limit=self._limit,
            )
        return RateLimitResult(allowed=allowed, count=count, retry_after=ttl if not allowed else 0)

    async def reset(self, identity: str) -> None:
        """Forget the counter for ``identity`` (after a successful login)."""
        try:
            await self._redis.delete(self._key(identity))
        except RedisError:
            logger.warning("rate_limit.reset_failed", scope=self._scope, exc_info=True)
