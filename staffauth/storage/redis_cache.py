from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the access-token denylist."""

    DENYLIST_PREFIX = "staffauth:access:denylist:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def ttl_until(expires_at: datetime) -> int:
        """Seconds from now until ``expires_at``, clamped at zero."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(0, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client keeps the async client off the
        # temporary event loop used during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        """Add an access token id to the denylist until the token would expire."""
        if ttl_seconds > 0:
            await self.client.set(f"{self.DENYLIST_PREFIX}{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{self.DENYLIST_PREFIX}{jti}"))

    async def close(self) -> None:
        await self.client.aclose()
