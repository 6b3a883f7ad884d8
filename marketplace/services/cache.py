from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketplace.utils.logger import get_logger

logger = get_logger("cache")


class RedisCache:
    """Thin Redis wrapper for OTP codes, OTP rate counters and refresh tokens.

    Values are plain strings. INCR is atomic on the server, which is what the OTP
    rate limiter relies on; SET overwrites, which is what the single refresh
    token per user relies on (last writer wins).
    """

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, *, socket_timeout: float = 5.0) -> "RedisCache":
        safe_url = redis_url
        if "@" in redis_url:
            # hide credentials
            scheme, _, rest = redis_url.partition("://")
            safe_url = f"{scheme}://***@{rest.split('@', 1)[1]}"
        logger.info(f"Connecting to Redis via URL: {safe_url}")
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self.client.set(key, value, ex=int(ttl_seconds))
        else:
            await self.client.set(key, value)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> int:
        return await self.client.delete(key)

    async def incr(self, key: str) -> int:
        return await self.client.incr(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return await self.client.expire(key, int(seconds))

    async def ttl(self, key: str) -> int:
        return await self.client.ttl(key)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
