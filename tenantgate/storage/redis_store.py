from __future__ import annotations

from typing import Optional, Set

import redis.asyncio as aioredis


class RedisStore:
    """Thin Redis wrapper implementing the credential store contract."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def set_if_absent(self, key: str, value: str) -> bool:
        return bool(await self.client.set(key, value, nx=True))

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def add_to_set(self, key: str, *members: str) -> int:
        return int(await self.client.sadd(key, *members))

    async def remove_from_set(self, key: str, *members: str) -> int:
        return int(await self.client.srem(key, *members))

    async def set_members(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the Redis connection pool on shutdown."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
