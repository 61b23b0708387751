"""Redis store implementation using redis.asyncio."""

from __future__ import annotations

import redis.asyncio as redis
import structlog

from vmpool.store.base import Store

logger = structlog.get_logger()

_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisStore(Store):
    """Store backed by a Redis server."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._client: redis.Redis = redis.from_url(url, decode_responses=True)
        self._compare_and_delete = self._client.register_script(_COMPARE_AND_DELETE)
        self._log = logger.bind(store="redis")

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        self._log.debug("redis.close")
        await self._client.aclose()

    async def sadd(self, key: str, member: str) -> bool:
        return bool(await self._client.sadd(key, member))

    async def srem(self, key: str, member: str) -> bool:
        return bool(await self._client.srem(key, member))

    async def smove(self, src: str, dst: str, member: str) -> bool:
        return bool(await self._client.smove(src, dst, member))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._client.sismember(key, member))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._client.smembers(key))

    async def scard(self, key: str) -> int:
        return int(await self._client.scard(key))

    async def spop(self, key: str) -> str | None:
        return await self._client.spop(key)

    async def hget(self, key: str, field: str) -> str | None:
        return await self._client.hget(key, field)

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._client.hset(key, field, value)

    async def hdel(self, key: str, field: str) -> None:
        await self._client.hdel(key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._client.hgetall(key))

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(
        self,
        key: str,
        value: str,
        *,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool:
        result = await self._client.set(key, value, ex=ex, nx=nx)
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def delete_if_equal(self, key: str, value: str) -> bool:
        return bool(await self._compare_and_delete(keys=[key], args=[value]))

    async def incr(self, key: str) -> int:
        return int(await self._client.incr(key))

    async def decr(self, key: str) -> int:
        return int(await self._client.decr(key))

    async def expire(self, key: str, seconds: int) -> None:
        await self._client.expire(key, seconds)
