from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from portalauth.logging import get_logger
from portalauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def _translate_errors(operation: str) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Re-raise redis client failures as StoreUnavailable.

    Connection refusals and socket timeouts must never look like an empty
    result to callers.
    """

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(self: "RedisCache", *args: Any, **kwargs: Any) -> T:
            try:
                return await fn(self, *args, **kwargs)
            except RedisError as exc:
                logger.error(
                    "redis_operation_failed",
                    operation=operation,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise StoreUnavailable(
                    f"key-value store unavailable during {operation}", operation=operation
                ) from exc

        return wrapper

    return decorator


class RedisCache:
    """Thin Redis wrapper exposing the primitives the session layer needs."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Update hash fields only while the key still exists, so a late write can
    # never recreate a purged session without a TTL.
    _HSET_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._hset_if_exists = self.client.register_script(self._HSET_IF_EXISTS_SCRIPT)

    @_translate_errors("connect")
    async def connect(self) -> None:
        """Assert Redis connectivity before serving requests."""
        await self.client.ping()
        logger.info("redis_connected")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self.client.aclose()

    @_translate_errors("set")
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=ttl_seconds)

    @_translate_errors("get")
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_translate_errors("exists")
    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    @_translate_errors("hset_with_ttl")
    async def hset_with_ttl(
        self, key: str, mapping: Mapping[str, str], ttl_seconds: int
    ) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=dict(mapping))
            pipe.expire(key, ttl_seconds)
            await pipe.execute()

    @_translate_errors("hgetall")
    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self.client.hgetall(key) or {}

    @_translate_errors("hset_if_exists")
    async def hset_if_exists(self, key: str, mapping: Mapping[str, str]) -> bool:
        args: list[str] = []
        for field_name, value in mapping.items():
            args.extend([field_name, value])
        if not args:
            return await self.exists(key)
        updated = await self._hset_if_exists(keys=[key], args=args)
        return bool(int(updated))

    @_translate_errors("expire")
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    @_translate_errors("sadd")
    async def sadd(self, key: str, member: str) -> None:
        await self.client.sadd(key, member)

    @_translate_errors("srem")
    async def srem(self, key: str, member: str) -> None:
        await self.client.srem(key, member)

    @_translate_errors("smembers")
    async def smembers(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))
