from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol

_redis_from_url: Any | None

try:
    from redis.asyncio import from_url as _redis_from_url
except ImportError:  # pragma: no cover - optional dependency.
    _redis_from_url = None

if TYPE_CHECKING:
    import logging


class AsyncKeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def get_many(self, keys: Sequence[str]) -> list[str | None]: ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_prepend(self, key: str, value: str, max_length: int) -> None: ...

    async def list_range(self, key: str, limit: int) -> list[str]: ...


class KeyValueStoreFactory(Protocol):
    def __call__(self, redis_url: str) -> AsyncKeyValueStore: ...


class InMemoryKeyValueStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._values: dict[str, tuple[float | None, str]] = {}

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._get_locked(key)

    async def get_many(self, keys: Sequence[str]) -> list[str | None]:
        async with self._lock:
            return [self._get_locked(key) for key in keys]

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        async with self._lock:
            self._prune_locked()
            self._values[key] = (expires_at, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)

    async def list_prepend(self, key: str, value: str, max_length: int) -> None:
        # Read-modify-write under the store lock so concurrent appends never drop entries.
        async with self._lock:
            raw = self._get_locked(key)
            items = _decode_list(raw)
            items.insert(0, value)
            del items[max(1, max_length) :]
            self._values[key] = (None, json.dumps(items))

    async def list_range(self, key: str, limit: int) -> list[str]:
        async with self._lock:
            items = _decode_list(self._get_locked(key))
        return items[: max(0, limit)]

    def _get_locked(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return value

    def _prune_locked(self) -> None:
        now = self._clock()
        expired = [
            key
            for key, (expires_at, _) in self._values.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            self._values.pop(key, None)


class RedisKeyValueStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def get(self, key: str) -> str | None:
        return _decode(await self._redis.get(key))

    async def get_many(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        values = await self._redis.mget(list(keys))
        return [_decode(value) for value in values]

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if ttl_seconds:
            await self._redis.set(key, value, ex=int(ttl_seconds))
        else:
            await self._redis.set(key, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def list_prepend(self, key: str, value: str, max_length: int) -> None:
        async with self._redis.pipeline(transaction=True) as pipeline:
            pipeline.lpush(key, value)
            pipeline.ltrim(key, 0, max(1, max_length) - 1)
            await pipeline.execute()

    async def list_range(self, key: str, limit: int) -> list[str]:
        if limit <= 0:
            return []
        values = await self._redis.lrange(key, 0, limit - 1)
        return [decoded for value in values if (decoded := _decode(value)) is not None]

    async def ping(self) -> None:
        await self._redis.ping()

    async def close(self) -> None:
        await self._redis.aclose()


def build_redis_key_value_store(redis_url: str) -> AsyncKeyValueStore:
    if _redis_from_url is None:  # pragma: no cover - covered by fallback tests.
        msg = "redis package is not installed"
        raise RuntimeError(msg)
    client = _redis_from_url(redis_url, decode_responses=False)
    return RedisKeyValueStore(redis_client=client)


def build_key_value_store(
    redis_url: str | None = None,
    logger: logging.Logger | None = None,
    create_key_value_store: KeyValueStoreFactory | None = None,
) -> AsyncKeyValueStore:
    if not redis_url:
        return InMemoryKeyValueStore()

    factory = create_key_value_store or build_redis_key_value_store
    try:
        return factory(redis_url)
    except RuntimeError as exc:
        if logger is not None:
            logger.warning(
                "kv_redis_unavailable reason=%s fallback=in_memory",
                str(exc),
            )
        return InMemoryKeyValueStore()


async def ensure_reachable(
    kv: AsyncKeyValueStore,
    logger: logging.Logger | None = None,
) -> AsyncKeyValueStore:
    """Ping a Redis-backed store once; fall back to memory when it cannot be reached.

    ``redis.asyncio.from_url`` connects lazily, so a bad URL or a down server
    only shows up on the first command.
    """
    if not isinstance(kv, RedisKeyValueStore):
        return kv
    try:
        await kv.ping()
    except Exception as exc:
        if logger is not None:
            logger.warning(
                "kv_redis_unreachable error=%s fallback=in_memory",
                str(exc) or exc.__class__.__name__,
            )
        return InMemoryKeyValueStore()
    return kv


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, str):
        return value
    return None


def _decode_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        payload = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(payload, list):
        return []
    return [str(item) for item in payload]
