from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from chomp_gateway.runtime.kv import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    build_key_value_store,
    ensure_reachable,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_in_memory_store_expires_entries_with_ttl() -> None:
    clock = _Clock()
    store = InMemoryKeyValueStore(clock=clock)

    async def scenario() -> None:
        await store.set("job:t:1", "value", ttl_seconds=10)
        await store.set("user:t", "forever")
        assert await store.get("job:t:1") == "value"
        clock.now += 10
        assert await store.get("job:t:1") is None
        assert await store.get("user:t") == "forever"

    asyncio.run(scenario())


def test_in_memory_store_get_many_preserves_order_and_gaps() -> None:
    store = InMemoryKeyValueStore()

    async def scenario() -> list[str | None]:
        await store.set("a", "1")
        await store.set("c", "3")
        return await store.get_many(["c", "b", "a"])

    assert asyncio.run(scenario()) == ["3", None, "1"]


def test_in_memory_list_prepend_truncates_to_max_length() -> None:
    store = InMemoryKeyValueStore()

    async def scenario() -> list[str]:
        for index in range(5):
            await store.list_prepend("jobindex:t", f"id-{index}", max_length=3)
        return await store.list_range("jobindex:t", 10)

    assert asyncio.run(scenario()) == ["id-4", "id-3", "id-2"]


def test_in_memory_list_prepend_is_safe_under_concurrency() -> None:
    store = InMemoryKeyValueStore()

    async def scenario() -> list[str]:
        await asyncio.gather(
            *(store.list_prepend("jobindex:t", f"id-{i}", max_length=100) for i in range(50))
        )
        return await store.list_range("jobindex:t", 100)

    items = asyncio.run(scenario())
    assert len(items) == 50
    assert set(items) == {f"id-{i}" for i in range(50)}


def test_in_memory_delete_removes_key() -> None:
    store = InMemoryKeyValueStore()

    async def scenario() -> str | None:
        await store.set("user:t", "x")
        await store.delete("user:t")
        await store.delete("user:missing")
        return await store.get("user:t")

    assert asyncio.run(scenario()) is None


def test_build_key_value_store_without_url_is_in_memory() -> None:
    assert isinstance(build_key_value_store(None), InMemoryKeyValueStore)


def test_build_key_value_store_falls_back_when_redis_factory_fails(
    caplog: pytest.LogCaptureFixture,
) -> None:
    def failing_factory(redis_url: str) -> Any:
        _ = redis_url
        msg = "redis unavailable"
        raise RuntimeError(msg)

    logger = logging.getLogger("test.kv")
    with caplog.at_level(logging.WARNING, logger="test.kv"):
        store = build_key_value_store(
            redis_url="redis://localhost:6379/0",
            logger=logger,
            create_key_value_store=failing_factory,
        )
    assert isinstance(store, InMemoryKeyValueStore)
    assert "kv_redis_unavailable" in caplog.text


def test_build_key_value_store_uses_factory_when_available() -> None:
    sentinel = InMemoryKeyValueStore()

    store = build_key_value_store(
        redis_url="redis://localhost:6379/0",
        create_key_value_store=lambda _url: sentinel,
    )
    assert store is sentinel


class _FakePipeline:
    def __init__(self, redis: _FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        return None

    def lpush(self, key: str, value: str) -> None:
        self._ops.append(("lpush", (key, value)))

    def ltrim(self, key: str, start: int, stop: int) -> None:
        self._ops.append(("ltrim", (key, start, stop)))

    async def execute(self) -> None:
        self._redis.executed.append(list(self._ops))
        for name, args in self._ops:
            if name == "lpush":
                key, value = args
                self._redis.lists.setdefault(key, []).insert(0, value.encode())
            else:
                key, start, stop = args
                self._redis.lists[key] = self._redis.lists.get(key, [])[start : stop + 1]


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.expiry: dict[str, int] = {}
        self.lists: dict[str, list[bytes]] = {}
        self.executed: list[list[tuple[str, tuple[Any, ...]]]] = []
        self.transaction: bool | None = None
        self.reachable = True

    async def ping(self) -> bool:
        if not self.reachable:
            raise ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")
        return True

    async def get(self, key: str) -> bytes | None:
        return self.values.get(key)

    async def mget(self, keys: list[str]) -> list[bytes | None]:
        return [self.values.get(key) for key in keys]

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.values[key] = value.encode()
        if ex is not None:
            self.expiry[key] = ex

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        self.transaction = transaction
        return _FakePipeline(self)

    async def lrange(self, key: str, start: int, stop: int) -> list[bytes]:
        return self.lists.get(key, [])[start : stop + 1]


def test_redis_store_uses_transactional_pipeline_for_index() -> None:
    fake = _FakeRedis()
    store = RedisKeyValueStore(fake)

    async def scenario() -> list[str]:
        for index in range(4):
            await store.list_prepend("jobindex:t", f"id-{index}", max_length=2)
        return await store.list_range("jobindex:t", 10)

    assert asyncio.run(scenario()) == ["id-3", "id-2"]
    assert fake.transaction is True
    assert fake.executed[0] == [
        ("lpush", ("jobindex:t", "id-0")),
        ("ltrim", ("jobindex:t", 0, 1)),
    ]


def test_redis_store_sets_expiry_and_decodes_bytes() -> None:
    fake = _FakeRedis()
    store = RedisKeyValueStore(fake)

    async def scenario() -> tuple[str | None, list[str | None]]:
        await store.set("job:t:1", "payload", ttl_seconds=86400)
        return await store.get("job:t:1"), await store.get_many(["job:t:1", "job:t:2"])

    single, many = asyncio.run(scenario())
    assert single == "payload"
    assert many == ["payload", None]
    assert fake.expiry["job:t:1"] == 86400


def test_ensure_reachable_keeps_a_responding_redis_store() -> None:
    store = RedisKeyValueStore(_FakeRedis())
    assert asyncio.run(ensure_reachable(store)) is store


def test_ensure_reachable_falls_back_when_redis_refuses_connections(
    caplog: pytest.LogCaptureFixture,
) -> None:
    fake = _FakeRedis()
    fake.reachable = False
    logger = logging.getLogger("test.kv")

    with caplog.at_level(logging.WARNING, logger="test.kv"):
        store = asyncio.run(ensure_reachable(RedisKeyValueStore(fake), logger=logger))

    assert isinstance(store, InMemoryKeyValueStore)
    assert "kv_redis_unreachable" in caplog.text


def test_ensure_reachable_leaves_in_memory_store_alone() -> None:
    store = InMemoryKeyValueStore()
    assert asyncio.run(ensure_reachable(store)) is store
