from __future__ import annotations

import asyncio

import fakeredis
import pytest

from keyguard.core.config import settings
from keyguard.services import rate_limit as rl
from keyguard.services.rate_limit import InMemoryRateLimitStore, RedisRateLimitStore


class DummyRedis:
    """Implements the counter script against a dict, as the server would."""

    def __init__(self):
        self.hashes = {}
        self.closed = False
        self.scripts = []

    def register_script(self, script):
        self.scripts.append(script)

        async def run(keys, args):
            key = keys[0]
            now, window, max_requests = (int(a) for a in args)
            entry = self.hashes.get(key)
            if entry and entry["reset"] > now:
                if entry["count"] >= max_requests:
                    return [0, entry["count"], entry["reset"]]
                entry["count"] += 1
                return [1, entry["count"], entry["reset"]]
            self.hashes[key] = {"count": 1, "reset": now + window}
            return [1, 1, now + window]

        return run

    async def aclose(self):
        self.closed = True


class BrokenRedis(DummyRedis):
    def register_script(self, script):
        async def run(keys, args):
            raise ConnectionError("connection refused")

        return run


class SlowRedis(DummyRedis):
    def register_script(self, script):
        async def run(keys, args):
            await asyncio.sleep(1)
            return [1, 1, 0]

        return run


@pytest.mark.asyncio
async def test_redis_store_follows_fixed_window():
    now = {"t": 5_000}
    client = DummyRedis()
    store = RedisRateLimitStore(client, clock=lambda: now["t"])

    results = [await store.check("user:7:reports", 10_000, 3) for _ in range(4)]
    assert [r.ok for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert all(r.reset == 15_000 for r in results)
    assert not any(r.degraded for r in results)
    # rejection did not increment the stored counter
    assert client.hashes["rl:user:7:reports"]["count"] == 3

    now["t"] = 15_000
    again = await store.check("user:7:reports", 10_000, 3)
    assert again.ok is True
    assert again.remaining == 2


@pytest.mark.asyncio
async def test_redis_store_fails_open_on_error():
    store = RedisRateLimitStore(BrokenRedis(), clock=lambda: 1_000)
    res = await store.check("ip:1.1.1.1:auth", 60_000, 5)
    assert res.ok is True
    assert res.remaining == 4
    assert res.reset == 61_000
    assert res.degraded is True


@pytest.mark.asyncio
async def test_redis_store_fails_open_on_timeout():
    store = RedisRateLimitStore(SlowRedis(), timeout_seconds=0.01, clock=lambda: 0)
    res = await store.check("k", 1_000, 2)
    assert res.ok is True
    assert res.degraded is True


@pytest.mark.asyncio
async def test_redis_store_close_closes_client():
    client = DummyRedis()
    store = RedisRateLimitStore(client)
    await store.close()
    assert client.closed is True


def test_build_store_prefers_redis_when_configured(monkeypatch):
    created = {}

    def fake_client(url, token=None, timeout_seconds=0.5):
        created.update(url=url, token=token)
        return DummyRedis()

    monkeypatch.setattr(rl, "create_redis_client", fake_client)
    cfg = settings.model_copy(update={"RATE_LIMIT_REDIS_URL": "rediss://cache.example:6379", "RATE_LIMIT_REDIS_TOKEN": "tok"})
    store = rl.build_rate_limit_store(cfg)
    assert isinstance(store, RedisRateLimitStore)
    assert created == {"url": "rediss://cache.example:6379", "token": "tok"}


def test_build_store_defaults_to_memory():
    cfg = settings.model_copy(update={"RATE_LIMIT_REDIS_URL": None, "RATE_LIMIT_MAX_KEYS": 50})
    store = rl.build_rate_limit_store(cfg)
    assert isinstance(store, InMemoryRateLimitStore)
    assert store.max_keys == 50


@pytest.mark.asyncio
async def test_counter_script_runs_atomically_on_redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    now = {"t": 1_760_000_000_000}
    store = RedisRateLimitStore(client, clock=lambda: now["t"])

    results = [await store.check("user:42:receipts", 60_000, 5) for _ in range(5)]
    assert [r.remaining for r in results] == [4, 3, 2, 1, 0]
    assert all(r.ok and not r.degraded for r in results)

    rejected = await store.check("user:42:receipts", 60_000, 5)
    assert (rejected.ok, rejected.remaining, rejected.reset) == (False, 0, 1_760_000_060_000)
    for _ in range(5):
        assert (await store.check("user:42:receipts", 60_000, 5)).ok is False
    assert await client.hget("rl:user:42:receipts", "count") == "5"
    assert 0 < await client.pttl("rl:user:42:receipts") <= 60_000

    now["t"] += 60_000
    fresh = await store.check("user:42:receipts", 60_000, 5)
    assert (fresh.ok, fresh.remaining, fresh.reset) == (True, 4, 1_760_000_120_000)
    await store.close()
