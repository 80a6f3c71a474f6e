"""Tests for the in-memory store: TTL expiry, sweep, atomic take, namespacing."""

import asyncio
import threading
import time

import pytest

from latchkey.storage.base import NOT_FOUND, Store, StoreNamespace
from latchkey.storage.memory import SWEEP_BATCH_SIZE, MemoryStore


class TestBasicOperations:
    async def test_put_then_get_returns_value(self, store):
        await store.put("k", {"user_id": "1"})
        assert await store.get("k") == {"user_id": "1"}

    async def test_missing_key_is_not_found(self, store):
        value = await store.get("missing")
        assert value is NOT_FOUND
        assert not value

    async def test_delete_missing_key_is_noop(self, store):
        await store.delete("missing")
        assert len(store) == 0

    async def test_put_overwrites(self, store):
        await store.put("k", "first")
        await store.put("k", "second")
        assert await store.get("k") == "second"

    async def test_rejects_non_positive_ttl(self, store):
        with pytest.raises(ValueError):
            await store.put("k", "v", 0)
        with pytest.raises(ValueError):
            await store.put("k", "v", -5)

    def test_satisfies_store_protocol(self, store):
        assert isinstance(store, Store)


class TestExpiry:
    async def test_value_visible_before_ttl(self, store, clock):
        await store.put("k", "v", 10)
        clock.advance(9.9)
        assert await store.get("k") == "v"

    async def test_expired_value_never_returned(self, store, clock):
        await store.put("k", "v", 10)
        clock.advance(10)
        assert await store.get("k") is NOT_FOUND
        assert len(store) == 0

    async def test_no_ttl_never_expires(self, store, clock):
        await store.put("k", "v")
        clock.advance(10 ** 9)
        assert await store.get("k") == "v"

    async def test_expiry_with_real_clock(self):
        real = MemoryStore()
        await real.put("k", "v", 1)
        await asyncio.sleep(1.1)
        assert await real.get("k") is NOT_FOUND


class TestSweep:
    async def test_sweep_removes_only_expired(self, store, clock):
        await store.put("short", "v", 5)
        await store.put("long", "v", 500)
        await store.put("forever", "v")
        clock.advance(10)

        removed = await store.sweep()

        assert removed == 1
        assert len(store) == 2
        assert await store.get("long") == "v"

    async def test_sweep_spans_several_batches(self, store, clock):
        total = SWEEP_BATCH_SIZE * 2 + 7
        for index in range(total):
            await store.put(f"k{index}", index, 1)
        clock.advance(2)

        assert await store.sweep() == total
        assert len(store) == 0

    async def test_large_sweep_does_not_stall_foreground_reads(self, store, clock):
        total = SWEEP_BATCH_SIZE * 100
        for index in range(total):
            await store.put(f"k{index}", index, 1)
        await store.put("other", "v")
        clock.advance(2)
        gaps = []
        finished = asyncio.Event()

        async def reader():
            last = time.perf_counter()
            while not finished.is_set():
                assert await store.get("other") == "v"
                await asyncio.sleep(0)
                now = time.perf_counter()
                gaps.append(now - last)
                last = now

        task = asyncio.create_task(reader())
        await asyncio.sleep(0)
        removed = await store.sweep()
        finished.set()
        await task

        assert removed == total
        assert len(gaps) > 10
        assert max(gaps) < 0.05

    async def test_open_runs_periodic_sweep(self, clock):
        swept = MemoryStore(sweep_interval=0.05, clock=clock)
        await swept.put("k", "v", 1)
        clock.advance(5)
        await swept.open()
        try:
            await asyncio.sleep(0.2)
            assert len(swept) == 0
        finally:
            await swept.close()
        assert swept._task is None

    async def test_close_keeps_entries(self, store):
        await store.open()
        await store.put("k", "v")
        await store.close()
        assert await store.get("k") == "v"


class TestTake:
    async def test_take_returns_and_removes(self, store):
        await store.put("token", "42")
        assert await store.take("token") == "42"
        assert await store.get("token") is NOT_FOUND
        assert await store.take("token") is NOT_FOUND

    async def test_take_expired_is_not_found(self, store, clock):
        await store.put("token", "42", 3)
        clock.advance(3)
        assert await store.take("token") is NOT_FOUND

    def test_concurrent_take_yields_single_winner(self):
        shared = MemoryStore()
        asyncio.run(shared.put("token", "42"))
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            value = asyncio.run(shared.take("token"))
            with results_lock:
                results.append(value)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert [value for value in results if value is not NOT_FOUND] == ["42"]


class TestNamespacing:
    async def test_namespaces_do_not_collide(self, store):
        sessions = StoreNamespace(store, "credentials")
        tokens = StoreNamespace(store, "persistent_session")
        await sessions.put("abc", "session-value")
        await tokens.put("abc", "token-value")

        assert await sessions.get("abc") == "session-value"
        assert await tokens.take("abc") == "token-value"
        assert await sessions.get("abc") == "session-value"

    async def test_prefix_isolates_deployments(self, clock):
        one = MemoryStore(prefix="one", clock=clock)
        await one.put("k", "v")
        assert "one:k" in one._entries
        assert await one.namespaced("ns").get("k") is NOT_FOUND
