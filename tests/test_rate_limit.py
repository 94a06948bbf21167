"""Sliding-window rate limiting over the in-process and Redis window stores."""

import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from stagekey.service.errors import ErrorKind, RateLimitedError
from stagekey.service.rate_limit import MemoryWindowStore, RateLimiter, SlidingWindowLimiter
from stagekey.storage.redis_cache import RedisWindowStore


@pytest.fixture
def window_store(clock):
    return MemoryWindowStore(clock)


class TestMemoryWindowStore:
    def test_admits_up_to_budget(self, window_store):
        results = [window_store.hit_now("actor", "alice", 3, 60)[0] for _ in range(4)]
        assert results == [True, True, True, False]

    def test_window_slides(self, window_store, clock):
        for _ in range(3):
            window_store.hit_now("actor", "alice", 3, 60)
        clock.advance(30)
        assert window_store.hit_now("actor", "alice", 3, 60)[0] is False
        clock.advance(31)
        assert window_store.hit_now("actor", "alice", 3, 60)[0] is True

    def test_retry_after_counts_down_from_oldest_hit(self, window_store, clock):
        window_store.hit_now("actor", "alice", 1, 60)
        clock.advance(20)
        allowed, count, retry_after = window_store.hit_now("actor", "alice", 1, 60)
        assert not allowed
        assert count == 1
        assert retry_after == pytest.approx(40)

    def test_keys_and_namespaces_are_independent(self, window_store):
        window_store.hit_now("actor", "alice", 1, 60)
        assert window_store.hit_now("actor", "bob", 1, 60)[0]
        assert window_store.hit_now("destination", "alice", 1, 60)[0]

    def test_rejected_hits_are_not_recorded(self, window_store, clock):
        window_store.hit_now("actor", "alice", 1, 60)
        for _ in range(5):
            window_store.hit_now("actor", "alice", 1, 60)
        clock.advance(61)
        assert window_store.hit_now("actor", "alice", 1, 60)[0] is True

    def test_concurrent_threads_never_exceed_budget(self):
        window_store = MemoryWindowStore()
        budget = 10
        barrier = threading.Barrier(50)
        admitted = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            allowed, _, _ = window_store.hit_now("actor", "shared", budget, 60)
            with lock:
                admitted.append(allowed)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert admitted.count(True) == budget

    async def test_reset_clears_window(self, window_store):
        window_store.hit_now("actor", "alice", 1, 60)
        await window_store.reset("actor", "alice")
        assert window_store.hit_now("actor", "alice", 1, 60)[0]

    def test_idle_slots_are_swept(self, clock):
        window_store = MemoryWindowStore(clock, sweep_every=1000)
        for i in range(50):
            window_store.hit_now("destination", f"user{i}@example.com", 3, 60)
        assert len(window_store) == 50

        clock.advance(30)
        window_store.hit_now("actor", "alice", 3, 60)
        assert window_store.sweep() == 0

        clock.advance(31)
        assert window_store.sweep() == 50
        assert len(window_store) == 1

    def test_sweep_runs_automatically(self, clock):
        window_store = MemoryWindowStore(clock, sweep_every=10)
        for i in range(9):
            window_store.hit_now("actor", f"a{i}", 1, 60)
        clock.advance(61)
        window_store.hit_now("actor", "late", 1, 60)
        assert len(window_store) == 1

    def test_swept_key_starts_fresh(self, clock):
        window_store = MemoryWindowStore(clock)
        window_store.hit_now("actor", "alice", 1, 60)
        clock.advance(61)
        window_store.sweep()
        assert window_store.hit_now("actor", "alice", 1, 60) == (True, 1, 0.0)


class TestSlidingWindowLimiter:
    def test_rejects_non_positive_configuration(self, window_store):
        with pytest.raises(ValueError):
            SlidingWindowLimiter(window_store, namespace="actor", limit=0, window_seconds=60)
        with pytest.raises(ValueError):
            SlidingWindowLimiter(window_store, namespace="actor", limit=1, window_seconds=0)

    async def test_check_raises_rate_limited_with_retry_after(self, window_store, clock):
        limiter = SlidingWindowLimiter(window_store, namespace="actor", limit=2, window_seconds=60)
        await limiter.check("alice")
        clock.advance(10.5)
        await limiter.check("alice")

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check("alice")

        assert exc_info.value.kind == ErrorKind.RATE_LIMIT
        assert exc_info.value.retry_after_seconds == 50
        assert exc_info.value.detail["limiter"] == "actor"

    async def test_check_logs_rate_limited(self, window_store):
        limiter = SlidingWindowLimiter(window_store, namespace="actor", limit=1, window_seconds=60)
        await limiter.check("alice")
        with patch("stagekey.service.rate_limit.logger") as mock_logger:
            with pytest.raises(RateLimitedError):
                await limiter.check("alice")
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limited"


class TestRateLimiter:
    async def test_actor_and_destination_budgets_are_separate(self, window_store):
        limiter = RateLimiter(window_store, actor_limit=1, destination_limit=2)
        await limiter.check_actor("alice@example.com")
        await limiter.check_destination("alice@example.com")
        await limiter.check_destination("alice@example.com")

        with pytest.raises(RateLimitedError):
            await limiter.check_actor("alice@example.com")
        with pytest.raises(RateLimitedError):
            await limiter.check_destination("alice@example.com")

    async def test_defaults(self, window_store):
        limiter = RateLimiter(window_store)
        assert limiter.actor.limit == 10
        assert limiter.actor.window_seconds == 60
        assert limiter.destination.limit == 3
        assert limiter.destination.window_seconds == 60


class TestRedisWindowStore:
    def _store(self, script_result):
        client = MagicMock()
        script = AsyncMock(return_value=script_result)
        client.register_script.return_value = script
        store = RedisWindowStore("redis://localhost:6379/0", client=client)
        return store, client, script

    def test_registers_sliding_window_script(self):
        store, client, _ = self._store([1, 1, "0"])
        client.register_script.assert_called_once_with(RedisWindowStore._SLIDING_WINDOW_SCRIPT)
        assert "ZREMRANGEBYSCORE" in RedisWindowStore._SLIDING_WINDOW_SCRIPT
        assert "ZADD" in RedisWindowStore._SLIDING_WINDOW_SCRIPT

    async def test_hit_admitted(self):
        store, _, script = self._store([1, 2, "0"])
        allowed, count, retry_after = await store.hit("actor", "alice", 10, 60)

        assert (allowed, count, retry_after) == (True, 2, 0.0)
        kwargs = script.call_args.kwargs
        assert kwargs["args"][1:3] == [60, 10]
        assert kwargs["keys"][0].startswith("rate:actor:")

    async def test_hit_rejected_parses_fractional_retry(self):
        store, _, _ = self._store([0, 10, "12.5"])
        allowed, count, retry_after = await store.hit("actor", "alice", 10, 60)
        assert allowed is False
        assert count == 10
        assert retry_after == pytest.approx(12.5)

    def test_keys_are_hashed(self):
        key = RedisWindowStore._normalize_rate_key("destination", "a:b@example.com")
        assert "example.com" not in key
        assert key == RedisWindowStore._normalize_rate_key("destination", "a:b@example.com")
        assert key != RedisWindowStore._normalize_rate_key("actor", "a:b@example.com")

    async def test_limiter_over_redis_store_raises(self):
        store, _, _ = self._store([0, 3, "30"])
        limiter = RateLimiter(store, destination_limit=3)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check_destination("+14155550100")
        assert exc_info.value.retry_after_seconds == 30
