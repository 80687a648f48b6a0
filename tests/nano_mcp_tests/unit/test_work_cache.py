"""
Tests for the proof-of-work cache.

Tests cover:
- Single-consumer handoff until invalidation
- Concurrent consumers racing on one key
- Expiry, eviction and idempotent precompute
- Failure handling and the background sweeper
"""

import threading
from unittest.mock import Mock

import pytest
from hypothesis import given, settings, strategies as st

from nano_mcp.core.constants import RECEIVE_WORK_THRESHOLD, SEND_WORK_THRESHOLD
from nano_mcp.core.exceptions import RPCError, RPCTimeoutError, WorkGenerationError, WorkTimeoutError
from nano_mcp.core.metrics import NanoMetrics
from nano_mcp.core.work_cache import BlockKind, WorkCache

HASH = "A" * 64
OTHER_HASH = "B" * 64


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_rpc():
    counter = {"n": 0}

    def rpc(action, params, timeout=None, total_timeout=None):
        counter["n"] += 1
        return {"work": f"{counter['n']:016x}"}

    return Mock(side_effect=rpc)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rpc():
    return make_rpc()


@pytest.fixture
def cache(rpc, clock):
    return WorkCache(rpc, ttl=60, max_size=3, clock=clock, metrics=NanoMetrics())


class TestWorkCacheConsume:
    """Tests for the single-consumer handoff."""

    def test_consume_returns_precomputed_work(self, cache):
        work = cache.precompute(HASH, BlockKind.SEND)
        assert work is not None
        assert cache.consume(HASH, BlockKind.SEND) == work

    def test_second_consume_misses_until_invalidated(self, cache):
        cache.precompute(HASH, BlockKind.SEND)
        assert cache.consume(HASH, BlockKind.SEND) is not None
        assert cache.consume(HASH, BlockKind.SEND) is None
        assert cache.stats()["work_in_use"] == 1

    def test_invalidate_allows_new_work(self, cache):
        first = cache.precompute(HASH, BlockKind.SEND)
        cache.consume(HASH, BlockKind.SEND)
        cache.invalidate(HASH, BlockKind.SEND)

        second = cache.precompute(HASH, BlockKind.SEND)
        assert second != first
        assert cache.consume(HASH, BlockKind.SEND) == second

    def test_precompute_while_in_use_does_not_release(self, cache):
        cache.precompute(HASH, BlockKind.SEND)
        cache.consume(HASH, BlockKind.SEND)
        cache.precompute(HASH, BlockKind.SEND, force=True)
        assert cache.consume(HASH, BlockKind.SEND) is None

    def test_release_returns_entry_unused(self, cache):
        work = cache.precompute(HASH, BlockKind.SEND)
        cache.consume(HASH, BlockKind.SEND)
        cache.release(HASH, BlockKind.SEND)
        assert cache.consume(HASH, BlockKind.SEND) == work

    def test_peek_does_not_claim(self, cache):
        work = cache.precompute(HASH, BlockKind.RECEIVE)
        assert cache.peek(HASH, BlockKind.RECEIVE) == work
        assert cache.peek(HASH, BlockKind.RECEIVE) == work
        assert cache.consume(HASH, BlockKind.RECEIVE) == work

    def test_kinds_are_separate_keys(self, cache, rpc):
        cache.precompute(HASH, BlockKind.SEND)
        assert cache.consume(HASH, BlockKind.RECEIVE) is None

        cache.precompute(HASH, BlockKind.RECEIVE)
        difficulties = [c.args[1]["difficulty"] for c in rpc.call_args_list]
        assert difficulties == [SEND_WORK_THRESHOLD, RECEIVE_WORK_THRESHOLD]

    def test_hash_case_is_ignored(self, cache):
        work = cache.precompute(HASH.lower(), BlockKind.SEND)
        assert cache.consume(HASH, BlockKind.SEND) == work

    def test_concurrent_consumers_get_one_value(self, rpc):
        cache = WorkCache(rpc, ttl=60, max_size=10, metrics=NanoMetrics())
        cache.precompute(HASH, BlockKind.SEND)

        barrier = threading.Barrier(16)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            work = cache.consume(HASH, BlockKind.SEND)
            with lock:
                results.append(work)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 16
        assert len([w for w in results if w is not None]) == 1

    @settings(max_examples=50, deadline=None)
    @given(st.lists(st.sampled_from(["precompute", "consume", "invalidate"]), max_size=30))
    def test_at_most_one_consume_per_cycle(self, operations):
        cache = WorkCache(make_rpc(), ttl=60, max_size=10, metrics=NanoMetrics())
        successes_since_invalidate = 0
        for op in operations:
            if op == "precompute":
                cache.precompute(HASH, BlockKind.SEND)
            elif op == "consume":
                if cache.consume(HASH, BlockKind.SEND) is not None:
                    successes_since_invalidate += 1
            else:
                cache.invalidate(HASH, BlockKind.SEND)
                successes_since_invalidate = 0
            assert successes_since_invalidate <= 1


class TestWorkCachePrecompute:
    """Tests for precompute, expiry and eviction."""

    def test_precompute_is_idempotent(self, cache, rpc):
        first = cache.precompute(HASH, BlockKind.SEND)
        second = cache.precompute(HASH, BlockKind.SEND)
        assert first == second
        assert rpc.call_count == 1

    def test_force_regenerates_and_overwrites(self, cache, rpc):
        first = cache.precompute(HASH, BlockKind.SEND)
        forced = cache.precompute(HASH, BlockKind.SEND, force=True)
        assert rpc.call_count == 2
        assert forced != first
        assert cache.peek(HASH, BlockKind.SEND) == forced

    def test_force_waits_for_inflight_then_regenerates(self):
        entered = threading.Event()
        release = threading.Event()
        counter = {"n": 0}

        def rpc(action, params, timeout=None, total_timeout=None):
            counter["n"] += 1
            n = counter["n"]
            if n == 1:
                entered.set()
                release.wait(timeout=5)
            return {"work": f"{n:016x}"}

        cache = WorkCache(Mock(side_effect=rpc), metrics=NanoMetrics())
        results = {}
        plain = threading.Thread(
            target=lambda: results.update(plain=cache.precompute(HASH, BlockKind.SEND))
        )
        plain.start()
        assert entered.wait(timeout=5)
        forced = threading.Thread(
            target=lambda: results.update(forced=cache.precompute(HASH, BlockKind.SEND, force=True))
        )
        forced.start()
        release.set()
        plain.join()
        forced.join()

        assert counter["n"] == 2
        assert results["plain"] == f"{1:016x}"
        assert results["forced"] == f"{2:016x}"
        assert cache.peek(HASH, BlockKind.SEND) == results["forced"]

    def test_expired_entry_is_unavailable(self, cache, clock):
        cache.precompute(HASH, BlockKind.SEND)
        clock.advance(60)
        assert cache.peek(HASH, BlockKind.SEND) is None
        assert cache.consume(HASH, BlockKind.SEND) is None
        assert len(cache) == 0

    def test_entry_available_just_before_expiry(self, cache, clock):
        work = cache.precompute(HASH, BlockKind.SEND)
        clock.advance(59.9)
        assert cache.consume(HASH, BlockKind.SEND) == work

    def test_expired_entry_is_regenerated(self, cache, clock, rpc):
        cache.precompute(HASH, BlockKind.SEND)
        clock.advance(61)
        cache.precompute(HASH, BlockKind.SEND)
        assert rpc.call_count == 2

    def test_oldest_entry_evicted_at_capacity(self, cache, clock):
        for i in range(3):
            cache.precompute(str(i) * 64, BlockKind.SEND)
            clock.advance(1)

        cache.precompute(HASH, BlockKind.SEND)

        assert len(cache) == 3
        assert cache.peek("0" * 64, BlockKind.SEND) is None
        assert cache.peek("1" * 64, BlockKind.SEND) is not None
        assert cache.stats()["evictions"] == 1

    def test_overwrite_does_not_evict(self, cache, clock):
        for i in range(3):
            cache.precompute(str(i) * 64, BlockKind.SEND)
            clock.advance(1)
        cache.precompute("0" * 64, BlockKind.SEND, force=True)
        assert len(cache) == 3
        assert cache.stats()["evictions"] == 0

    def test_failure_returns_none_and_caches_nothing(self, clock):
        rpc = Mock(side_effect=RPCError("node down"))
        cache = WorkCache(rpc, ttl=60, clock=clock, metrics=NanoMetrics())
        assert cache.precompute(HASH, BlockKind.SEND) is None
        assert len(cache) == 0

    def test_missing_work_field_returns_none(self, clock):
        cache = WorkCache(Mock(return_value={}), ttl=60, clock=clock, metrics=NanoMetrics())
        assert cache.precompute(HASH, BlockKind.SEND) is None

    def test_precompute_for_account_skips_unopened(self, cache, rpc):
        assert cache.precompute_for_account("0" * 64) is None
        assert cache.precompute_for_account(None) is None
        assert rpc.call_count == 0
        assert cache.precompute_for_account(HASH) is not None

    def test_precompute_batch(self, cache, rpc):
        results = cache.precompute_batch([(HASH, BlockKind.SEND), (OTHER_HASH, BlockKind.RECEIVE)])
        assert len(results) == 2
        assert all(results)
        assert cache.peek(OTHER_HASH, BlockKind.RECEIVE) == results[1]


class TestWorkGeneration:
    """Tests for synchronous generation."""

    def test_generate_uses_kind_timeout(self):
        rpc = Mock(return_value={"work": "abc"})
        cache = WorkCache(rpc, send_timeout=30, receive_timeout=15, metrics=NanoMetrics())
        cache.generate(HASH, BlockKind.RECEIVE)
        assert rpc.call_args.kwargs["timeout"] == 15
        assert rpc.call_args.kwargs["total_timeout"] == 15
        cache.generate(HASH, BlockKind.SEND)
        assert rpc.call_args.kwargs["timeout"] == 30
        assert rpc.call_args.kwargs["total_timeout"] == 30

    def test_timeout_raises_work_timeout(self):
        cache = WorkCache(Mock(side_effect=RPCTimeoutError("slow")), metrics=NanoMetrics())
        with pytest.raises(WorkTimeoutError) as exc_info:
            cache.generate(HASH, BlockKind.SEND)
        assert exc_info.value.elapsed_ms is not None
        assert exc_info.value.recoverable

    def test_node_error_raises_generation_error(self):
        cache = WorkCache(Mock(side_effect=RPCError("boom")), metrics=NanoMetrics())
        with pytest.raises(WorkGenerationError, match="Work generation failed"):
            cache.generate(HASH, BlockKind.SEND)

    def test_obtain_prefers_cache(self, cache, rpc):
        cache.precompute(HASH, BlockKind.SEND)
        work, from_cache = cache.obtain(HASH, BlockKind.SEND)
        assert from_cache
        work2, from_cache2 = cache.obtain(HASH, BlockKind.SEND)
        assert not from_cache2
        assert work2 != work
        assert rpc.call_count == 2

    def test_invalid_settings_rejected(self, rpc):
        with pytest.raises(ValueError):
            WorkCache(rpc, ttl=0)
        with pytest.raises(ValueError):
            WorkCache(rpc, max_size=0)


class TestWorkCacheMaintenance:
    """Tests for stats, sweeping and the background worker."""

    def test_stats_track_hits_and_misses(self, cache):
        cache.peek(HASH, BlockKind.SEND)
        cache.precompute(HASH, BlockKind.SEND)
        cache.peek(HASH, BlockKind.SEND)

        stats = cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["precomputed"] == 1

        cache.reset_stats()
        assert cache.stats()["hits"] == 0

    def test_sweep_removes_expired(self, cache, clock):
        cache.precompute(HASH, BlockKind.SEND)
        clock.advance(30)
        cache.precompute(OTHER_HASH, BlockKind.SEND)
        clock.advance(31)
        assert cache.sweep() == 1
        assert cache.peek(OTHER_HASH, BlockKind.SEND) is not None

    def test_sweep_drops_orphaned_in_use_markers(self, cache, clock):
        cache.precompute(HASH, BlockKind.SEND)
        cache.consume(HASH, BlockKind.SEND)
        clock.advance(61)
        cache.sweep()
        assert not cache.is_in_use(HASH, BlockKind.SEND)

    def test_clear(self, cache):
        cache.precompute(HASH, BlockKind.SEND)
        cache.consume(HASH, BlockKind.SEND)
        cache.clear()
        assert len(cache) == 0
        assert not cache.is_in_use(HASH, BlockKind.SEND)

    def test_background_worker_start_stop(self, cache):
        cache.start_background_worker(interval=0.01)
        assert cache.is_background_worker_running()
        cache.stop_background_worker()
        assert not cache.is_background_worker_running()
