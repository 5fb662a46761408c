import asyncio

import pytest

import lock_utils
from cache_framework import CacheClosedError, IntelligentCache
from cache_framework_types import CacheKey, CacheOptions, CachePriority, HitKind
from cache_persistence import MemorySnapshotStore
from cache_statistics import ESTIMATED_ENTRY_BYTES

NO_SIMILARITY = CacheOptions(enable_similarity=False)


def test_set_then_get_returns_value(cache):
    cache.set("Peter: What is faith?", "answer-A")

    assert cache.get("Peter: What is faith?") == "answer-A"


def test_missing_keys_are_not_errors(cache):
    assert cache.get("never stored") is None
    assert cache.get("never stored", default="fallback") == "fallback"
    assert cache.invalidate("never stored") == 0
    assert cache.contains("never stored") is False


def test_expired_entry_is_refused_then_swept(cache, clock):
    cache.set("short lived", "v", CacheOptions(absolute_expiration=0.05))

    clock.advance(0.1)

    assert cache.get("short lived") is None
    assert cache.get_statistics().items == 1
    assert cache.get_statistics().misses == 1

    assert cache.clear_expired() == 1
    stats = cache.get_statistics()
    assert stats.items == 0
    assert stats.expired_removed == 1


def test_default_ttl_applies_when_expiration_not_given(make_cache, clock):
    cache = make_cache(default_ttl=60)
    cache.set("k", "v")
    cache.set("forever", "v", CacheOptions(absolute_expiration=None))

    clock.advance(61)

    assert cache.get("k") is None
    assert cache.get("forever") == "v"


def test_capacity_bound_evicts_a_batch(make_cache, clock):
    cache = make_cache(capacity=10, eviction_batch_size=3)
    for i in range(10):
        cache.set(f"key {i}", i)
        clock.advance(1)
    assert cache.get_statistics().items == 10

    cache.set("key 10", 10)

    stats = cache.get_statistics()
    assert stats.items == 10 - 3 + 1
    assert stats.evictions == 3
    assert [cache.contains(f"key {i}") for i in range(3)] == [False] * 3
    assert cache.contains("key 3")
    assert cache.contains("key 10")


def test_inserting_past_capacity_never_exceeds_it(make_cache):
    cache = make_cache(capacity=10, eviction_batch_size=3)
    for i in range(50):
        cache.set(f"key {i}", i)
        assert cache.get_statistics().items <= 10


def test_eviction_prefers_low_priority_then_least_used(make_cache, clock):
    cache = make_cache(capacity=4, eviction_batch_size=2)
    cache.set("critical", 1, CacheOptions(priority=CachePriority.CRITICAL))
    cache.set("low", 2, CacheOptions(priority="low"))
    cache.set("normal used", 3)
    cache.set("normal unused", 4)
    clock.advance(1)
    cache.get("normal used")

    cache.set("new", 5)

    assert not cache.contains("low")
    assert not cache.contains("normal unused")
    assert cache.contains("normal used")
    assert cache.contains("critical")
    assert cache.contains("new")


def test_overwrite_at_capacity_does_not_evict(make_cache):
    cache = make_cache(capacity=2, eviction_batch_size=1)
    cache.set("a", 1)
    cache.set("b", 2)

    cache.set("a", 10)

    assert cache.get_statistics().evictions == 0
    assert cache.get("a") == 10
    assert cache.get("b") == 2


def test_expired_entries_are_purged_before_evicting(make_cache, clock):
    cache = make_cache(capacity=2, eviction_batch_size=1)
    cache.set("stale", 1, CacheOptions(absolute_expiration=1))
    cache.set("fresh", 2)
    clock.advance(5)

    cache.set("newer", 3)

    stats = cache.get_statistics()
    assert stats.evictions == 0
    assert stats.expired_removed == 1
    assert cache.contains("fresh")
    assert cache.contains("newer")


@pytest.mark.asyncio
async def test_similar_key_is_served_from_cache(cache):
    cache.set("Peter: What is faith?", "answer-A")
    calls = []

    result = await cache.get_or_create(
        "Peter: What's faith?", lambda: calls.append(1) or "fresh"
    )

    assert result.value == "answer-A"
    assert result.was_hit is True
    assert result.was_similar_match is True
    assert result.hit_kind is HitKind.SIMILAR
    assert result.similarity_score == pytest.approx(1.0)
    assert calls == []


@pytest.mark.asyncio
async def test_dissimilar_key_misses_and_calls_factory(cache):
    cache.set("Peter: What is faith?", "answer-A")

    async def factory():
        return "answer-B"

    result = await cache.get_or_create("Paul: Why does grace matter?", factory)

    assert result.value == "answer-B"
    assert result.hit_kind is HitKind.MISS
    assert result.was_hit is False
    assert cache.get("Paul: Why does grace matter?") == "answer-B"


@pytest.mark.asyncio
async def test_similarity_can_be_disabled(cache):
    cache.set("Peter: What is faith?", "answer-A")

    result = await cache.get_or_create(
        "Peter: What's faith?", lambda: "fresh", NO_SIMILARITY
    )

    assert result.value == "fresh"
    assert result.hit_kind is HitKind.MISS


@pytest.mark.asyncio
async def test_exact_hit_reports_exact(cache):
    cache.set("question", "cached")

    result = await cache.get_or_create("question", lambda: "fresh")

    assert result.value == "cached"
    assert result.hit_kind is HitKind.EXACT
    assert result.similarity_score == 0.0
    assert result.retrieval_time >= 0.0


@pytest.mark.asyncio
async def test_expired_entries_are_not_similarity_candidates(cache, clock):
    cache.set("Peter: What is faith?", "old", CacheOptions(absolute_expiration=1))
    clock.advance(2)

    result = await cache.get_or_create("Peter: What's faith?", lambda: "new")

    assert result.value == "new"
    assert result.hit_kind is HitKind.MISS


def test_try_get_similar(cache):
    cache.set("Moses: How did God part the sea?", "answer")

    found, value, score = cache.try_get_similar("moses: how did god part the sea")
    assert found is True
    assert value == "answer"
    assert score == pytest.approx(1.0)

    assert cache.try_get_similar("Ruth loyalty") == (False, None, 0.0)


@pytest.mark.asyncio
async def test_factory_failure_propagates_and_is_not_cached(cache):
    class ModelUnavailable(Exception):
        pass

    async def failing():
        raise ModelUnavailable("backend down")

    with pytest.raises(ModelUnavailable, match="backend down"):
        await cache.get_or_create("question", failing, NO_SIMILARITY)

    assert cache.contains("question") is False
    result = await cache.get_or_create("question", lambda: "recovered", NO_SIMILARITY)
    assert result.value == "recovered"


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_factory_call(cache):
    calls = 0
    release = asyncio.Event()

    async def factory():
        nonlocal calls
        calls += 1
        await release.wait()
        return "answer"

    first = asyncio.create_task(cache.get_or_create("q", factory, NO_SIMILARITY))
    second = asyncio.create_task(cache.get_or_create("q", factory, NO_SIMILARITY))
    await asyncio.sleep(0.01)
    release.set()
    results = await asyncio.gather(first, second)

    assert calls == 1
    assert [r.value for r in results] == ["answer", "answer"]
    assert sorted(r.coalesced for r in results) == [False, True]
    stats = cache.get_statistics()
    assert stats.misses == 2
    assert stats.coalesced == 1


@pytest.mark.asyncio
async def test_concurrent_waiters_see_the_factory_exception(cache):
    release = asyncio.Event()

    async def factory():
        await release.wait()
        raise RuntimeError("generation failed")

    first = asyncio.create_task(cache.get_or_create("q", factory, NO_SIMILARITY))
    second = asyncio.create_task(cache.get_or_create("q", factory, NO_SIMILARITY))
    await asyncio.sleep(0.01)
    release.set()
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert all(isinstance(r, RuntimeError) for r in results)
    assert cache.contains("q") is False
    assert cache._inflight == {}


def test_tag_invalidation_removes_all_tagged_entries(cache):
    cache.set("k1", "v1", CacheOptions(tags=["x"]))
    cache.set("k2", "v2", CacheOptions(tags=["x", "y"]))
    cache.set("k3", "v3", CacheOptions(tags=["y"]))

    assert cache.invalidate_by_tag("x") == 2

    assert cache.get("k1") is None
    assert cache.get("k2") is None
    assert cache.get("k3") == "v3"
    assert cache._tag_index.digests_for("y") == {CacheKey.digest("k3")}


def test_unknown_tag_is_a_no_op(cache):
    cache.set("k1", "v1", CacheOptions(tags=["x"]))

    assert cache.invalidate_by_tag("missing") == 0
    assert cache.get("k1") == "v1"


def test_tag_index_is_pruned_on_every_removal_path(make_cache, clock):
    cache = make_cache(capacity=2, eviction_batch_size=1)
    cache.set("expiring", 1, CacheOptions(tags=["t"], absolute_expiration=1))
    clock.advance(2)
    cache.clear_expired()
    assert len(cache._tag_index) == 0

    cache.set("a", 1, CacheOptions(tags=["t"]))
    cache.invalidate("a")
    assert len(cache._tag_index) == 0

    cache.set("b", 1, CacheOptions(tags=["t"]))
    cache.set("c", 1, CacheOptions(tags=["t"]))
    cache.set("d", 1, CacheOptions(tags=["t"]))
    assert len(cache._tag_index) == len(cache) == 2

    cache.set("c", 2, CacheOptions(tags=["other"]))
    assert cache._tag_index.digests_for("t") == {CacheKey.digest("d")}


def test_pattern_invalidation_is_case_insensitive(cache):
    cache.set("Peter: What is faith?", 1)
    cache.set("peter: what is hope?", 2)
    cache.set("Paul: What is grace?", 3)

    assert cache.invalidate_by_pattern("PETER") == 2

    assert cache.get("Paul: What is grace?") == 3
    assert cache.get_statistics().items == 1


def test_pattern_invalidation_rejects_empty_pattern(cache):
    cache.set("k", 1)

    with pytest.raises(ValueError):
        cache.invalidate_by_pattern("")
    assert cache.get("k") == 1


@pytest.mark.asyncio
async def test_statistics_count_similarity_hits_as_hits(cache):
    cache.set("Peter: What is faith?", "answer-A")
    for _ in range(3):
        assert cache.get("Peter: What is faith?") == "answer-A"
    cache.get("nothing here")
    cache.get("nor here")
    result = await cache.get_or_create("Peter: What's faith?", lambda: "unused")
    assert result.was_similar_match

    stats = cache.get_statistics()
    assert stats.hits == 3
    assert stats.misses == 2
    assert stats.similarity_hits == 1
    assert stats.hit_rate == pytest.approx((3 + 1) / 6 * 100)
    assert stats.to_dict()["hit_rate"] == pytest.approx(66.67, abs=0.01)
    assert stats.avg_retrieval_time > 0.0
    assert stats.memory_usage_bytes == stats.items * ESTIMATED_ENTRY_BYTES


def test_hit_rate_is_zero_without_lookups(cache):
    assert cache.get_statistics().hit_rate == 0.0


def test_reset_statistics(cache):
    cache.set("k", 1)
    cache.get("k")

    cache.reset_statistics()

    stats = cache.get_statistics()
    assert stats.hits == 0
    assert stats.items == 1


def test_digest_collision_reads_as_miss(cache, monkeypatch):
    monkeypatch.setattr(CacheKey, "digest", staticmethod(lambda key: "collide"))
    cache.set("first", 1)

    assert cache.get("second") is None
    assert cache.invalidate("second") == 0
    assert cache.get("first") == 1

    cache.set("second", 2)
    assert cache.get("first") is None
    assert cache.get("second") == 2
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_warmup_installs_placeholders(cache):
    assert cache.warmup(["Peter: What is faith?", "Paul: What is grace?"]) == 2
    assert cache.warmup(["Peter: What is faith?"]) == 0
    assert cache.get_statistics().items == 2

    assert cache.get("Peter: What is faith?") is None
    assert cache.contains("Peter: What is faith?") is False

    result = await cache.get_or_create("Peter: What's faith?", lambda: "filled")
    assert result.hit_kind is HitKind.MISS

    cache.set("Paul: What is grace?", "grace answer")
    assert cache.get("Paul: What is grace?") == "grace answer"
    assert cache._entries[CacheKey.digest("Paul: What is grace?")].is_placeholder is False


def test_placeholders_are_evicted_first(make_cache):
    cache = make_cache(capacity=3, eviction_batch_size=1)
    cache.set("real 1", 1)
    cache.warmup(["placeholder"])
    cache.set("real 2", 2)

    cache.set("real 3", 3)

    assert len(cache) == 3
    assert all(cache.contains(f"real {i}") for i in (1, 2, 3))


def test_hits_update_access_bookkeeping(cache, clock):
    cache.set("k", 1)
    clock.advance(10)

    cache.get("k")
    cache.get("k")

    entry = cache._entries[CacheKey.digest("k")]
    assert entry.access_count == 2
    assert entry.last_access == clock.now
    assert entry.created <= entry.last_access


def test_batch_operations(cache):
    cache.set_many({"a": 1, "b": 2}, CacheOptions(tags=["batch"]))

    assert cache.get_many(["a", "b", "c"]) == {"a": 1, "b": 2}
    assert cache.invalidate_by_tag("batch") == 2


def test_clear_keeps_statistics(cache):
    cache.set("k", 1, CacheOptions(tags=["t"]))
    cache.get("k")

    cache.clear()

    assert len(cache) == 0
    assert len(cache._tag_index) == 0
    assert cache.get_statistics().hits == 1


def test_sliding_expiration_is_informational(cache, clock):
    cache.set("k", 1, CacheOptions(absolute_expiration=10, sliding_expiration=5))
    clock.advance(6)

    assert cache.get("k") == 1
    assert cache._entries[CacheKey.digest("k")].sliding_expiration == 5.0


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_disturb_other_callers(cache):
    release = asyncio.Event()

    async def factory():
        await release.wait()
        return "answer"

    leader = asyncio.create_task(cache.get_or_create("q", factory, NO_SIMILARITY))
    await asyncio.sleep(0.01)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(cache.get_or_create("q", factory, NO_SIMILARITY), 0.01)

    other = asyncio.create_task(cache.get_or_create("q", factory, NO_SIMILARITY))
    await asyncio.sleep(0.01)
    release.set()
    results = await asyncio.gather(leader, other)

    assert [r.value for r in results] == ["answer", "answer"]
    assert [r.coalesced for r in results] == [False, True]
    assert cache.get("q") == "answer"
    assert cache._inflight == {}


@pytest.mark.asyncio
async def test_slow_factory_latency_is_recorded(cache):
    async def slow():
        await asyncio.sleep(0.01)
        return "answer"

    await cache.get_or_create("slow question", slow, NO_SIMILARITY)

    stats = cache.get_statistics()
    assert stats.avg_retrieval_time > 0.005
    assert stats.items == 1
    assert stats.memory_usage_bytes == ESTIMATED_ENTRY_BYTES


def test_close_releases_every_registered_lock(clock):
    before = len(lock_utils._lock_registry)

    for _ in range(5):
        cache = IntelligentCache(clock=clock, snapshot_store=MemorySnapshotStore())
        cache.start()
        cache.set("k", "v")
        cache.close()

    assert len(lock_utils._lock_registry) == before


def test_closed_cache_rejects_use(clock):
    cache = IntelligentCache(clock=clock)
    cache.set("k", "v")
    cache.close()

    with pytest.raises(CacheClosedError):
        cache.set("k", "v2")
    with pytest.raises(CacheClosedError):
        cache.get("k")
    with pytest.raises(CacheClosedError):
        cache.start()
    cache.close()
