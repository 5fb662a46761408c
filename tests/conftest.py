import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cache_framework import IntelligentCache  # noqa: E402
from cache_persistence import MemorySnapshotStore  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_cache_env(monkeypatch):
    monkeypatch.delenv("ICACHE_SNAPSHOT_PATH", raising=False)
    monkeypatch.delenv("ICACHE_CAPACITY", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshot_store():
    return MemorySnapshotStore()


@pytest.fixture
def make_cache(clock, snapshot_store):
    created = []

    def factory(**caching):
        cache = IntelligentCache(
            {"caching": caching}, clock=clock, snapshot_store=snapshot_store
        )
        created.append(cache)
        return cache

    try:
        yield factory
    finally:
        for cache in created:
            cache.scheduler.stop(flush=False)


@pytest.fixture
def cache(make_cache):
    return make_cache()
