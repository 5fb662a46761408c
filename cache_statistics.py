"""
Hit/miss accounting for the intelligent cache.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict

from lock_utils import coordinated_lock, create_component_lock, unregister_lock

logger = logging.getLogger(__name__)

# Rough per-entry footprint used for the memory estimate
ESTIMATED_ENTRY_BYTES = 1024


@dataclass(frozen=True)
class CacheStatistics:
    """Point-in-time view of cache counters."""

    hits: int
    misses: int
    similarity_hits: int
    coalesced: int
    evictions: int
    expired_removed: int
    items: int
    capacity: int
    avg_retrieval_time: float
    memory_usage_bytes: int

    @property
    def hit_rate(self) -> float:
        """Percentage of lookups served from the cache, similarity hits included."""
        served = self.hits + self.similarity_hits
        total = served + self.misses
        if total == 0:
            return 0.0
        return served / total * 100

    def to_dict(self) -> Dict[str, Any]:
        stats = asdict(self)
        stats["hit_rate"] = self.hit_rate
        return stats


class StatisticsCollector:
    """Thread-safe counters observed by every cache lookup."""

    def __init__(self):
        self._lock = create_component_lock(f"cache_statistics_{id(self)}")
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.hits = 0
        self.misses = 0
        self.similarity_hits = 0
        self.coalesced = 0
        self.evictions = 0
        self.expired_removed = 0
        self.retrieval_time_total = 0.0
        self.retrieval_count = 0

    def record_hit(self) -> None:
        with coordinated_lock(self._lock):
            self.hits += 1

    def record_miss(self, coalesced: bool = False) -> None:
        with coordinated_lock(self._lock):
            self.misses += 1
            if coalesced:
                self.coalesced += 1

    def record_similarity_hit(self) -> None:
        with coordinated_lock(self._lock):
            self.similarity_hits += 1

    def record_evictions(self, count: int) -> None:
        with coordinated_lock(self._lock):
            self.evictions += count

    def record_expired(self, count: int) -> None:
        with coordinated_lock(self._lock):
            self.expired_removed += count

    def record_retrieval(self, elapsed: float) -> None:
        """Accumulate the latency of one lookup, in seconds."""
        with coordinated_lock(self._lock):
            self.retrieval_time_total += elapsed
            self.retrieval_count += 1

    def snapshot(self, items: int, capacity: int) -> CacheStatistics:
        with coordinated_lock(self._lock):
            avg = (
                self.retrieval_time_total / self.retrieval_count
                if self.retrieval_count
                else 0.0
            )
            return CacheStatistics(
                hits=self.hits,
                misses=self.misses,
                similarity_hits=self.similarity_hits,
                coalesced=self.coalesced,
                evictions=self.evictions,
                expired_removed=self.expired_removed,
                items=items,
                capacity=capacity,
                avg_retrieval_time=avg,
                memory_usage_bytes=items * ESTIMATED_ENTRY_BYTES,
            )

    def reset(self) -> None:
        with coordinated_lock(self._lock):
            self._reset_counters()
        logger.debug("Cache statistics reset")

    def close(self) -> None:
        unregister_lock(self._lock)
