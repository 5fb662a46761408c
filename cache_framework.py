"""
Intelligent Cache Framework
===========================
version 2.0.0

This module provides the in-process cache used for expensive, repeatable
computations such as AI-generated answers keyed by a question. It goes beyond
a plain key/value store by tolerating near-duplicate keys, bounding its size,
supporting bulk invalidation and persisting valuable entries across restarts.

Key Features:
-------------
- **Exact Lookup**: Keys are fingerprinted with a full-length xxh3-128 digest; the
  stored key is compared on lookup so a digest collision reads as a miss.
- **Similarity Fallback**: On an exact miss, the keyword set of the incoming key is
  compared (Jaccard index) with the keyword sets of all live entries.
- **Single-Flight Misses**: Concurrent callers missing on the same key share one
  factory invocation.
- **Priority Eviction**: When full, a batch of entries is evicted in ascending
  (priority, access count, last access) order.
- **Bulk Invalidation**: By exact key, by tag and by case-insensitive key substring.
- **Durable Snapshots**: NORMAL-or-higher priority entries are written to a snapshot
  store through versioned value codecs (see ``cache_persistence``).
- **Background Maintenance**: Expired-entry sweep and snapshot jobs with
  deterministic shutdown (see ``cache_scheduler``).

Usage:
------
    cache = IntelligentCache({"caching": {"snapshot_path": "cache.json"}})
    cache.start()

    result = await cache.get_or_create(
        "Peter: What is faith?",
        lambda: ask_model("Peter", "What is faith?"),
        CacheOptions(priority="high", tags=["peter"]),
    )
    if result.was_similar_match:
        ...

    cache.close()

Thread Safety:
--------------
- **Coordinated Locking**: Store, in-flight registry, statistics and tag index each
  have their own lock, acquired in the order defined by ``lock_utils``.
- **Minimized Lock Scope**: No lock is held while a factory runs or while awaiting.
- **Best Effort Scans**: Similarity candidates and eviction victims are selected from
  a snapshot of the entry map; results are advisory.
"""

import asyncio
import concurrent.futures
import inspect
import logging
import time
from contextlib import contextmanager
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

from cache_config import get_caching_config
from cache_framework_types import (
    USE_DEFAULT,
    CacheEntry,
    CacheKey,
    CacheOptions,
    CachePriority,
    CacheResult,
    HitKind,
    to_seconds,
)
from cache_invalidation import TagIndex, key_matches_pattern, validate_pattern
from cache_persistence import (
    PersistenceManager,
    SnapshotStore,
    ValueCodecRegistry,
    create_snapshot_store,
)
from cache_scheduler import CacheScheduler
from cache_similarity import SimilarityMatcher
from cache_statistics import CacheStatistics, StatisticsCollector
from keyword_extractor import KeywordExtractor
from lock_utils import coordinated_lock, create_component_lock, unregister_lock

logger = logging.getLogger(__name__)

CACHE_VERSION = "2.0.0"

Factory = Callable[[], Union[Any, Awaitable[Any]]]

_MISSING = object()


class CacheClosedError(RuntimeError):
    """Raised when a closed cache is used."""


class IntelligentCache:
    """
    Cache for expensive computations with similarity matching, priority
    eviction, tag/pattern invalidation and durable snapshots.

    Each instance is independent: the clock, the snapshot store and the value
    codecs are injected, so tests can drive time and storage directly.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        codecs: Optional[ValueCodecRegistry] = None,
        keyword_extractor: Optional[KeywordExtractor] = None,
    ):
        """
        Initialize a cache instance.

        Args:
            config: Configuration dictionary; settings are read from its
                ``caching`` section (see ``cache_config``)
            clock: Returns the current time in epoch seconds (defaults to time.time)
            snapshot_store: Durable store for snapshots; when omitted one is
                built from ``caching.snapshot_path``, or persistence is disabled
            codecs: Value codecs used for snapshots
            keyword_extractor: Keyword extractor shared with persistence
        """
        self.config = get_caching_config(config)
        self.clock = clock or time.time
        self.capacity: int = self.config["capacity"]
        self.eviction_batch_size: int = self.config["eviction_batch_size"]
        self.default_ttl: Optional[float] = self.config["default_ttl"]
        self.lock_timeout: float = self.config["lock_timeout"]

        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, concurrent.futures.Future] = {}
        self._tag_index = TagIndex()
        self._stats = StatisticsCollector()
        self._matcher = SimilarityMatcher(self.config["similarity_threshold"])
        self._owns_keywords = keyword_extractor is None
        self._keywords = keyword_extractor or KeywordExtractor(
            self.config["keyword_memo_size"]
        )
        self._closed = False

        self._lock = create_component_lock(f"cache_store_{id(self)}")
        self._inflight_lock = create_component_lock(f"cache_inflight_{id(self)}")

        if snapshot_store is None:
            snapshot_store = create_snapshot_store(self.config)

        self.persistence: Optional[PersistenceManager] = None
        if snapshot_store is not None:
            self.persistence = PersistenceManager(
                snapshot_store,
                codecs=codecs,
                keyword_extractor=self._keywords,
                restore_ttl=self.config["restore_ttl"],
                clock=self.clock,
                lock_timeout=self.lock_timeout,
            )

        self.scheduler = CacheScheduler(
            sweep=self.clear_expired,
            snapshot=self.persist_snapshot if self.persistence else None,
            sweep_interval=self.config["sweep_interval"],
            snapshot_interval=self.config["snapshot_interval"],
        )

        logger.debug(
            f"Initialized intelligent cache (capacity={self.capacity}, "
            f"batch={self.eviction_batch_size}, "
            f"persistence={'on' if self.persistence else 'off'})"
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Load the stored snapshot (if configured) and start maintenance jobs."""
        if self._closed:
            raise CacheClosedError("Cannot start a closed cache")
        if self.persistence and self.config["load_on_start"]:
            self.load_snapshot()
        self.scheduler.start()

    def close(self) -> None:
        """
        Stop maintenance jobs, flush a final best-effort snapshot and release
        every registered lock. Closing twice is a no-op; any other use of a
        closed cache raises CacheClosedError.
        """
        if self._closed:
            return

        flush = bool(self.persistence) and self.config["persist_on_close"]
        self.scheduler.stop(flush=flush)

        with self._locked():
            self._closed = True

        if self.persistence:
            self.persistence.close()
        self.scheduler.close()
        self._tag_index.close()
        self._stats.close()
        if self._owns_keywords:
            self._keywords.close()
        unregister_lock(self._lock)
        unregister_lock(self._inflight_lock)
        logger.debug("Intelligent cache closed")

    def __enter__(self) -> "IntelligentCache":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __len__(self) -> int:
        with self._locked():
            return len(self._entries)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self._closed:
            raise CacheClosedError("Cache is closed")
        with coordinated_lock(self._lock, timeout=self.lock_timeout):
            if self._closed:
                raise CacheClosedError("Cache is closed")
            yield

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def get_or_create(
        self, key: str, factory: Factory, options: Optional[CacheOptions] = None
    ) -> CacheResult:
        """
        Return the cached value for ``key``, computing it with ``factory`` on a miss.

        Lookup order is exact digest match, then (if enabled) the most similar
        live key, then the factory. Concurrent misses on the same key share one
        factory call. A factory exception propagates to every waiting caller
        and nothing is cached.

        Args:
            key: Cache key, typically the question text
            factory: Coroutine function or plain callable producing the value
            options: Entry options used when the computed value is stored

        Returns:
            CacheResult: The value and which path produced it
        """
        start = time.perf_counter()
        options = options or CacheOptions()
        digest = CacheKey.digest(key)

        found, value = self._get_exact(key, digest)
        if found:
            self._stats.record_hit()
            return self._result(value, HitKind.EXACT, start)

        if self._similarity_enabled(options):
            match = self._find_similar(key, options.similarity_threshold)
            if match is not None:
                value, score = match
                self._stats.record_similarity_hit()
                return self._result(value, HitKind.SIMILAR, start, score=score)

        with coordinated_lock(self._inflight_lock, timeout=self.lock_timeout):
            future = self._inflight.get(digest)
            is_leader = future is None
            if is_leader:
                future = concurrent.futures.Future()
                self._inflight[digest] = future

        self._stats.record_miss(coalesced=not is_leader)

        if not is_leader:
            logger.debug(f"Waiting on in-flight computation for '{key}'")
            # Shielded: a cancelled follower must not cancel the shared future
            value = await asyncio.shield(asyncio.wrap_future(future))
            return self._result(value, HitKind.MISS, start, coalesced=True)

        try:
            value = factory()
            if inspect.isawaitable(value):
                value = await value
            self.set(key, value, options)
        except BaseException as e:
            self._release_inflight(digest)
            if not future.done():
                future.set_exception(e)
            raise

        self._release_inflight(digest)
        if not future.done():
            future.set_result(value)
        return self._result(value, HitKind.MISS, start)

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a live value by exact key.

        Returns:
            The cached value, or ``default`` if absent, expired or a placeholder
        """
        start = time.perf_counter()
        found, value = self._get_exact(key, CacheKey.digest(key))
        if found:
            self._stats.record_hit()
        else:
            self._stats.record_miss()
        self._stats.record_retrieval(time.perf_counter() - start)
        return value if found else default

    def get_many(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Get multiple values; absent keys are left out of the result."""
        results = {}
        for key in keys:
            value = self.get(key, _MISSING)
            if value is not _MISSING:
                results[key] = value
        return results

    def contains(self, key: str) -> bool:
        """Check for a live value without touching it or the statistics."""
        digest = CacheKey.digest(key)
        with self._locked():
            entry = self._entries.get(digest)
            return entry is not None and self._is_live(entry, key, self.clock())

    def try_get_similar(
        self, query: str, threshold: Optional[float] = None
    ) -> Tuple[bool, Any, float]:
        """
        Look up the live entry whose key is most similar to ``query``.

        Args:
            query: Text to match against cached keys
            threshold: Minimum Jaccard score (defaults to the configured threshold)

        Returns:
            Tuple of (found, value, score)
        """
        match = self._find_similar(query, threshold)
        if match is None:
            return False, None, 0.0
        value, score = match
        return True, value, score

    def _get_exact(self, key: str, digest: str) -> Tuple[bool, Any]:
        now = self.clock()
        with self._locked():
            entry = self._entries.get(digest)
            if entry is None:
                return False, None
            if not self._is_live(entry, key, now):
                return False, None
            entry.touch(now)
            return True, entry.value

    def _is_live(self, entry: CacheEntry, key: str, now: float) -> bool:
        if entry.key != key:
            logger.debug(f"Digest collision between '{key}' and '{entry.key}'")
            return False
        return not entry.is_placeholder and not entry.is_expired(now)

    def _find_similar(
        self, query: str, threshold: Optional[float]
    ) -> Optional[Tuple[Any, float]]:
        query_keywords = self._keywords.extract(query)
        if not query_keywords:
            return None

        now = self.clock()
        with self._locked():
            candidates = [
                (entry, entry.keywords)
                for entry in self._entries.values()
                if not entry.is_placeholder and not entry.is_expired(now)
            ]

        match = self._matcher.find_best_match(query_keywords, candidates, threshold)
        if match is None:
            return None

        entry, score = match
        with self._locked():
            entry.touch(self.clock())
            value = entry.value
        logger.debug(f"Similarity match for '{query}' -> '{entry.key}' ({score:.2f})")
        return value, score

    def _similarity_enabled(self, options: CacheOptions) -> bool:
        if options.enable_similarity is None:
            return bool(self.config["enable_similarity"])
        return options.enable_similarity

    def _release_inflight(self, digest: str) -> None:
        with coordinated_lock(self._inflight_lock, timeout=self.lock_timeout):
            self._inflight.pop(digest, None)

    def _result(
        self,
        value: Any,
        hit_kind: HitKind,
        start: float,
        score: float = 0.0,
        coalesced: bool = False,
    ) -> CacheResult:
        elapsed = time.perf_counter() - start
        self._stats.record_retrieval(elapsed)
        return CacheResult(
            value=value,
            hit_kind=hit_kind,
            similarity_score=score,
            retrieval_time=elapsed,
            coalesced=coalesced,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def set(self, key: str, value: Any, options: Optional[CacheOptions] = None) -> None:
        """Store a value, replacing any entry with the same digest."""
        entry = self._build_entry(key, value, options or CacheOptions(), self.clock())
        with self._locked():
            self._insert(entry)

    def set_many(
        self, items: Dict[str, Any], options: Optional[CacheOptions] = None
    ) -> None:
        """Store multiple values with the same options."""
        for key, value in items.items():
            self.set(key, value, options)

    def warmup(self, keys: Iterable[str]) -> int:
        """
        Install LOW priority placeholders for keys that are not cached yet.

        Placeholders hold no value and never expire; they are filled by a later
        ``set`` or ``get_or_create`` and are the first candidates for eviction.

        Returns:
            int: Number of placeholders installed
        """
        now = self.clock()
        installed = 0
        with self._locked():
            for key in keys:
                digest = CacheKey.digest(key)
                if digest in self._entries:
                    continue
                self._insert(
                    CacheEntry(
                        key=key,
                        digest=digest,
                        value=None,
                        created=now,
                        last_access=now,
                        priority=CachePriority.LOW,
                        keywords=self._keywords.extract(key),
                        is_placeholder=True,
                    )
                )
                installed += 1
        logger.debug(f"Warmup installed {installed} placeholder entries")
        return installed

    def _build_entry(
        self, key: str, value: Any, options: CacheOptions, now: float
    ) -> CacheEntry:
        if options.absolute_expiration is USE_DEFAULT:
            ttl = self.default_ttl
        else:
            ttl = to_seconds(options.absolute_expiration)

        return CacheEntry(
            key=key,
            digest=CacheKey.digest(key),
            value=value,
            created=now,
            last_access=now,
            absolute_expiration=now + ttl if ttl is not None else None,
            sliding_expiration=to_seconds(options.sliding_expiration),
            priority=CachePriority.parse(options.priority),
            tags=frozenset(options.tags or ()),
            keywords=self._keywords.extract(key),
        )

    def _insert(self, entry: CacheEntry) -> None:
        # Caller holds the store lock
        existing = self._entries.get(entry.digest)
        if existing is None:
            if len(self._entries) >= self.capacity:
                self._make_room(self.clock())
        elif existing.key != entry.key:
            logger.debug(
                f"Digest collision: '{entry.key}' replaces '{existing.key}'"
            )

        self._entries[entry.digest] = entry
        self._tag_index.add(entry.digest, entry.tags)

    def _make_room(self, now: float) -> None:
        # Caller holds the store lock
        expired = self._remove_expired(now)
        if len(self._entries) < self.capacity:
            return

        # Stable sort: ties keep insertion order
        candidates = sorted(
            self._entries.values(),
            key=lambda e: (e.priority, e.access_count, e.last_access),
        )
        victims = candidates[: self.eviction_batch_size]
        for entry in victims:
            self._remove(entry.digest)

        self._stats.record_evictions(len(victims))
        logger.info(
            f"Evicted {len(victims)} cache entries at capacity {self.capacity} "
            f"(after purging {expired} expired)"
        )

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def _remove(self, digest: str) -> bool:
        # Caller holds the store lock
        entry = self._entries.pop(digest, None)
        self._tag_index.remove(digest)
        return entry is not None

    def _remove_expired(self, now: float) -> int:
        # Caller holds the store lock
        expired = [d for d, e in self._entries.items() if e.is_expired(now)]
        for digest in expired:
            self._remove(digest)
        if expired:
            self._stats.record_expired(len(expired))
        return len(expired)

    def invalidate(self, key: str) -> int:
        """
        Remove the entry for ``key``.

        Returns:
            int: 1 if an entry was removed, otherwise 0
        """
        digest = CacheKey.digest(key)
        with self._locked():
            entry = self._entries.get(digest)
            if entry is None or entry.key != key:
                return 0
            self._remove(digest)
        return 1

    def invalidate_by_tag(self, tag: str) -> int:
        """
        Remove every entry carrying ``tag``.

        Returns:
            int: Number of entries removed
        """
        removed = 0
        with self._locked():
            for digest in self._tag_index.pop_tag(tag):
                entry = self._entries.get(digest)
                if entry is None:
                    continue
                if tag not in entry.tags:
                    # Index was stale for this digest; re-index what it carries
                    self._tag_index.add(digest, entry.tags)
                    continue
                self._remove(digest)
                removed += 1

        logger.info(f"Invalidated {removed} cache entries tagged '{tag}'")
        return removed

    def invalidate_by_pattern(self, pattern: str) -> int:
        """
        Remove every entry whose key contains ``pattern`` (case-insensitive).

        Raises:
            ValueError: If the pattern is empty

        Returns:
            int: Number of entries removed
        """
        validate_pattern(pattern)
        with self._locked():
            matching = [
                digest
                for digest, entry in self._entries.items()
                if key_matches_pattern(entry.key, pattern)
            ]
            for digest in matching:
                self._remove(digest)

        logger.info(f"Invalidated {len(matching)} entries matching pattern '{pattern}'")
        return len(matching)

    def clear_expired(self) -> int:
        """
        Remove all entries whose absolute expiration has passed.

        Returns:
            int: Number of entries removed
        """
        with self._locked():
            removed = self._remove_expired(self.clock())
        if removed:
            logger.debug(f"Swept {removed} expired cache entries")
        return removed

    def clear(self) -> None:
        """Remove every entry; statistics are kept."""
        with self._locked():
            self._entries.clear()
            self._tag_index.clear()
        logger.info("Cache cleared")

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_statistics(self) -> CacheStatistics:
        with self._locked():
            items = len(self._entries)
        return self._stats.snapshot(items, self.capacity)

    def reset_statistics(self) -> None:
        self._stats.reset()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def persist_snapshot(self) -> bool:
        """
        Write eligible entries to the snapshot store.

        Returns:
            bool: True if a snapshot was written; False when persistence is
            disabled or the write failed (the failure is logged)
        """
        if self.persistence is None:
            return False
        with self._locked():
            entries: List[CacheEntry] = list(self._entries.values())
        return self.persistence.persist(entries)

    def load_snapshot(self) -> int:
        """
        Restore entries from the snapshot store without replacing live entries.

        Returns:
            int: Number of entries restored
        """
        if self.persistence is None:
            return 0

        restored = self.persistence.load()
        loaded = 0
        with self._locked():
            for entry in restored:
                if entry.digest in self._entries:
                    continue
                self._insert(entry)
                loaded += 1

        logger.info(f"Loaded {loaded} cache entries from snapshot")
        return loaded
