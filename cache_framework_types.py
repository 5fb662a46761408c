"""
Type definitions shared by the intelligent cache modules.
"""

import enum
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, FrozenSet, Generic, Iterable, Optional, TypeVar, Union

import xxhash

T = TypeVar("T")

# Relative durations are accepted as seconds or timedelta
Duration = Union[float, int, timedelta]

# Sentinel meaning "use the configured default" for absolute expiration
USE_DEFAULT = object()


def to_seconds(duration: Optional[Duration]) -> Optional[float]:
    """Normalize a relative duration to seconds."""
    if duration is None:
        return None
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class CachePriority(enum.IntEnum):
    """Eviction and persistence priority; higher values are kept longer."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: Union["CachePriority", str, int]) -> "CachePriority":
        """Accept an enum member, its name (any case) or its integer value."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls[value.upper()]
        return cls(value)


class HitKind(enum.Enum):
    """Which lookup path produced a value."""

    EXACT = "exact"
    SIMILAR = "similar"
    MISS = "miss"


class CacheKey:
    """Digest utility for cache keys."""

    @staticmethod
    def digest(key: str) -> str:
        """Full-length 128-bit fingerprint of a key."""
        return xxhash.xxh3_128(key.encode("utf-8")).hexdigest()


@dataclass
class CacheOptions:
    """
    Per-entry options for ``set`` and ``get_or_create``.

    ``absolute_expiration`` is relative to the time of the write. Leaving it
    unset applies the configured default TTL; passing ``None`` explicitly
    stores an entry that never expires.
    """

    absolute_expiration: Any = USE_DEFAULT
    sliding_expiration: Optional[Duration] = None
    priority: Union[CachePriority, str, int] = CachePriority.NORMAL
    tags: Iterable[str] = ()
    enable_similarity: Optional[bool] = None
    similarity_threshold: Optional[float] = None


@dataclass
class CacheEntry:
    """A cached value with its bookkeeping."""

    key: str
    digest: str
    value: Any
    created: float
    last_access: float
    absolute_expiration: Optional[float] = None
    sliding_expiration: Optional[float] = None
    priority: CachePriority = CachePriority.NORMAL
    tags: FrozenSet[str] = frozenset()
    keywords: FrozenSet[str] = frozenset()
    access_count: int = 0
    is_placeholder: bool = False

    def is_expired(self, now: float) -> bool:
        return self.absolute_expiration is not None and now > self.absolute_expiration

    def touch(self, now: float) -> None:
        """Record a hit."""
        self.last_access = max(now, self.created)
        self.access_count += 1


@dataclass
class CacheResult(Generic[T]):
    """Outcome of ``get_or_create``."""

    value: T
    hit_kind: HitKind
    similarity_score: float = 0.0
    retrieval_time: float = 0.0
    coalesced: bool = False

    @property
    def was_hit(self) -> bool:
        return self.hit_kind is not HitKind.MISS

    @property
    def was_similar_match(self) -> bool:
        return self.hit_kind is HitKind.SIMILAR
