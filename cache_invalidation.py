"""
Cache invalidation utilities for the intelligent cache.
Provides the tag index used for bulk invalidation and key pattern matching.
"""

import logging
from typing import Dict, Iterable, List, Set

from lock_utils import coordinated_lock, create_component_lock, unregister_lock

logger = logging.getLogger(__name__)


class TagIndex:
    """
    Maps tags to the digests of entries carrying them.

    The index only accelerates bulk invalidation; the entry map remains the
    source of truth. A digest listed here whose entry is gone is a no-op for
    the caller. Every removal path of the cache calls ``remove`` so the index
    does not accumulate stale digests.
    """

    def __init__(self):
        self._tags: Dict[str, Set[str]] = {}
        self._digest_tags: Dict[str, Set[str]] = {}
        self._lock = create_component_lock(f"tag_index_{id(self)}")

    def add(self, digest: str, tags: Iterable[str]) -> None:
        """Index ``digest`` under each of ``tags``, replacing its previous tags."""
        tags = set(tags)
        with coordinated_lock(self._lock):
            self._discard(digest)
            if not tags:
                return
            for tag in tags:
                self._tags.setdefault(tag, set()).add(digest)
            self._digest_tags[digest] = tags

    def remove(self, digest: str) -> None:
        """Forget ``digest`` under every tag it was indexed with."""
        with coordinated_lock(self._lock):
            self._discard(digest)

    def pop_tag(self, tag: str) -> List[str]:
        """
        Remove a tag and return the digests that were indexed under it.

        The returned digests are also dropped from every other tag they carry,
        since the caller is about to remove their entries.
        """
        with coordinated_lock(self._lock):
            digests = list(self._tags.pop(tag, set()))
            for digest in digests:
                self._discard(digest)
            return digests

    def digests_for(self, tag: str) -> Set[str]:
        with coordinated_lock(self._lock):
            return set(self._tags.get(tag, set()))

    def tags(self) -> List[str]:
        with coordinated_lock(self._lock):
            return list(self._tags)

    def clear(self) -> None:
        with coordinated_lock(self._lock):
            self._tags.clear()
            self._digest_tags.clear()

    def close(self) -> None:
        """Drop the index and release its registered lock."""
        self.clear()
        unregister_lock(self._lock)

    def __len__(self) -> int:
        with coordinated_lock(self._lock):
            return len(self._digest_tags)

    def _discard(self, digest: str) -> None:
        for tag in self._digest_tags.pop(digest, set()):
            members = self._tags.get(tag)
            if members is None:
                continue
            members.discard(digest)
            if not members:
                del self._tags[tag]


def key_matches_pattern(key: str, pattern: str) -> bool:
    """Case-insensitive substring match used by pattern invalidation."""
    return pattern.casefold() in key.casefold()


def validate_pattern(pattern: str) -> str:
    """
    Reject patterns that would wipe the entire cache.

    Raises:
        ValueError: If the pattern is empty or whitespace only
    """
    if not pattern or not pattern.strip():
        raise ValueError("Pattern too broad - would invalidate entire cache")
    return pattern
