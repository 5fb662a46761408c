"""
Keyword extraction for similarity matching of cache keys.
"""

import logging
import re
from typing import FrozenSet, Optional

from cachetools import LRUCache

from lock_utils import coordinated_lock, create_component_lock, unregister_lock

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "what", "how",
        "why", "when", "where", "who", "which", "this", "that", "these",
        "those", "can", "could", "would", "should", "do", "does", "did",
        "have", "has", "had", "be", "been", "being", "to", "of", "in",
        "for", "on", "with", "at", "by", "from", "about", "into", "through",
    }
)

_TOKEN_SPLIT = re.compile(r"[\s,.?!;:\"']+")

MIN_TOKEN_LENGTH = 3


class KeywordExtractor:
    """
    Turns free text into a normalized set of significant words.

    Results are memoised in a bounded LRU cache since the same keys are
    tokenized on every set and every similarity lookup.
    """

    def __init__(self, memo_size: int = 4096, stop_words: Optional[FrozenSet[str]] = None):
        self.stop_words = stop_words if stop_words is not None else STOP_WORDS
        self._memo: Optional[LRUCache] = LRUCache(maxsize=memo_size) if memo_size > 0 else None
        self._lock = create_component_lock(f"keyword_memo_{id(self)}")

    def extract(self, text: str) -> FrozenSet[str]:
        """
        Extract keywords from text.

        Args:
            text: Arbitrary text, usually a cache key

        Returns:
            FrozenSet[str]: Lower-cased tokens longer than two characters,
            stop words removed. Empty for empty input.
        """
        if not text:
            return frozenset()

        if self._memo is None:
            return self._tokenize(text)

        with coordinated_lock(self._lock):
            cached = self._memo.get(text)
        if cached is not None:
            return cached

        keywords = self._tokenize(text)
        with coordinated_lock(self._lock):
            self._memo[text] = keywords
        return keywords

    def _tokenize(self, text: str) -> FrozenSet[str]:
        return frozenset(
            token
            for token in _TOKEN_SPLIT.split(text.lower())
            if len(token) >= MIN_TOKEN_LENGTH and token not in self.stop_words
        )

    def clear(self) -> None:
        """Drop memoised results."""
        if self._memo is not None:
            with coordinated_lock(self._lock):
                self._memo.clear()

    def close(self) -> None:
        self.clear()
        unregister_lock(self._lock)
