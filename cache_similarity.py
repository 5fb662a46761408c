"""
Keyword-overlap similarity for near-duplicate cache keys.
"""

from typing import AbstractSet, Iterable, Optional, Tuple, TypeVar

T = TypeVar("T")

DEFAULT_SIMILARITY_THRESHOLD = 0.85


class SimilarityMatcher:
    """
    Scores keyword sets with the Jaccard index and picks the best candidate.

    Selection is a linear scan over the candidates; callers keep the
    candidate set bounded.
    """

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.threshold = threshold

    @staticmethod
    def score(a: AbstractSet[str], b: AbstractSet[str]) -> float:
        """Jaccard index of two keyword sets, 0.0 if either is empty."""
        if not a or not b:
            return 0.0
        return len(a & b) / len(a | b)

    def find_best_match(
        self,
        query_keywords: AbstractSet[str],
        candidates: Iterable[Tuple[T, AbstractSet[str]]],
        threshold: Optional[float] = None,
    ) -> Optional[Tuple[T, float]]:
        """
        Find the candidate whose keywords best overlap the query.

        Args:
            query_keywords: Keywords of the incoming key
            candidates: (item, keywords) pairs to score
            threshold: Minimum accepted score (defaults to the matcher's)

        Returns:
            (item, score) for the strictly highest score at or above the
            threshold, the first one encountered on ties, or None.
        """
        if not query_keywords:
            return None

        threshold = self.threshold if threshold is None else threshold
        best_item = None
        best_score = 0.0
        found = False

        for item, keywords in candidates:
            similarity = self.score(query_keywords, keywords)
            if similarity >= threshold and (not found or similarity > best_score):
                best_item = item
                best_score = similarity
                found = True

        if not found:
            return None
        return best_item, best_score
