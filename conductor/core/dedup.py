"""Novelty filter for decision suggestions.

Keeps a small ring of recent suggestions per terminal and rejects new ones
that are too similar, so the decision model cannot loop on one idea.
"""

from collections import deque
from collections.abc import Callable

Similarity = Callable[[str, str], float]

MIN_COMPARABLE_LENGTH = 5


def _significant_words(text: str) -> set[str]:
    return {w for w in text.lower().split() if len(w) > 2}


def word_overlap(a: str, b: str) -> float:
    """Shared significant words over the larger word set, in [0, 1]."""
    words_a = _significant_words(a)
    words_b = _significant_words(b)
    largest = max(len(words_a), len(words_b))
    if largest == 0:
        return 0.0
    return len(words_a & words_b) / largest


def exact_match(a: str, b: str) -> float:
    return 1.0 if a.strip().lower() == b.strip().lower() else 0.0


class SuggestionFilter:
    """Bounded ring of recent suggestions plus a pluggable similarity function."""

    def __init__(
        self,
        size: int = 5,
        similarity: Similarity = word_overlap,
        threshold: float = 0.7,
    ):
        self._recent: deque[str] = deque(maxlen=size)
        self.similarity = similarity
        self.threshold = threshold

    def __len__(self) -> int:
        return len(self._recent)

    @property
    def recent(self) -> list[str]:
        return list(self._recent)

    def is_duplicate(self, suggestion: str) -> bool:
        """True if suggestion is a near-duplicate of a remembered one.

        Very short suggestions ("y", "1", "ok") are never duplicates.
        """
        if len(suggestion) <= MIN_COMPARABLE_LENGTH:
            return False
        return any(self.similarity(suggestion, prev) > self.threshold for prev in self._recent)

    def remember(self, suggestion: str) -> None:
        self._recent.append(suggestion)

    def clear(self) -> None:
        self._recent.clear()
