"""Text similarity used to match queries against golden examples.

Word-set Jaccard similarity: J(A, B) = |A ∩ B| / |A ∪ B|. It is fast,
needs no model, and is good enough to tell "summarize this article"
apart from "fix the null pointer in my parser".
"""

from collections.abc import Iterable
import re

SIMILARITY_THRESHOLD = 0.6

_WORD_RE = re.compile(r"[a-z0-9_+#.]+")


def normalize_query(text: str) -> str:
    """Lowercase, collapse whitespace. Used as a cache key."""
    return " ".join(text.lower().split())


class PatternMatcher:
    """Jaccard similarity over normalised word sets.

    Example:
        matcher = PatternMatcher(similarity_threshold=0.5)
        matcher.calculate_similarity("fix bug in parser", "fix parser bug")
        # 0.75
    """

    def __init__(self, similarity_threshold: float = SIMILARITY_THRESHOLD) -> None:
        self._similarity_threshold = similarity_threshold

    @property
    def similarity_threshold(self) -> float:
        return self._similarity_threshold

    def tokenize(self, text: str) -> frozenset[str]:
        tokens = (token.strip(".") for token in _WORD_RE.findall(text.lower()))
        return frozenset(token for token in tokens if token)

    def calculate_similarity(self, text_a: str, text_b: str) -> float:
        tokens_a = self.tokenize(text_a)
        tokens_b = self.tokenize(text_b)

        if not tokens_a and not tokens_b:
            return 1.0
        if not tokens_a or not tokens_b:
            return 0.0

        return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)

    def best_match(self, text: str, candidates: Iterable[str]) -> tuple[int, float] | None:
        """Return (index, similarity) of the closest candidate above threshold."""
        best: tuple[int, float] | None = None
        for index, candidate in enumerate(candidates):
            similarity = self.calculate_similarity(text, candidate)
            if similarity < self._similarity_threshold:
                continue
            if best is None or similarity > best[1]:
                best = (index, similarity)
        return best
