"""Convergence evaluation between consecutive gap rankings."""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Set

import numpy as np

from gapminer.config import settings

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "by", "for", "from", "in", "into",
    "is", "of", "on", "or", "the", "to", "with", "without", "via", "its",
}


def title_tokens(title: str) -> Set[str]:
    """Normalised content tokens of a gap title."""
    return {t for t in _TOKEN_RE.findall((title or "").lower()) if t not in _STOPWORDS}


def title_similarity(a: str, b: str) -> float:
    """Jaccard similarity of two titles' content tokens."""
    tokens_a = title_tokens(a)
    tokens_b = title_tokens(b)
    if not tokens_a and not tokens_b:
        return 1.0 if (a or "").strip().lower() == (b or "").strip().lower() else 0.0
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def similarity_matrix(left: Sequence[str], right: Sequence[str]) -> np.ndarray:
    matrix = np.zeros((len(left), len(right)), dtype=float)
    for i, a in enumerate(left):
        for j, b in enumerate(right):
            matrix[i, j] = title_similarity(a, b)
    return matrix


def _weights(gaps: Sequence[Dict[str, Any]]) -> np.ndarray:
    weights = np.array([max(float(g.get("confidence") or 0.0), 0.0) for g in gaps], dtype=float)
    if weights.sum() <= 0:
        weights = np.ones(len(gaps), dtype=float)
    return weights


class ConvergenceEvaluator:
    """Confidence-weighted overlap between two top-N gap lists."""

    def __init__(self, top_n: Optional[int] = None):
        self.top_n = top_n or settings.CONVERGENCE_TOP_N

    def _top(self, gaps: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ranked = sorted(
            gaps,
            key=lambda g: (g.get("rank") is None, g.get("rank") or 0, -(g.get("confidence") or 0.0)),
        )
        return ranked[: self.top_n]

    def evaluate(self, current_gaps: Sequence[Dict[str, Any]], previous_gaps: Sequence[Dict[str, Any]]) -> float:
        """
        Score how much the current ranking agrees with the previous one.

        Each gap is matched to its most similar counterpart on the other side;
        matches are weighted by the gap's confidence and the two directions
        are averaged, so identical rankings score 1.0 and disjoint ones 0.0.

        Args:
            current_gaps: Ranked gaps of this iteration (dicts with title/confidence)
            previous_gaps: Ranked gaps of the previous iteration

        Returns:
            Score in [0, 1]
        """
        current = self._top(current_gaps or [])
        previous = self._top(previous_gaps or [])

        if not current or not previous:
            return 0.0

        matrix = similarity_matrix(
            [g.get("title", "") for g in current],
            [g.get("title", "") for g in previous],
        )

        current_weights = _weights(current)
        previous_weights = _weights(previous)

        forward = float((current_weights * matrix.max(axis=1)).sum() / current_weights.sum())
        backward = float((previous_weights * matrix.max(axis=0)).sum() / previous_weights.sum())

        score = round(min(max((forward + backward) / 2, 0.0), 1.0), 4)
        logger.info(f"Convergence score {score} (forward {forward:.3f}, backward {backward:.3f})")
        return score

    @staticmethod
    def is_converged(score: Optional[float], threshold: float) -> bool:
        return score is not None and score >= threshold
