"""
Similarity Fallback Matcher - nearest neighbour over recent history

Serves users without a trained model. Every recent categorized expense is
scored against the query:

    score = 0.7 * jaccard(description tokens) + 0.3 * amount closeness

and the best-scoring expense lends its category if the score clears 0.3.
"""
from typing import AbstractSet, Iterable, Optional

import structlog

from packages.common.schemas.expense import CategorizedExpense
from packages.domain.categorization.schemas import PredictionResult, PredictionSource
from packages.domain.categorization.text_normalizer import normalize

logger = structlog.get_logger()

HISTORY_LIMIT = 100
TEXT_WEIGHT = 0.7
AMOUNT_WEIGHT = 0.3
MATCH_THRESHOLD = 0.3


def jaccard(a: AbstractSet[str], b: AbstractSet[str]) -> float:
    """|a ∩ b| / |a ∪ b|, 0 when both sets are empty"""
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def amount_closeness(amount: float, other: float) -> float:
    """1 - min(|Δ| / max(amount, other), 1); identical zero amounts score 1"""
    amount = abs(float(amount or 0))
    other = abs(float(other or 0))
    largest = max(amount, other)
    if largest == 0:
        return 1.0
    return 1.0 - min(abs(amount - other) / largest, 1.0)


class SimilarityFallbackMatcher:
    """Best-effort category guess from a user's own recent expenses"""

    def __init__(self, threshold: float = MATCH_THRESHOLD):
        self.threshold = threshold

    def score(self, query_tokens: AbstractSet[str], amount: float, expense: CategorizedExpense) -> float:
        text_score = jaccard(query_tokens, set(normalize(expense.description)))
        return TEXT_WEIGHT * text_score + AMOUNT_WEIGHT * amount_closeness(amount, expense.amount)

    def match(
        self,
        description: str,
        amount: float,
        history: Iterable[CategorizedExpense],
    ) -> PredictionResult:
        """
        Find the most similar historical expense.

        Args:
            description: Query description
            amount: Query amount
            history: Recent categorized expenses, newest first

        Returns:
            PredictionResult with the best match's category, or an empty
            result when nothing scores above the threshold
        """
        query_tokens = set(normalize(description))

        best: Optional[CategorizedExpense] = None
        best_score = 0.0
        compared = 0
        for expense in history:
            compared += 1
            score = self.score(query_tokens, amount, expense)
            if score > best_score:
                best, best_score = expense, score

        if best is None or best_score <= self.threshold:
            logger.debug("similarity_no_match", compared=compared, best_score=best_score)
            return PredictionResult.empty()

        logger.debug("similarity_match",
                     compared=compared,
                     expense_id=best.id,
                     category_id=best.category_id,
                     score=best_score)
        return PredictionResult(
            category_id=best.category_id,
            confidence=min(max(best_score, 0.0), 1.0),
            source=PredictionSource.SIMILARITY,
        )
