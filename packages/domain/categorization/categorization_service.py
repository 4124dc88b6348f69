"""
Categorization Service - predicts a category for an uncategorized expense

Flow:
1. Look up the user's published model (lazily loaded, cached per user)
2. Model present: normalize + vectorize the description, run the classifier
3. Model absent (cold start or unusable artifact): nearest-neighbour match
   over the user's 100 most recent categorized expenses

Prediction is advisory. Every failure turns into an empty result and the
caller files the expense under "Uncategorized".

Example:
- User has 12 categorized expenses, no model yet
- "Coffee shop" $5.25 -> similarity match on "Coffee shop" $5.00 -> 0.99
- After the 20th categorized expense a model is trained in the background
- "Coffee shop" $5.25 -> classifier -> category with softmax probability
"""
import asyncio
from typing import Optional

import structlog

from packages.common.config import get_settings
from packages.common.expense_repository import expense_repository
from packages.common.metrics import PREDICTIONS_TOTAL
from packages.domain.categorization.errors import PredictionError
from packages.domain.categorization.model_store import ModelArtifact, ModelStore
from packages.domain.categorization.schemas import PredictionResult, PredictionSource
from packages.domain.categorization.similarity_matcher import (
    HISTORY_LIMIT,
    SimilarityFallbackMatcher,
)
from packages.domain.categorization.text_normalizer import normalize
from packages.domain.categorization.training import ExpenseHistory, TrainingOrchestrator
from packages.domain.categorization.vectorizer import vectorize

logger = structlog.get_logger()


class PredictionService:
    """
    Composes ModelStore -> ClassifierModel, or SimilarityFallbackMatcher.

    Usage:
        service = PredictionService(model_store, expense_repository)
        result = await service.predict_category("Coffee shop", 5.25, user_id)
        print(result.category_id, result.confidence, result.source)
    """

    def __init__(
        self,
        model_store: ModelStore,
        history: ExpenseHistory,
        matcher: Optional[SimilarityFallbackMatcher] = None,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.model_store = model_store
        self.history = history
        self.matcher = matcher or SimilarityFallbackMatcher()
        self.history_limit = history_limit

    async def predict_category(self, description: str, amount: float, user_id: str) -> PredictionResult:
        """
        Predict the category of an expense.

        Args:
            description: Free-text description
            amount: Expense amount
            user_id: Owner whose model/history is used

        Returns:
            PredictionResult; category_id None and confidence 0 when
            nothing is confident enough or anything failed
        """
        try:
            artifact = await asyncio.to_thread(self.model_store.load, user_id)
            if artifact is not None:
                result = self._predict_with_model(artifact, description, amount)
            else:
                history = await self.history.find_categorized(user_id, limit=self.history_limit)
                result = self.matcher.match(description, amount, history)
        except Exception as e:
            logger.error("prediction_failed",
                         user_id=user_id,
                         error=str(e),
                         exc_info=True)
            result = PredictionResult.empty()

        PREDICTIONS_TOTAL.labels(source=result.source.value).inc()
        logger.info("category_predicted",
                    user_id=user_id,
                    category_id=result.category_id,
                    confidence=result.confidence,
                    source=result.source.value)
        return result

    def _predict_with_model(self, artifact: ModelArtifact, description: str, amount: float) -> PredictionResult:
        vector = vectorize(normalize(description), amount, artifact.vocabulary)
        if len(vector) != artifact.manifest.input_width:
            raise PredictionError("feature vector width does not match the trained model")

        slot, probability = artifact.classifier.predict(vector)
        category_id = artifact.category_for_slot(slot)
        if category_id is None:
            raise PredictionError(f"no category mapped to output slot {slot}")

        return PredictionResult(
            category_id=category_id,
            confidence=min(max(probability, 0.0), 1.0),
            source=PredictionSource.MODEL,
        )


# Singleton instances
settings = get_settings()

model_store = ModelStore(
    settings.ml_model_path,
    generations_retained=settings.model_generations_retained,
    lock_ttl_seconds=settings.training_lock_ttl_seconds,
)
training_orchestrator = TrainingOrchestrator(
    expense_repository,
    model_store,
    random_state=settings.training_random_seed,
)
prediction_service = PredictionService(model_store, expense_repository)


async def predict_category(description: str, amount: float, user_id: str) -> PredictionResult:
    return await prediction_service.predict_category(description, amount, user_id)


async def train_model(user_id: str) -> bool:
    return await training_orchestrator.train_model(user_id)


async def schedule_training(user_id: str) -> bool:
    return await training_orchestrator.schedule_training(user_id)
