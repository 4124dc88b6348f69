"""
Categorization Module - per-user expense auto-categorization

Two prediction paths:
1. Trained model: bag-of-words + amount -> small feed-forward network
2. Cold start: nearest-neighbour match over recent categorized expenses

Training strategy:
- No model until the user has 20 categorized expenses
- Retrain in the background at every multiple of 20
- Each run publishes a complete new generation; failures keep the old one

Example flow:
- "Starbucks #1234" $5.40, 3 expenses on file -> similarity -> "Coffee"
- 20th categorized expense saved -> training scheduled -> model published
- "STARBUCKS 98765" $6.10 -> classifier -> "Coffee" (0.91)
"""

from packages.domain.categorization.categorization_service import (
    PredictionService,
    model_store,
    predict_category,
    prediction_service,
    schedule_training,
    train_model,
    training_orchestrator,
)
from packages.domain.categorization.model_store import ModelArtifact, ModelStore
from packages.domain.categorization.schemas import (
    ModelState,
    ModelStatus,
    PredictionResult,
    PredictionSource,
)
from packages.domain.categorization.similarity_matcher import SimilarityFallbackMatcher
from packages.domain.categorization.training import (
    LocalTrainingDispatcher,
    TrainingOrchestrator,
)

__all__ = [
    'PredictionService',
    'PredictionResult',
    'PredictionSource',
    'ModelArtifact',
    'ModelState',
    'ModelStatus',
    'ModelStore',
    'SimilarityFallbackMatcher',
    'TrainingOrchestrator',
    'LocalTrainingDispatcher',
    'model_store',
    'prediction_service',
    'training_orchestrator',
    'predict_category',
    'train_model',
    'schedule_training',
]
