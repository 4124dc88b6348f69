"""
Data schemas for categorization module
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PredictionSource(str, Enum):
    """Which path produced a prediction"""
    MODEL = "model"            # Trained per-user classifier
    SIMILARITY = "similarity"  # Nearest-neighbour over recent history
    NONE = "none"              # Nothing confident enough


class ModelState(str, Enum):
    """Per-user training lifecycle"""
    NO_MODEL = "no_model"
    TRAINING = "training"
    TRAINED = "trained"
    RETRAINING = "retraining"


class PredictionResult(BaseModel):
    """
    Category prediction for one expense.

    category_id is None when neither the model nor the similarity
    matcher is confident; callers then assign "Uncategorized".
    """
    category_id: Optional[str] = Field(None, description="Predicted category id")
    confidence: float = Field(0.0, ge=0.0, le=1.0, description="Prediction strength")
    source: PredictionSource = Field(default=PredictionSource.NONE)

    @classmethod
    def empty(cls) -> "PredictionResult":
        return cls(category_id=None, confidence=0.0, source=PredictionSource.NONE)

    class Config:
        json_schema_extra = {
            "example": {
                "category_id": "6f1c2b9e-3d4a-4b7e-9f0a-1c2d3e4f5a6b",
                "confidence": 0.87,
                "source": "model",
            }
        }


class TrainingExample(BaseModel):
    """(description, amount, category) triple drawn from a categorized expense"""
    description: str
    amount: float
    category_id: str


class TrainingMetrics(BaseModel):
    """Final-epoch numbers reported by a training run"""
    epochs: int
    train_examples: int
    validation_examples: int
    loss: float
    train_accuracy: float
    validation_loss: Optional[float] = None
    validation_accuracy: Optional[float] = None


class ModelManifest(BaseModel):
    """
    Versioned description of one persisted model generation.

    Stored as manifest.json beside the weights, vocabulary and category
    documents; checked against them before a generation is used.
    """
    schema_version: int
    generation: str
    user_id: str
    trained_at: datetime
    input_width: int = Field(..., ge=1)
    output_width: int = Field(..., ge=1)
    example_count: int = Field(..., ge=0)
    metrics: Optional[TrainingMetrics] = None


class ModelStatus(BaseModel):
    """Training state and the published manifest for one user"""
    model_config = ConfigDict(protected_namespaces=())

    user_id: str
    state: ModelState
    model_available: bool
    manifest: Optional[ModelManifest] = None
    categorized_expenses: Optional[int] = None
