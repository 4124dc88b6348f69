"""
Categorization API Router
Category prediction and per-user model training/status
"""
import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from apps.api.middleware.auth_user import get_current_user_id
from packages.domain.categorization import (
    ModelStatus,
    PredictionResult,
    prediction_service,
    training_orchestrator,
)

logger = structlog.get_logger()
router = APIRouter()


class PredictRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount: float = Field(..., ge=0)


class TrainResponse(BaseModel):
    user_id: str
    queued: bool


@router.post("/predict", response_model=PredictionResult)
async def predict(
    request: PredictRequest,
    user_id: str = Depends(get_current_user_id),
) -> PredictionResult:
    """Predict a category without creating an expense"""
    return await prediction_service.predict_category(request.description, request.amount, user_id)


@router.post("/models/train", response_model=TrainResponse, status_code=status.HTTP_202_ACCEPTED)
async def train(user_id: str = Depends(get_current_user_id)) -> TrainResponse:
    """
    Queue a training run now, bypassing the every-20-expenses policy.

    Not queued when a run for this user is already in flight.
    """
    queued = training_orchestrator.request_training(user_id, reason="manual")
    return TrainResponse(user_id=user_id, queued=queued)


@router.get("/models/status", response_model=ModelStatus)
async def model_status(user_id: str = Depends(get_current_user_id)) -> ModelStatus:
    """Training state and published model manifest"""
    return await training_orchestrator.status(user_id)
