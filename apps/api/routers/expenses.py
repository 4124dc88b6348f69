"""
Expenses API Router
Creates expenses (auto-categorizing when no category is given) and lists them
"""
from typing import List

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from apps.api.middleware.auth_user import get_current_user_id
from packages.common.expense_repository import expense_repository
from packages.common.schemas.expense import ExpenseCreate, ExpenseRecord
from packages.domain.categorization import prediction_service, training_orchestrator

logger = structlog.get_logger()
router = APIRouter()


@router.post("", response_model=ExpenseRecord, status_code=status.HTTP_201_CREATED)
async def create_expense(
    expense: ExpenseCreate,
    user_id: str = Depends(get_current_user_id),
) -> ExpenseRecord:
    """
    Create an expense.

    - With **category_id**: stored as given
    - Without: the category is predicted; if nothing is confident enough the
      expense is filed under "Uncategorized"

    A categorized expense may trigger background model training.
    """
    ml_confidence = 0.0
    category_id = expense.category_id
    categorized = False

    if category_id:
        if not await expense_repository.category_belongs_to_user(user_id, category_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Unknown category",
            )
        categorized = not await expense_repository.is_default_category(user_id, category_id)
    else:
        prediction = await prediction_service.predict_category(expense.description, expense.amount, user_id)
        if prediction.category_id:
            category_id = prediction.category_id
            ml_confidence = prediction.confidence
            categorized = True

    if not category_id:
        category_id = await expense_repository.get_or_create_uncategorized(user_id)
        logger.info("expense_filed_uncategorized", user_id=user_id)

    record = await expense_repository.create_expense(
        user_id=user_id,
        expense=expense,
        category_id=category_id,
        ml_confidence=ml_confidence,
    )

    # Uncategorized expenses are not training data
    if categorized:
        await training_orchestrator.schedule_training(user_id)
    return record


@router.get("", response_model=List[ExpenseRecord])
async def list_expenses(
    limit: int = Query(50, ge=1, le=200, description="Page size"),
    offset: int = Query(0, ge=0, description="Page offset"),
    user_id: str = Depends(get_current_user_id),
) -> List[ExpenseRecord]:
    """Most recent expenses first"""
    return await expense_repository.list_expenses(user_id, limit=limit, offset=offset)
