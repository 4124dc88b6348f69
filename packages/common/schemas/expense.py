"""
Expense and category schemas shared by the API, repository and categorization engine
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, validator


UNCATEGORIZED_NAME = "Uncategorized"


class PaymentMethod(str, Enum):
    """How an expense was paid"""
    CASH = "cash"
    CREDIT_CARD = "credit card"
    DEBIT_CARD = "debit card"
    BANK_TRANSFER = "bank transfer"
    OTHER = "other"


class ExpenseCreate(BaseModel):
    """Payload for creating an expense; category is optional and predicted when absent"""
    amount: float = Field(..., ge=0.01, description="Expense amount")
    description: str = Field(..., min_length=1, max_length=200, description="Free-text description")
    date: Optional[datetime] = Field(None, description="When the expense happened (defaults to now)")
    category_id: Optional[str] = Field(None, description="Category id; predicted when omitted")
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH)
    location: Optional[str] = Field(None, max_length=100)
    tags: List[str] = Field(default_factory=list)

    @validator("description")
    def strip_description(cls, v):
        """Trim surrounding whitespace"""
        v = v.strip()
        if not v:
            raise ValueError("description must not be blank")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "amount": 5.25,
                "description": "Coffee shop",
                "payment_method": "debit card",
            }
        }


class CategorizedExpense(BaseModel):
    """
    One persisted expense with a category.

    This is the unit the categorization engine learns from: training
    examples and similarity-matcher history are both built from it.
    """
    id: str
    user_id: str
    description: str
    amount: float
    category_id: str
    date: datetime


class ExpenseRecord(BaseModel):
    """Expense as returned by the API"""
    id: str
    user_id: str
    description: str
    amount: float
    date: datetime
    category_id: str
    category_name: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    location: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    ml_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: Optional[datetime] = None
