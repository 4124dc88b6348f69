"""
Shared fixtures: an in-memory expense store standing in for Postgres and
model stores rooted in pytest's tmp_path.
"""
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from packages.common.schemas.expense import (  # noqa: E402
    UNCATEGORIZED_NAME,
    CategorizedExpense,
    ExpenseCreate,
    ExpenseRecord,
)
from packages.domain.categorization.model_store import ModelStore  # noqa: E402
from packages.domain.categorization.training import TrainingOrchestrator  # noqa: E402

COFFEE = "cat-coffee"
TRANSPORT = "cat-transport"
GROCERIES = "cat-groceries"

TEMPLATES = [
    ("Coffee shop latte", 4.50, COFFEE),
    ("Starbucks coffee", 5.25, COFFEE),
    ("Uber ride downtown", 18.00, TRANSPORT),
    ("Lyft trip airport", 42.00, TRANSPORT),
    ("Walmart groceries", 86.00, GROCERIES),
    ("Whole Foods market groceries", 120.00, GROCERIES),
]


class FakeExpenseRepository:
    """In-memory implementation of the expense storage collaborator"""

    def __init__(self):
        self.expenses: Dict[str, List[CategorizedExpense]] = {}
        self.categories: Dict[str, Dict[str, str]] = {}
        self.records: Dict[str, List[ExpenseRecord]] = {}
        self.find_calls = 0
        self.fail_with: Optional[Exception] = None
        self.count_override: Optional[int] = None

    def add(self, user_id: str, description: str, amount: float, category_id: str,
            date: Optional[datetime] = None) -> CategorizedExpense:
        expense = CategorizedExpense(
            id=str(uuid4()),
            user_id=user_id,
            description=description,
            amount=amount,
            category_id=category_id,
            date=date or datetime.now(timezone.utc),
        )
        self.expenses.setdefault(user_id, []).append(expense)
        return expense

    def seed(self, user_id: str, count: int) -> None:
        """Add `count` categorized expenses cycling through TEMPLATES, oldest first"""
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(count):
            description, amount, category_id = TEMPLATES[i % len(TEMPLATES)]
            self.add(user_id, description, amount + (i % 3) * 0.25, category_id,
                     date=start + timedelta(hours=i))

    async def find_categorized(self, user_id: str, limit: Optional[int] = None) -> List[CategorizedExpense]:
        self.find_calls += 1
        if self.fail_with:
            raise self.fail_with
        rows = sorted(self.expenses.get(user_id, []), key=lambda e: e.date, reverse=True)
        return rows[:limit] if limit is not None else rows

    async def count_categorized(self, user_id: str) -> int:
        if self.fail_with:
            raise self.fail_with
        if self.count_override is not None:
            return self.count_override
        return len(self.expenses.get(user_id, []))

    async def category_belongs_to_user(self, user_id: str, category_id: str) -> bool:
        return category_id in self.categories.get(user_id, {})

    async def is_default_category(self, user_id: str, category_id: str) -> bool:
        return self.categories.get(user_id, {}).get(category_id) == UNCATEGORIZED_NAME

    async def get_or_create_uncategorized(self, user_id: str) -> str:
        categories = self.categories.setdefault(user_id, {})
        for category_id, name in categories.items():
            if name == UNCATEGORIZED_NAME:
                return category_id
        category_id = str(uuid4())
        categories[category_id] = UNCATEGORIZED_NAME
        return category_id

    async def create_expense(self, user_id: str, expense: ExpenseCreate, category_id: str,
                             ml_confidence: float = 0.0) -> ExpenseRecord:
        now = datetime.now(timezone.utc)
        record = ExpenseRecord(
            id=str(uuid4()),
            user_id=user_id,
            description=expense.description,
            amount=expense.amount,
            date=expense.date or now,
            category_id=category_id,
            category_name=self.categories.get(user_id, {}).get(category_id),
            payment_method=expense.payment_method,
            location=expense.location,
            tags=expense.tags,
            ml_confidence=ml_confidence,
            created_at=now,
        )
        self.records.setdefault(user_id, []).append(record)
        if self.categories.get(user_id, {}).get(category_id) != UNCATEGORIZED_NAME:
            self.add(user_id, expense.description, expense.amount, category_id, date=record.date)
        return record

    async def list_expenses(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ExpenseRecord]:
        rows = sorted(self.records.get(user_id, []), key=lambda r: r.date, reverse=True)
        return rows[offset:offset + limit]


class RecordingDispatcher:
    """Dispatcher that records requests instead of running them"""

    def __init__(self):
        self.dispatched: List[str] = []

    def dispatch(self, user_id, job=None) -> bool:
        self.dispatched.append(user_id)
        return True


@pytest.fixture
def repository() -> FakeExpenseRepository:
    return FakeExpenseRepository()


@pytest.fixture
def model_store(tmp_path) -> ModelStore:
    return ModelStore(tmp_path / "models", generations_retained=2, lock_ttl_seconds=60)


@pytest.fixture
def orchestrator(repository, model_store) -> TrainingOrchestrator:
    return TrainingOrchestrator(repository, model_store, random_state=7)


@pytest.fixture
def recording_dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


def snapshot_tree(root) -> Dict[str, bytes]:
    """Relative path -> bytes for every file under root"""
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }
