"""
Expense Repository - per-user expense and category storage

Backs two consumers:
- The API (create/list expenses, default "Uncategorized" category)
- The categorization engine, which only needs "categorized expenses
  sorted by date descending, optionally limited" and "how many are there"

An expense filed under the user's default "Uncategorized" category is not
a categorized expense: it carries no label the engine can learn from.
"""
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import sessionmanager
from packages.common.schemas.expense import (
    UNCATEGORIZED_NAME,
    CategorizedExpense,
    ExpenseCreate,
    ExpenseRecord,
)

logger = structlog.get_logger()

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class ExpenseRepository:
    """
    Repository for expense database operations.

    Opens its own session per call so it can be used from request
    handlers and from background training jobs alike.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or sessionmanager.session

    async def find_categorized(
        self,
        user_id: str,
        limit: Optional[int] = None,
    ) -> List[CategorizedExpense]:
        """
        Get a user's categorized expenses, newest first.

        Args:
            user_id: Owner of the expenses
            limit: Maximum number of rows (None for all)

        Returns:
            List of CategorizedExpense sorted by date descending
        """
        query = """
            SELECT e.id, e.user_id, e.description, e.amount, e.category_id, e.date
            FROM expenses e
            JOIN categories c ON c.id = e.category_id
            WHERE e.user_id = :user_id
              AND c.is_default = false
            ORDER BY e.date DESC, e.created_at DESC
        """
        params: Dict[str, Any] = {"user_id": user_id}
        if limit is not None:
            query += " LIMIT :limit"
            params["limit"] = limit

        async with self._session_factory() as db:
            result = await db.execute(text(query), params)
            rows = result.mappings().all()

        expenses = [
            CategorizedExpense(
                id=str(row["id"]),
                user_id=row["user_id"],
                description=row["description"],
                amount=float(row["amount"]),
                category_id=str(row["category_id"]),
                date=row["date"],
            )
            for row in rows
        ]

        logger.debug("categorized_expenses_fetched",
                     user_id=user_id,
                     limit=limit,
                     returned=len(expenses))
        return expenses

    async def count_categorized(self, user_id: str) -> int:
        """Count a user's categorized expenses"""
        query = text("""
            SELECT COUNT(*)
            FROM expenses e
            JOIN categories c ON c.id = e.category_id
            WHERE e.user_id = :user_id
              AND c.is_default = false
        """)

        async with self._session_factory() as db:
            result = await db.execute(query, {"user_id": user_id})
            return int(result.scalar() or 0)

    async def get_or_create_uncategorized(self, user_id: str) -> str:
        """
        Get the user's default "Uncategorized" category, creating it on first use.

        Returns:
            Category id
        """
        select_query = text("""
            SELECT id FROM categories
            WHERE user_id = :user_id AND name = :name
        """)
        insert_query = text("""
            INSERT INTO categories (id, user_id, name, description, color, icon, is_default, created_at)
            VALUES (:id, :user_id, :name, :description, :color, :icon, true, :created_at)
            ON CONFLICT (user_id, name) DO NOTHING
        """)

        async with self._session_factory() as db:
            result = await db.execute(select_query, {"user_id": user_id, "name": UNCATEGORIZED_NAME})
            category_id = result.scalar()
            if category_id:
                return str(category_id)

            await db.execute(insert_query, {
                "id": uuid4(),
                "user_id": user_id,
                "name": UNCATEGORIZED_NAME,
                "description": "Default category for uncategorized expenses",
                "color": "#95a5a6",
                "icon": "question",
                "created_at": datetime.now(timezone.utc),
            })
            result = await db.execute(select_query, {"user_id": user_id, "name": UNCATEGORIZED_NAME})
            category_id = result.scalar()

        logger.info("uncategorized_category_created", user_id=user_id, category_id=str(category_id))
        return str(category_id)

    async def category_belongs_to_user(self, user_id: str, category_id: str) -> bool:
        """Check that a category exists and is owned by the user"""
        try:
            UUID(category_id)
        except ValueError:
            return False

        query = text("""
            SELECT 1 FROM categories
            WHERE id = CAST(:category_id AS uuid) AND user_id = :user_id
        """)
        async with self._session_factory() as db:
            result = await db.execute(query, {"category_id": category_id, "user_id": user_id})
            return result.scalar() is not None

    async def is_default_category(self, user_id: str, category_id: str) -> bool:
        """True for the user's "Uncategorized" category"""
        try:
            UUID(category_id)
        except ValueError:
            return False

        query = text("""
            SELECT is_default FROM categories
            WHERE id = CAST(:category_id AS uuid) AND user_id = :user_id
        """)
        async with self._session_factory() as db:
            result = await db.execute(query, {"category_id": category_id, "user_id": user_id})
            return bool(result.scalar())

    async def create_expense(
        self,
        user_id: str,
        expense: ExpenseCreate,
        category_id: str,
        ml_confidence: float = 0.0,
    ) -> ExpenseRecord:
        """
        Insert an expense with a resolved category.

        Args:
            user_id: Owner
            expense: Validated payload
            category_id: Category chosen by the user, the model or the default
            ml_confidence: Prediction confidence when the category was predicted

        Returns:
            The stored ExpenseRecord
        """
        now = datetime.now(timezone.utc)
        expense_id = uuid4()

        query = text("""
            INSERT INTO expenses (
                id, user_id, amount, description, date, category_id,
                payment_method, location, tags, ml_confidence, created_at
            ) VALUES (
                :id, :user_id, :amount, :description, :date, CAST(:category_id AS uuid),
                :payment_method, :location, :tags, :ml_confidence, :created_at
            )
        """)

        async with self._session_factory() as db:
            await db.execute(query, {
                "id": expense_id,
                "user_id": user_id,
                "amount": expense.amount,
                "description": expense.description,
                "date": expense.date or now,
                "category_id": category_id,
                "payment_method": expense.payment_method.value,
                "location": expense.location,
                "tags": expense.tags,
                "ml_confidence": ml_confidence,
                "created_at": now,
            })

        logger.info("expense_created",
                    user_id=user_id,
                    expense_id=str(expense_id),
                    category_id=category_id,
                    ml_confidence=ml_confidence)

        return ExpenseRecord(
            id=str(expense_id),
            user_id=user_id,
            description=expense.description,
            amount=expense.amount,
            date=expense.date or now,
            category_id=category_id,
            payment_method=expense.payment_method,
            location=expense.location,
            tags=expense.tags,
            ml_confidence=ml_confidence,
            created_at=now,
        )

    async def list_expenses(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ExpenseRecord]:
        """Most recent expenses for a user, with category names"""
        query = text("""
            SELECT
                e.id, e.user_id, e.description, e.amount, e.date, e.category_id,
                c.name AS category_name, e.payment_method, e.location, e.tags,
                e.ml_confidence, e.created_at
            FROM expenses e
            LEFT JOIN categories c ON c.id = e.category_id
            WHERE e.user_id = :user_id
            ORDER BY e.date DESC
            LIMIT :limit OFFSET :offset
        """)

        async with self._session_factory() as db:
            result = await db.execute(query, {"user_id": user_id, "limit": limit, "offset": offset})
            rows = result.mappings().all()

        return [
            ExpenseRecord(
                id=str(row["id"]),
                user_id=row["user_id"],
                description=row["description"],
                amount=float(row["amount"]),
                date=row["date"],
                category_id=str(row["category_id"]),
                category_name=row["category_name"],
                payment_method=row["payment_method"],
                location=row["location"],
                tags=list(row["tags"] or []),
                ml_confidence=float(row["ml_confidence"] or 0),
                created_at=row["created_at"],
            )
            for row in rows
        ]


# Singleton instance
expense_repository = ExpenseRepository()
