from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from expense_tracker.expenses import Expense, ExpenseFilter
from expense_tracker.logging_config import get_logger
from expense_tracker.recurrence import parse_frequency
from expense_tracker.settings import normalize_currency

logger = get_logger(__name__)

SYSTEM_DEFAULT_CURRENCY = "USD"

DEFAULT_CATEGORIES = [
    "Groceries",
    "Rent",
    "Dining",
    "Utilities",
    "Travel",
    "Subscriptions",
    "Work",
]

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("default_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("description", String(500), nullable=False, server_default=""),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("expense_date", Date, nullable=False),
    Column("is_tax_deductible", Boolean, nullable=False, server_default="0"),
    Column("is_recurring", Boolean, nullable=False, server_default="0"),
    Column("recurring_frequency", String(20)),
    Column("recurring_end_date", Date),
    Column("is_deleted", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


class ExpenseNotFound(LookupError):
    """Raised when a record is missing or belongs to another user."""


class ExpenseStore:
    """Persistence for users, categories and expenses."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    # Users

    def create_user(self, email: str, hashed_password: str) -> dict[str, Any]:
        stmt = (
            insert(users)
            .values(email=email, hashed_password=hashed_password)
            .returning(users.c.id, users.c.email, users.c.created_at)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
            if row:
                self._ensure_default_categories(conn, row["id"])
        return dict(row) if row else {}

    def find_user_by_email(self, email: str) -> Optional[dict[str, Any]]:
        with self.engine.begin() as conn:
            row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
        return dict(row) if row else None

    def get_user(self, user_id: int) -> dict[str, Any]:
        stmt = select(users.c.id, users.c.email, users.c.default_currency).where(
            users.c.id == user_id
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise ExpenseNotFound("User not found.")
        return dict(row)

    def user_exists(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            return conn.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None

    def default_currency(self, user_id: int) -> str:
        with self.engine.begin() as conn:
            stored = conn.execute(
                select(users.c.default_currency).where(users.c.id == user_id)
            ).scalar_one_or_none()
            if stored:
                try:
                    return normalize_currency(stored)
                except ValueError:
                    pass
            first_currency = conn.execute(
                select(expenses.c.currency)
                .where(expenses.c.user_id == user_id, expenses.c.is_deleted.is_(False))
                .order_by(expenses.c.id.asc())
                .limit(1)
            ).scalar_one_or_none()
        if first_currency:
            try:
                return normalize_currency(first_currency)
            except ValueError:
                pass
        return SYSTEM_DEFAULT_CURRENCY

    def set_default_currency(self, user_id: int, currency: str) -> str:
        normalized = normalize_currency(currency)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(users).where(users.c.id == user_id).values(default_currency=normalized)
            )
            if result.rowcount == 0:
                raise ExpenseNotFound("User not found.")
        return normalized

    # Categories

    def list_categories(self, user_id: int) -> list[dict[str, Any]]:
        stmt = (
            select(categories.c.id, categories.c.name)
            .where(categories.c.user_id == user_id, categories.c.is_active.is_(True))
            .order_by(categories.c.name.asc())
        )
        with self.engine.begin() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings().all()]

    def create_category(self, user_id: int, name: str) -> dict[str, Any]:
        cleaned = _clean_category_name(name)
        with self.engine.begin() as conn:
            inactive = conn.execute(
                select(categories.c.id).where(
                    categories.c.user_id == user_id,
                    categories.c.name == cleaned,
                    categories.c.is_active.is_(False),
                )
            ).scalar_one_or_none()
            if inactive is not None:
                conn.execute(
                    update(categories).where(categories.c.id == inactive).values(is_active=True)
                )
                return {"id": inactive, "name": cleaned}
            row = conn.execute(
                insert(categories)
                .values(user_id=user_id, name=cleaned)
                .returning(categories.c.id, categories.c.name)
            ).mappings().first()
        return dict(row)

    def update_category(self, user_id: int, category_id: int, name: str) -> dict[str, Any]:
        cleaned = _clean_category_name(name)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(categories)
                .where(
                    categories.c.id == category_id,
                    categories.c.user_id == user_id,
                    categories.c.is_active.is_(True),
                )
                .values(name=cleaned)
            )
            if result.rowcount == 0:
                raise ExpenseNotFound("Category not found.")
        return {"id": category_id, "name": cleaned}

    def delete_category(self, user_id: int, category_id: int) -> bool:
        """Remove a category, or deactivate it while live expenses still use it.

        Returns True when the row was deleted and False when it was only
        deactivated. Deactivated categories keep labelling their expenses in
        reports but are no longer listed.
        """
        with self.engine.begin() as conn:
            owned = conn.execute(
                select(categories.c.id).where(
                    categories.c.id == category_id,
                    categories.c.user_id == user_id,
                    categories.c.is_active.is_(True),
                )
            ).first()
            if not owned:
                raise ExpenseNotFound("Category not found.")
            in_use = conn.execute(
                select(expenses.c.id)
                .where(expenses.c.category_id == category_id, expenses.c.is_deleted.is_(False))
                .limit(1)
            ).first()
            if in_use:
                conn.execute(
                    update(categories)
                    .where(categories.c.id == category_id)
                    .values(is_active=False)
                )
                logger.info("Deactivated category %s for user %s", category_id, user_id)
                return False
            conn.execute(
                update(expenses)
                .where(expenses.c.category_id == category_id)
                .values(category_id=None)
            )
            conn.execute(delete(categories).where(categories.c.id == category_id))
        logger.info("Deleted category %s for user %s", category_id, user_id)
        return True

    # Expenses

    def create_expense(
        self,
        user_id: int,
        *,
        amount: Decimal,
        currency: str,
        expense_date: date,
        description: str = "",
        category_id: Optional[int] = None,
        is_tax_deductible: bool = False,
        is_recurring: bool = False,
        recurring_frequency: Optional[str] = None,
        recurring_end_date: Optional[date] = None,
    ) -> Expense:
        with self.engine.begin() as conn:
            values = self._expense_values(
                conn,
                user_id,
                amount=amount,
                currency=currency,
                expense_date=expense_date,
                description=description,
                category_id=category_id,
                is_tax_deductible=is_tax_deductible,
                is_recurring=is_recurring,
                recurring_frequency=recurring_frequency,
                recurring_end_date=recurring_end_date,
            )
            expense_id = conn.execute(
                insert(expenses).values(user_id=user_id, **values).returning(expenses.c.id)
            ).scalar_one()
        logger.info("Created expense %s for user %s", expense_id, user_id)
        return self.get_expense(user_id, expense_id)

    def update_expense(
        self,
        user_id: int,
        expense_id: int,
        *,
        amount: Decimal,
        currency: str,
        expense_date: date,
        description: str = "",
        category_id: Optional[int] = None,
        is_tax_deductible: bool = False,
        is_recurring: bool = False,
        recurring_frequency: Optional[str] = None,
        recurring_end_date: Optional[date] = None,
    ) -> Expense:
        """Replace every editable field of an expense.

        Applies the same validation as ``create_expense``.
        """
        with self.engine.begin() as conn:
            values = self._expense_values(
                conn,
                user_id,
                amount=amount,
                currency=currency,
                expense_date=expense_date,
                description=description,
                category_id=category_id,
                is_tax_deductible=is_tax_deductible,
                is_recurring=is_recurring,
                recurring_frequency=recurring_frequency,
                recurring_end_date=recurring_end_date,
            )
            result = conn.execute(
                update(expenses)
                .where(
                    expenses.c.id == expense_id,
                    expenses.c.user_id == user_id,
                    expenses.c.is_deleted.is_(False),
                )
                .values(**values)
            )
            if result.rowcount == 0:
                raise ExpenseNotFound("Expense not found.")
        logger.info("Updated expense %s for user %s", expense_id, user_id)
        return self.get_expense(user_id, expense_id)

    def get_expense(self, user_id: int, expense_id: int) -> Expense:
        stmt = self._expense_query(user_id).where(expenses.c.id == expense_id)
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            raise ExpenseNotFound("Expense not found.")
        return _row_to_expense(row)

    def delete_expense(self, user_id: int, expense_id: int) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(expenses)
                .where(
                    expenses.c.id == expense_id,
                    expenses.c.user_id == user_id,
                    expenses.c.is_deleted.is_(False),
                )
                .values(is_deleted=True)
            )
            if result.rowcount == 0:
                raise ExpenseNotFound("Expense not found.")

    def list_expenses(
        self, user_id: int, filters: Optional[ExpenseFilter] = None
    ) -> list[Expense]:
        filters = filters or ExpenseFilter()
        stmt = self._expense_query(user_id)
        if filters.search_term and filters.search_term.strip():
            stmt = stmt.where(expenses.c.description.ilike(f"%{filters.search_term.strip()}%"))
        if filters.category_id is not None:
            stmt = stmt.where(expenses.c.category_id == filters.category_id)
        if filters.currency:
            stmt = stmt.where(expenses.c.currency == normalize_currency(filters.currency))
        if filters.is_tax_deductible is not None:
            stmt = stmt.where(expenses.c.is_tax_deductible.is_(filters.is_tax_deductible))
        if filters.start_date is not None:
            stmt = stmt.where(expenses.c.expense_date >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(expenses.c.expense_date <= filters.end_date)
        stmt = stmt.order_by(expenses.c.expense_date.desc(), expenses.c.id.desc())
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_expense(row) for row in rows]

    def expenses_in_range(self, user_id: int, start: date, end: date) -> list[Expense]:
        return self.list_expenses(user_id, ExpenseFilter(start_date=start, end_date=end))

    def list_recurring_expenses(self, user_id: int) -> list[Expense]:
        stmt = (
            self._expense_query(user_id)
            .where(expenses.c.is_recurring.is_(True))
            .order_by(expenses.c.description.asc(), expenses.c.id.asc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_expense(row) for row in rows]

    def _expense_values(
        self,
        conn,
        user_id: int,
        *,
        amount: Decimal,
        currency: str,
        expense_date: date,
        description: str,
        category_id: Optional[int],
        is_tax_deductible: bool,
        is_recurring: bool,
        recurring_frequency: Optional[str],
        recurring_end_date: Optional[date],
    ) -> dict[str, Any]:
        if amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        frequency = parse_frequency(recurring_frequency)
        if is_recurring and frequency is None:
            raise ValueError("Recurring expenses require a recurring_frequency.")
        if not is_recurring:
            frequency = None
            recurring_end_date = None
        if category_id is not None:
            owned = conn.execute(
                select(categories.c.id).where(
                    categories.c.id == category_id, categories.c.user_id == user_id
                )
            ).first()
            if not owned:
                raise ExpenseNotFound("Category not found.")
        return {
            "category_id": category_id,
            "description": description.strip(),
            "amount": amount,
            "currency": normalize_currency(currency),
            "expense_date": expense_date,
            "is_tax_deductible": is_tax_deductible,
            "is_recurring": is_recurring,
            "recurring_frequency": frequency.value if frequency else None,
            "recurring_end_date": recurring_end_date,
        }

    def _expense_query(self, user_id: int):
        return (
            select(expenses, categories.c.name.label("category_name"))
            .select_from(
                expenses.outerjoin(categories, expenses.c.category_id == categories.c.id)
            )
            .where(expenses.c.user_id == user_id, expenses.c.is_deleted.is_(False))
        )

    def _ensure_default_categories(self, conn, user_id: int) -> None:
        existing = conn.execute(
            select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
        ).first()
        if existing:
            return
        conn.execute(
            insert(categories),
            [{"user_id": user_id, "name": name} for name in DEFAULT_CATEGORIES],
        )


def _clean_category_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Category name required.")
    return cleaned


def _row_to_expense(row) -> Expense:
    amount = row["amount"]
    return Expense(
        id=row["id"],
        user_id=row["user_id"],
        amount=amount if isinstance(amount, Decimal) else Decimal(str(amount)),
        currency=row["currency"],
        date=row["expense_date"],
        category=row["category_name"],
        description=row["description"] or "",
        is_tax_deductible=bool(row["is_tax_deductible"]),
        is_recurring=bool(row["is_recurring"]),
        recurring_frequency=parse_frequency(row["recurring_frequency"]),
        recurring_end_date=row["recurring_end_date"],
    )
