from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from expense_tracker.recurrence import RecurringFrequency

UNCATEGORIZED = "Uncategorized"


@dataclass(frozen=True)
class Expense:
    amount: Decimal
    currency: str
    date: date
    user_id: int = 0
    id: Optional[int] = None
    category: Optional[str] = None
    description: str = ""
    is_tax_deductible: bool = False
    is_recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None
    recurring_end_date: Optional[date] = None

    @property
    def category_name(self) -> str:
        return self.category or UNCATEGORIZED


@dataclass(frozen=True)
class ExpenseFilter:
    """Optional predicates applied by the expense store."""

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_id: Optional[int] = None
    currency: Optional[str] = None
    is_tax_deductible: Optional[bool] = None
    search_term: Optional[str] = None
