from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from expense_tracker.expenses import Expense


class RecurringFrequency(str, Enum):
    WEEKLY = "weekly"
    FORTNIGHTLY = "fortnightly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


# Occurrences per month for each cadence.
FREQUENCY_MULTIPLIERS: dict[RecurringFrequency, Decimal] = {
    RecurringFrequency.WEEKLY: Decimal(52) / Decimal(12),
    RecurringFrequency.FORTNIGHTLY: Decimal(26) / Decimal(12),
    RecurringFrequency.MONTHLY: Decimal(1),
    RecurringFrequency.QUARTERLY: Decimal(1) / Decimal(3),
    RecurringFrequency.ANNUALLY: Decimal(1) / Decimal(12),
}

FREQUENCY_ALIASES = {
    "biweekly": RecurringFrequency.FORTNIGHTLY,
    "byweekly": RecurringFrequency.FORTNIGHTLY,
    "yearly": RecurringFrequency.ANNUALLY,
}


def parse_frequency(value: str | RecurringFrequency | None) -> Optional[RecurringFrequency]:
    if value is None or isinstance(value, RecurringFrequency):
        return value
    normalized = _normalize_frequency(value)
    if not normalized:
        return None
    if normalized in FREQUENCY_ALIASES:
        return FREQUENCY_ALIASES[normalized]
    try:
        return RecurringFrequency(normalized)
    except ValueError as exc:
        raise ValueError(
            "Only weekly, fortnightly, monthly, quarterly, or annually frequencies are supported."
        ) from exc


def frequency_multiplier(frequency: Optional[RecurringFrequency]) -> Decimal:
    if frequency is None:
        return FREQUENCY_MULTIPLIERS[RecurringFrequency.MONTHLY]
    return FREQUENCY_MULTIPLIERS[frequency]


def adjusted_amount(expense: "Expense", period_length_in_months: Decimal | int) -> Decimal:
    """Return the amount an expense contributes to a period of the given length.

    A recurring expense is scaled by its occurrences per month and the period
    length; occurrences are not counted against the calendar.
    ``recurring_end_date`` is not consulted.
    """
    amount = _coerce_amount(expense.amount)
    if not expense.is_recurring:
        return amount
    months = _coerce_amount(period_length_in_months)
    return amount * frequency_multiplier(expense.recurring_frequency) * months


def _normalize_frequency(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
