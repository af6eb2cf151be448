from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional, Union

from expense_tracker.expenses import Expense
from expense_tracker.recurrence import adjusted_amount

ZERO = Decimal("0")
DAYS_PER_MONTH = Decimal("30.44")

PERIOD_MONTHLY = "monthly"
PERIOD_ANNUAL = "annual"
PERIOD_FINANCIAL_YEAR = "financial_year"
PERIOD_CUSTOM = "custom"

MONTH_BUCKET_FORMAT = "%Y-%m"
DAY_BUCKET_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True)
class ReportPeriod:
    start: date
    end: date
    kind: str = PERIOD_CUSTOM

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError("start must be on or before end.")

    @classmethod
    def month(cls, year: int, month: int) -> "ReportPeriod":
        if not 1 <= month <= 12:
            raise ValueError("month must be between 1 and 12.")
        last_day = monthrange(year, month)[1]
        return cls(date(year, month, 1), date(year, month, last_day), PERIOD_MONTHLY)

    @classmethod
    def year(cls, year: int, financial_year: bool = False) -> "ReportPeriod":
        if financial_year:
            return cls(date(year, 7, 1), date(year + 1, 6, 30), PERIOD_FINANCIAL_YEAR)
        return cls(date(year, 1, 1), date(year, 12, 31), PERIOD_ANNUAL)

    @classmethod
    def custom(cls, start: date, end: date) -> "ReportPeriod":
        return cls(_as_date(start), _as_date(end), PERIOD_CUSTOM)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    @property
    def months_in_period(self) -> Decimal:
        if self.kind == PERIOD_MONTHLY:
            return Decimal(1)
        if self.kind in {PERIOD_ANNUAL, PERIOD_FINANCIAL_YEAR}:
            return Decimal(12)
        return Decimal(self.days) / DAYS_PER_MONTH

    @property
    def is_financial_year(self) -> bool:
        return self.kind == PERIOD_FINANCIAL_YEAR

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


@dataclass(frozen=True)
class ConvertedTotals:
    """Report figures expressed in the reference currency.

    Everything except ``total_amount`` and ``currency_breakdown`` is a
    proportional estimate, see ``estimate_converted_share``.
    """

    currency: str
    total_amount: Decimal
    currency_breakdown: dict[str, Decimal] = field(default_factory=dict)
    exchange_rates: dict[str, Decimal] = field(default_factory=dict)
    last_updated: Optional[datetime] = None
    category_breakdown: dict[str, Decimal] = field(default_factory=dict)
    tax_deductible_amount: Decimal = ZERO
    recurring_amount: Decimal = ZERO
    date_breakdown: dict[str, Decimal] = field(default_factory=dict)
    average_transaction_amount: Optional[Decimal] = None
    is_success: bool = True
    error_message: Optional[str] = None


@dataclass
class MonthlyReport:
    year: int
    month: int
    period: ReportPeriod
    total_amount: Decimal = ZERO
    tax_deductible_amount: Decimal = ZERO
    recurring_amount: Decimal = ZERO
    total_transactions: int = 0
    category_breakdown: dict[str, Decimal] = field(default_factory=dict)
    currency_breakdown: dict[str, Decimal] = field(default_factory=dict)
    conversion: Optional[ConvertedTotals] = None

    @property
    def month_name(self) -> str:
        return date(self.year, self.month, 1).strftime("%B")

    @property
    def date_breakdown(self) -> dict[str, Decimal]:
        return {}


@dataclass
class AnnualReport:
    year: int
    is_financial_year: bool
    period: ReportPeriod
    total_amount: Decimal = ZERO
    tax_deductible_amount: Decimal = ZERO
    recurring_amount: Decimal = ZERO
    total_transactions: int = 0
    category_breakdown: dict[str, Decimal] = field(default_factory=dict)
    currency_breakdown: dict[str, Decimal] = field(default_factory=dict)
    monthly_breakdown: dict[str, Decimal] = field(default_factory=dict)
    conversion: Optional[ConvertedTotals] = None

    @property
    def date_breakdown(self) -> dict[str, Decimal]:
        return self.monthly_breakdown


@dataclass
class CustomReport:
    from_date: date
    to_date: date
    period: ReportPeriod
    total_amount: Decimal = ZERO
    tax_deductible_amount: Decimal = ZERO
    recurring_amount: Decimal = ZERO
    total_transactions: int = 0
    average_transaction_amount: Decimal = ZERO
    category_breakdown: dict[str, Decimal] = field(default_factory=dict)
    currency_breakdown: dict[str, Decimal] = field(default_factory=dict)
    daily_breakdown: dict[str, Decimal] = field(default_factory=dict)
    conversion: Optional[ConvertedTotals] = None

    @property
    def date_breakdown(self) -> dict[str, Decimal]:
        return self.daily_breakdown


ReportData = Union[MonthlyReport, AnnualReport, CustomReport]


@dataclass(frozen=True)
class _Totals:
    total_amount: Decimal
    tax_deductible_amount: Decimal
    recurring_amount: Decimal
    total_transactions: int
    category_breakdown: dict[str, Decimal]
    currency_breakdown: dict[str, Decimal]
    date_breakdown: dict[str, Decimal]


def build_report(expenses: Iterable[Expense], period: ReportPeriod) -> ReportData:
    if period.kind == PERIOD_MONTHLY:
        return build_monthly_report(expenses, period.start.year, period.start.month)
    if period.kind in {PERIOD_ANNUAL, PERIOD_FINANCIAL_YEAR}:
        return build_annual_report(
            expenses, period.start.year, financial_year=period.is_financial_year
        )
    return build_custom_report(expenses, period.start, period.end)


def build_monthly_report(expenses: Iterable[Expense], year: int, month: int) -> MonthlyReport:
    period = ReportPeriod.month(year, month)
    totals = _aggregate(expenses, period, bucket_format=None)
    return MonthlyReport(
        year=year,
        month=month,
        period=period,
        total_amount=totals.total_amount,
        tax_deductible_amount=totals.tax_deductible_amount,
        recurring_amount=totals.recurring_amount,
        total_transactions=totals.total_transactions,
        category_breakdown=totals.category_breakdown,
        currency_breakdown=totals.currency_breakdown,
    )


def build_annual_report(
    expenses: Iterable[Expense],
    year: int,
    financial_year: bool = False,
) -> AnnualReport:
    period = ReportPeriod.year(year, financial_year=financial_year)
    totals = _aggregate(expenses, period, bucket_format=MONTH_BUCKET_FORMAT)
    return AnnualReport(
        year=year,
        is_financial_year=financial_year,
        period=period,
        total_amount=totals.total_amount,
        tax_deductible_amount=totals.tax_deductible_amount,
        recurring_amount=totals.recurring_amount,
        total_transactions=totals.total_transactions,
        category_breakdown=totals.category_breakdown,
        currency_breakdown=totals.currency_breakdown,
        monthly_breakdown=totals.date_breakdown,
    )


def build_custom_report(
    expenses: Iterable[Expense],
    from_date: date,
    to_date: date,
) -> CustomReport:
    period = ReportPeriod.custom(from_date, to_date)
    totals = _aggregate(expenses, period, bucket_format=DAY_BUCKET_FORMAT)
    return CustomReport(
        from_date=period.start,
        to_date=period.end,
        period=period,
        total_amount=totals.total_amount,
        tax_deductible_amount=totals.tax_deductible_amount,
        recurring_amount=totals.recurring_amount,
        total_transactions=totals.total_transactions,
        average_transaction_amount=_average(totals.total_amount, totals.total_transactions),
        category_breakdown=totals.category_breakdown,
        currency_breakdown=totals.currency_breakdown,
        daily_breakdown=totals.date_breakdown,
    )


def _aggregate(
    expenses: Iterable[Expense],
    period: ReportPeriod,
    *,
    bucket_format: Optional[str],
) -> _Totals:
    # Only tax-deductible expenses inside the period are reported.
    included = [
        expense
        for expense in expenses
        if expense.is_tax_deductible and period.contains(_as_date(expense.date))
    ]
    months = period.months_in_period

    total = ZERO
    recurring_total = ZERO
    by_category: dict[str, Decimal] = {}
    by_currency: dict[str, Decimal] = {}
    by_date: dict[str, Decimal] = {}
    for expense in included:
        amount = adjusted_amount(expense, months)
        total += amount
        if expense.is_recurring:
            recurring_total += amount
        _add(by_category, expense.category_name, amount)
        _add(by_currency, expense.currency, amount)
        if bucket_format:
            _add(by_date, _as_date(expense.date).strftime(bucket_format), amount)

    return _Totals(
        total_amount=total,
        tax_deductible_amount=total,
        recurring_amount=recurring_total,
        total_transactions=len(included),
        category_breakdown=by_category,
        currency_breakdown=by_currency,
        date_breakdown=by_date,
    )


def _add(breakdown: dict[str, Decimal], key: str, amount: Decimal) -> None:
    breakdown[key] = breakdown.get(key, ZERO) + amount


def _average(total: Decimal, count: int) -> Decimal:
    if count <= 0:
        return ZERO
    return total / count


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
