from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Protocol

from expense_tracker.currency_conversion import CurrencyConverter, estimate_converted_share
from expense_tracker.expenses import Expense
from expense_tracker.logging_config import get_logger
from expense_tracker.report_engine import (
    AnnualReport,
    ConvertedTotals,
    CustomReport,
    MonthlyReport,
    ReportData,
    ReportPeriod,
    build_annual_report,
    build_custom_report,
    build_monthly_report,
)
from expense_tracker.report_export import report_date_range, report_title

logger = get_logger(__name__)

REPORT_MONTHLY = "monthly"
REPORT_ANNUAL = "annual"
REPORT_CUSTOM = "custom"
REPORT_TYPES = {REPORT_MONTHLY, REPORT_ANNUAL, REPORT_CUSTOM}

CUSTOM_REPORT_TITLE = "Custom Period Report"


class ExpenseSource(Protocol):
    def expenses_in_range(self, user_id: int, start: date, end: date) -> list[Expense]:
        ...


@dataclass(frozen=True)
class ReportRequest:
    report_type: str
    year: int
    month: Optional[int] = None
    financial_year: bool = False
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    convert: bool = False


@dataclass
class ReportView:
    request: ReportRequest
    title: str = ""
    date_range: str = ""
    monthly_report: Optional[MonthlyReport] = None
    annual_report: Optional[AnnualReport] = None
    custom_report: Optional[CustomReport] = None

    @property
    def report(self) -> Optional[ReportData]:
        return self.monthly_report or self.annual_report or self.custom_report


class ReportService:
    """Builds reports for a user and optionally converts them.

    Store failures propagate to the caller. Conversion failures never do;
    they are reported on ``report.conversion``.
    """

    def __init__(self, store: ExpenseSource, converter: CurrencyConverter) -> None:
        self.store = store
        self.converter = converter

    def monthly_report(
        self, user_id: int, year: int, month: int, convert: bool = False
    ) -> MonthlyReport:
        period = ReportPeriod.month(year, month)
        expenses = self._load(user_id, period)
        report = build_monthly_report(expenses, year, month)
        return self.attach_conversion(report) if convert else report

    def annual_report(
        self,
        user_id: int,
        year: int,
        financial_year: bool = False,
        convert: bool = False,
    ) -> AnnualReport:
        period = ReportPeriod.year(year, financial_year=financial_year)
        expenses = self._load(user_id, period)
        report = build_annual_report(expenses, year, financial_year=financial_year)
        return self.attach_conversion(report) if convert else report

    def custom_report(
        self,
        user_id: int,
        from_date: date,
        to_date: date,
        convert: bool = False,
    ) -> CustomReport:
        period = ReportPeriod.custom(from_date, to_date)
        expenses = self._load(user_id, period)
        report = build_custom_report(expenses, from_date, to_date)
        return self.attach_conversion(report) if convert else report

    def generate(self, user_id: int, request: ReportRequest) -> ReportView:
        """Build the report a request asks for.

        A monthly request without a month, or a custom request without both
        dates or with a reversed range, yields a view with no report rather
        than an error. Custom views use a generic title; the dated title is
        kept for the CSV download.
        """
        view = ReportView(request=request)
        report_type = request.report_type.strip().lower()
        if report_type == REPORT_MONTHLY:
            if request.month is None:
                return view
            view.monthly_report = self.monthly_report(
                user_id, request.year, request.month, convert=request.convert
            )
        elif report_type == REPORT_ANNUAL:
            view.annual_report = self.annual_report(
                user_id,
                request.year,
                financial_year=request.financial_year,
                convert=request.convert,
            )
        elif report_type == REPORT_CUSTOM:
            if request.from_date is None or request.to_date is None:
                return view
            if request.from_date > request.to_date:
                return view
            view.custom_report = self.custom_report(
                user_id, request.from_date, request.to_date, convert=request.convert
            )
        else:
            raise ValueError(f"Unsupported report_type: {request.report_type}")

        view.title = (
            CUSTOM_REPORT_TITLE if view.custom_report else report_title(view.report)
        )
        view.date_range = report_date_range(view.report)
        return view

    def attach_conversion(self, report: ReportData) -> ReportData:
        try:
            report.conversion = self._convert_report(report)
        except Exception:
            logger.exception("Error converting report to %s", self.converter.reference_currency)
            report.conversion = _unconverted_totals(
                report, self.converter.reference_currency, "Currency conversion failed"
            )
        return report

    def _load(self, user_id: int, period: ReportPeriod) -> list[Expense]:
        return self.store.expenses_in_range(user_id, period.start, period.end)

    def _convert_report(self, report: ReportData) -> ConvertedTotals:
        reference = self.converter.reference_currency
        results = self.converter.convert_each(report.currency_breakdown)
        currency_breakdown = {
            currency: result.converted_amount for currency, result in results.items()
        }
        total_converted = sum(currency_breakdown.values(), Decimal("0"))
        failures = [result for result in results.values() if not result.is_success]
        # Same-currency buckets never consult a snapshot.
        timestamps = [
            result.rate_timestamp
            for result in results.values()
            if result.original_currency != result.converted_currency
        ]

        def share(amount: Decimal) -> Decimal:
            return estimate_converted_share(amount, report.total_amount, total_converted)

        average = None
        if isinstance(report, CustomReport):
            average = share(report.average_transaction_amount)

        return ConvertedTotals(
            currency=reference,
            total_amount=total_converted,
            currency_breakdown=currency_breakdown,
            exchange_rates={
                currency: result.exchange_rate for currency, result in results.items()
            },
            last_updated=max(timestamps) if timestamps else None,
            category_breakdown={
                key: share(amount) for key, amount in report.category_breakdown.items()
            },
            tax_deductible_amount=share(report.tax_deductible_amount),
            recurring_amount=share(report.recurring_amount),
            date_breakdown={
                key: share(amount) for key, amount in report.date_breakdown.items()
            },
            average_transaction_amount=average,
            is_success=not failures,
            error_message=next(
                (result.error_message for result in failures if result.error_message), None
            ),
        )


def _unconverted_totals(report: ReportData, currency: str, error_message: str) -> ConvertedTotals:
    average = None
    if isinstance(report, CustomReport):
        average = report.average_transaction_amount
    return ConvertedTotals(
        currency=currency,
        total_amount=report.total_amount,
        currency_breakdown=dict(report.currency_breakdown),
        exchange_rates={code: Decimal("1") for code in report.currency_breakdown},
        category_breakdown=dict(report.category_breakdown),
        tax_deductible_amount=report.tax_deductible_amount,
        recurring_amount=report.recurring_amount,
        date_breakdown=dict(report.date_breakdown),
        average_transaction_amount=average,
        is_success=False,
        error_message=error_message,
    )

