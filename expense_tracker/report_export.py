from __future__ import annotations

import csv
import io
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable, Mapping

from expense_tracker.report_engine import AnnualReport, CustomReport, MonthlyReport, ReportData

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
    "CAD": "C$",
    "INR": "₹",
    "JPY": "¥",
    "CNY": "¥",
}

CENTS = Decimal("0.01")


def currency_symbol(currency: str) -> str:
    normalized = (currency or "").strip().upper()
    return CURRENCY_SYMBOLS.get(normalized, normalized)


def format_money(amount: Decimal | int | float | str, currency: str) -> str:
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    quantized = value.quantize(CENTS, rounding=ROUND_HALF_EVEN)
    sign = "-" if quantized < 0 else ""
    return f"{sign}{currency_symbol(currency)}{abs(quantized):,.2f}"


def report_title(report: ReportData) -> str:
    if isinstance(report, MonthlyReport):
        return f"Monthly Report - {report.month_name} {report.year}"
    if isinstance(report, AnnualReport):
        if report.is_financial_year:
            return f"Financial Year Report - FY{report.year}/{report.year + 1}"
        return f"Annual Report - {report.year}"
    if isinstance(report, CustomReport):
        return (
            f"Custom Report - {report.from_date:%d %b %Y} to {report.to_date:%d %b %Y}"
        )
    raise ValueError(f"Unsupported report: {type(report).__name__}")


def report_date_range(report: ReportData) -> str:
    if isinstance(report, MonthlyReport):
        return f"{report.month_name} {report.year}"
    if isinstance(report, AnnualReport):
        if report.is_financial_year:
            return f"1 July {report.year} - 30 June {report.year + 1}"
        return f"1 January {report.year} - 31 December {report.year}"
    if isinstance(report, CustomReport):
        return f"{report.from_date:%d %b %Y} - {report.to_date:%d %b %Y}"
    raise ValueError(f"Unsupported report: {type(report).__name__}")


def report_filename(report: ReportData) -> str:
    if isinstance(report, MonthlyReport):
        return f"Monthly_Report_{report.month_name}_{report.year}.csv"
    if isinstance(report, AnnualReport):
        if report.is_financial_year:
            return f"Financial_Year_Report_FY{report.year}_{report.year + 1}.csv"
        return f"Annual_Report_{report.year}.csv"
    if isinstance(report, CustomReport):
        return f"Custom_Report_{report.from_date:%Y%m%d}_{report.to_date:%Y%m%d}.csv"
    raise ValueError(f"Unsupported report: {type(report).__name__}")


def report_to_csv(report: ReportData, display_currency: str) -> str:
    """Render a report as CSV text.

    Summary rows and category/date sections use ``display_currency``; the
    currency section formats each bucket in its own currency.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    def money(amount: Decimal) -> str:
        return format_money(amount, display_currency)

    writer.writerow([report_title(report)])
    writer.writerow([])
    writer.writerow(["Total Amount", money(report.total_amount)])
    writer.writerow(["Tax Deductible Amount", money(report.tax_deductible_amount)])
    writer.writerow(["Recurring Amount", money(report.recurring_amount)])
    writer.writerow(["Total Transactions", report.total_transactions])
    if isinstance(report, CustomReport):
        writer.writerow(
            ["Average Transaction Amount", money(report.average_transaction_amount)]
        )

    if isinstance(report, AnnualReport):
        _write_section(writer, "Monthly Breakdown:", "Month", _sorted(report.monthly_breakdown), money)
    elif isinstance(report, CustomReport):
        _write_section(writer, "Daily Breakdown:", "Date", _sorted(report.daily_breakdown), money)

    _write_section(
        writer, "Category Breakdown:", "Category", report.category_breakdown.items(), money
    )
    _write_section(
        writer,
        "Currency Breakdown:",
        "Currency",
        report.currency_breakdown.items(),
        None,
    )
    return buffer.getvalue()


def _write_section(writer, label: str, key_header: str, rows: Iterable, money) -> None:
    writer.writerow([])
    writer.writerow([label])
    writer.writerow([key_header, "Amount"])
    for key, amount in rows:
        formatted = money(amount) if money else format_money(amount, key)
        writer.writerow([key, formatted])


def _sorted(breakdown: Mapping[str, Decimal]) -> list[tuple[str, Decimal]]:
    return sorted(breakdown.items())
