from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Callable, Mapping, Optional, Protocol

from expense_tracker.logging_config import get_logger
from expense_tracker.rate_cache import RateCache, RateSnapshot, utc_now
from expense_tracker.settings import normalize_currency

logger = get_logger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")


class RateSource(Protocol):
    def fetch_latest(self, base_currency: str | None = None) -> RateSnapshot:
        ...


@dataclass(frozen=True)
class ConversionResult:
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    converted_currency: str
    exchange_rate: Decimal
    rate_timestamp: datetime
    is_success: bool
    error_message: Optional[str] = None


class CurrencyConverter:
    """Converts amounts into a reference currency.

    Rates come from ``cache`` while fresh and from ``source`` otherwise.
    ``convert`` never raises; failures come back as an identity conversion
    with ``is_success`` False.
    """

    def __init__(
        self,
        source: RateSource,
        cache: RateCache,
        reference_currency: str = "AUD",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.source = source
        self.cache = cache
        self.reference_currency = normalize_currency(reference_currency)
        self.clock = clock

    def get_latest_rates(self) -> RateSnapshot:
        cached = self.cache.get()
        if cached is not None:
            logger.info("Using cached exchange rates for %s", self.reference_currency)
            return cached
        return self.source.fetch_latest(self.reference_currency)

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str | None = None,
    ) -> ConversionResult:
        coerced = _coerce_amount(amount)
        source = (from_currency or "").strip().upper()
        target = (to_currency or self.reference_currency).strip().upper()

        if source == target:
            return self._identity(coerced, source, target, is_success=True)

        try:
            snapshot = self.get_latest_rates()
            source_rate = _rate_for(snapshot, source)
            target_rate = _rate_for(snapshot, target)
            if source_rate is None or target_rate is None:
                missing = source if source_rate is None else target
                logger.warning(
                    "Could not find exchange rate for %s, returning original amount", missing
                )
                return self._identity(
                    coerced,
                    source,
                    target,
                    is_success=False,
                    error_message=f"Exchange rate not found for {missing}",
                    rate_timestamp=snapshot.last_updated,
                )
            rate = source_rate / target_rate
            converted = (coerced / rate).quantize(CENTS, rounding=ROUND_HALF_EVEN)
            return ConversionResult(
                original_amount=coerced,
                original_currency=source,
                converted_amount=converted,
                converted_currency=target,
                exchange_rate=rate,
                rate_timestamp=snapshot.last_updated,
                is_success=snapshot.is_success,
                error_message=snapshot.error_message,
            )
        except Exception:
            logger.exception("Error during currency conversion from %s to %s", source, target)
            return self._identity(
                coerced,
                source,
                target,
                is_success=False,
                error_message="Currency conversion failed",
            )

    def convert_each(self, amounts: Mapping[str, Decimal]) -> dict[str, ConversionResult]:
        return {
            currency: self.convert(amount, currency)
            for currency, amount in amounts.items()
        }

    def convert_breakdown(self, amounts: Mapping[str, Decimal]) -> Decimal:
        total = ZERO
        for result in self.convert_each(amounts).values():
            total += result.converted_amount
        return total

    def clear_cache(self) -> None:
        self.cache.clear()

    def _identity(
        self,
        amount: Decimal,
        source: str,
        target: str,
        is_success: bool,
        error_message: str | None = None,
        rate_timestamp: datetime | None = None,
    ) -> ConversionResult:
        return ConversionResult(
            original_amount=amount,
            original_currency=source,
            converted_amount=amount,
            converted_currency=target,
            exchange_rate=ONE,
            rate_timestamp=rate_timestamp or self.clock(),
            is_success=is_success,
            error_message=error_message,
        )


def estimate_converted_share(
    sub_amount: Decimal,
    total_original: Decimal,
    total_converted: Decimal,
) -> Decimal:
    """Estimate a sub-total in the reference currency.

    The sub-total is assumed to share the currency mix of the whole, so the
    result is approximate whenever that mix differs.
    """
    if total_original == ZERO:
        return ZERO
    share = _coerce_amount(sub_amount) / _coerce_amount(total_original)
    return (_coerce_amount(total_converted) * share).quantize(CENTS, rounding=ROUND_HALF_EVEN)


def _rate_for(snapshot: RateSnapshot, currency: str) -> Decimal | None:
    if currency == snapshot.base_currency:
        return ONE
    rate = snapshot.rates.get(currency)
    if rate is None or rate == ZERO:
        return None
    return _coerce_amount(rate)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
