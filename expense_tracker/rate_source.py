from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
import json
from typing import Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from expense_tracker.logging_config import get_logger
from expense_tracker.rate_cache import RateCache, RateSnapshot, utc_now
from expense_tracker.settings import normalize_currency

logger = get_logger(__name__)

DEFAULT_API_URL = "https://v6.exchangerate-api.com/v6"
DEFAULT_TIMEOUT_SECONDS = 10
STATIC_RATES_BASE = "AUD"

# Approximate units per 1 AUD, used only when no live or cached rates exist.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("0.65"),
    "EUR": Decimal("0.61"),
    "GBP": Decimal("0.52"),
    "AUD": Decimal("1.0"),
    "CAD": Decimal("0.91"),
    "INR": Decimal("55.0"),
    "JPY": Decimal("96.0"),
    "CNY": Decimal("4.7"),
}

FALLBACK_MESSAGE = "Using cached rates due to API unavailability"
STATIC_MESSAGE = "Exchange rate service unavailable. Using approximate rates."


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class StaticRateSource:
    """Deterministic, in-memory rates flagged as approximate."""

    rates: Mapping[str, Decimal] = None
    base_currency: str = STATIC_RATES_BASE
    clock: Callable[[], datetime] = utc_now

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch_latest(self, base_currency: str | None = None) -> RateSnapshot:
        return RateSnapshot(
            base_currency=self.base_currency,
            rates=dict(self.rates),
            last_updated=self.clock(),
            is_success=False,
            error_message=STATIC_MESSAGE,
        )


@dataclass
class ExchangeRateApiSource:
    """Live rates from an exchangerate-api style ``latest/<base>`` endpoint.

    ``fetch_latest`` never raises: failures fall back to the cache's
    fallback slot, then to ``static``.
    """

    cache: RateCache
    base_url: str = DEFAULT_API_URL
    api_key: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    static: StaticRateSource = field(default_factory=StaticRateSource)
    clock: Callable[[], datetime] = utc_now

    def fetch_latest(self, base_currency: str | None = None) -> RateSnapshot:
        base = normalize_currency(base_currency or self.cache.base_currency)
        try:
            logger.info("Fetching latest exchange rates for %s", base)
            rates = self._fetch_rates(base)
        except RateProviderUnavailable as exc:
            logger.error("Error fetching exchange rates: %s", exc)
            return self._fallback_rates()

        snapshot = RateSnapshot(
            base_currency=base,
            rates=rates,
            last_updated=self.clock(),
            is_success=True,
        )
        if base != self.cache.base_currency.upper():
            # The cache only holds rates for its own base currency.
            logger.info("Fetched exchange rates for %s without caching", base)
            return snapshot
        self.cache.put(snapshot)
        logger.info("Fetched and cached exchange rates for %s", base)
        return snapshot

    def rates_url(self, base_currency: str) -> str:
        root = self.base_url.rstrip("/")
        if self.api_key:
            return f"{root}/{self.api_key}/latest/{base_currency}"
        return f"{root}/latest/{base_currency}"

    def _fetch_rates(self, base_currency: str) -> dict[str, Decimal]:
        url = self.rates_url(base_currency)
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, OSError, ValueError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        if not isinstance(payload, dict) or payload.get("result") != "success":
            result = payload.get("result") if isinstance(payload, dict) else None
            raise RateProviderUnavailable(f"Exchange rate API returned result: {result}")
        rates = payload.get("conversion_rates")
        if not isinstance(rates, dict) or not rates:
            raise RateProviderUnavailable("Exchange rate response missing rates")

        try:
            parsed = {
                normalize_currency(code): Decimal(str(value))
                for code, value in rates.items()
            }
        except (InvalidOperation, ValueError) as exc:
            raise RateProviderUnavailable("Exchange rate response has invalid rates") from exc
        parsed[base_currency] = Decimal("1")
        return parsed

    def _fallback_rates(self) -> RateSnapshot:
        fallback = self.cache.get_fallback()
        if fallback is not None:
            logger.info("Using fallback exchange rates from cache")
            return replace(fallback, is_success=False, error_message=FALLBACK_MESSAGE)
        logger.warning("No fallback exchange rates available, using default rates")
        return self.static.fetch_latest()
