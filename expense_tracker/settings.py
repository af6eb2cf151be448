from __future__ import annotations

from dataclasses import dataclass
import os

DEFAULT_REFERENCE_CURRENCY = "AUD"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


@dataclass(frozen=True)
class Settings:
    """Runtime configuration sourced from environment variables."""

    database_url: str = "sqlite:///./expense_tracker.db"
    frontend_origin: str = "http://localhost:3000"
    reference_currency: str = DEFAULT_REFERENCE_CURRENCY
    rates_api_url: str = "https://v6.exchangerate-api.com/v6"
    rates_api_key: str = ""
    rates_timeout_seconds: float = 10
    rates_cache_seconds: int = 60 * 60
    rates_fallback_seconds: int = 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            reference_currency=_reference_currency_from_env(),
            rates_api_url=os.getenv("EXCHANGE_RATE_API_URL", cls.rates_api_url).rstrip("/"),
            rates_api_key=os.getenv("EXCHANGE_RATE_API_KEY", cls.rates_api_key).strip(),
            rates_timeout_seconds=_number_from_env(
                "EXCHANGE_RATE_TIMEOUT_SECONDS", cls.rates_timeout_seconds, float
            ),
            rates_cache_seconds=_number_from_env(
                "EXCHANGE_RATE_CACHE_SECONDS", cls.rates_cache_seconds, int
            ),
            rates_fallback_seconds=_number_from_env(
                "EXCHANGE_RATE_FALLBACK_SECONDS", cls.rates_fallback_seconds, int
            ),
        )


def _reference_currency_from_env() -> str:
    raw = os.getenv("REFERENCE_CURRENCY", DEFAULT_REFERENCE_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return DEFAULT_REFERENCE_CURRENCY


def _number_from_env(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        return default
    return value if value > 0 else default
