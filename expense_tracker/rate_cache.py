from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Mapping, Optional

from expense_tracker.logging_config import get_logger

logger = get_logger(__name__)

CACHE_KEY_PREFIX = "exchange_rates"
FALLBACK_SUFFIX = "_fallback"
CACHE_DURATION = timedelta(hours=1)
FALLBACK_CACHE_DURATION = timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateSnapshot:
    """Conversion rates for one base currency.

    ``rates`` maps a currency code to units of that currency per 1 unit of
    ``base_currency``.
    """

    base_currency: str
    rates: Mapping[str, Decimal]
    last_updated: datetime
    is_success: bool = True
    error_message: Optional[str] = None


@dataclass(frozen=True)
class CachedRates:
    snapshot: RateSnapshot
    expires_at: datetime


@dataclass
class RateCache:
    """Two-slot cache of rate snapshots.

    The primary slot answers ``get`` for ``ttl``. ``put`` also refreshes a
    long-lived fallback slot that is only read when a live fetch fails.
    Entries are replaced whole and never edited in place.

    One instance is created per process by the composition root and shared
    by the rate source and the converter.
    """

    base_currency: str = "AUD"
    ttl: timedelta = CACHE_DURATION
    fallback_ttl: timedelta = FALLBACK_CACHE_DURATION
    clock: Callable[[], datetime] = utc_now
    _entries: dict[str, CachedRates] = field(default_factory=dict)

    @property
    def cache_key(self) -> str:
        return f"{CACHE_KEY_PREFIX}_{self.base_currency.lower()}"

    @property
    def fallback_key(self) -> str:
        return f"{self.cache_key}{FALLBACK_SUFFIX}"

    def get(self) -> Optional[RateSnapshot]:
        snapshot = self._read(self.cache_key)
        if snapshot is None:
            return None
        if self.clock() - snapshot.last_updated >= self.ttl:
            logger.debug("Cached exchange rates for %s are stale", self.base_currency)
            return None
        return snapshot

    def get_fallback(self) -> Optional[RateSnapshot]:
        return self._read(self.fallback_key)

    def put(self, snapshot: RateSnapshot) -> None:
        now = self.clock()
        self._entries[self.cache_key] = CachedRates(snapshot, now + self.ttl)
        self._entries[self.fallback_key] = CachedRates(snapshot, now + self.fallback_ttl)

    def clear(self) -> None:
        self._entries.pop(self.cache_key, None)
        self._entries.pop(self.fallback_key, None)
        logger.info("Exchange rate cache cleared")

    def _read(self, key: str) -> Optional[RateSnapshot]:
        cached = self._entries.get(key)
        if cached is None or cached.expires_at <= self.clock():
            return None
        return cached.snapshot
