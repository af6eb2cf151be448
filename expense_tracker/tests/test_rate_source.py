import io
import json
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest import mock
from urllib.error import URLError

from expense_tracker.rate_cache import RateCache, RateSnapshot
from expense_tracker.rate_source import (
    DEFAULT_RATES,
    FALLBACK_MESSAGE,
    STATIC_MESSAGE,
    ExchangeRateApiSource,
    StaticRateSource,
)

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def fake_response(payload) -> mock.MagicMock:
    response = mock.MagicMock()
    response.__enter__.return_value = io.BytesIO(json.dumps(payload).encode("utf-8"))
    return response


class ExchangeRateApiSourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cache = RateCache(base_currency="AUD", clock=lambda: NOW)
        self.source = ExchangeRateApiSource(
            cache=self.cache,
            base_url="https://rates.example.test/v6/",
            api_key="secret",
            clock=lambda: NOW,
        )

    def test_rates_url_includes_key_and_base(self) -> None:
        self.assertEqual(
            self.source.rates_url("AUD"),
            "https://rates.example.test/v6/secret/latest/AUD",
        )

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_successful_fetch_is_cached(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response(
            {"result": "success", "conversion_rates": {"USD": 0.66, "eur": "0.61"}}
        )

        snapshot = self.source.fetch_latest("aud")

        urlopen.assert_called_once_with(
            "https://rates.example.test/v6/secret/latest/AUD", timeout=10
        )
        self.assertTrue(snapshot.is_success)
        self.assertIsNone(snapshot.error_message)
        self.assertEqual(snapshot.base_currency, "AUD")
        self.assertEqual(snapshot.rates["USD"], Decimal("0.66"))
        self.assertEqual(snapshot.rates["EUR"], Decimal("0.61"))
        self.assertEqual(snapshot.rates["AUD"], Decimal("1"))
        self.assertEqual(snapshot.last_updated, NOW)
        self.assertIs(self.cache.get(), snapshot)
        self.assertIs(self.cache.get_fallback(), snapshot)

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_other_base_currency_is_not_cached(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response(
            {"result": "success", "conversion_rates": {"AUD": 1.54, "EUR": 0.92}}
        )

        snapshot = self.source.fetch_latest("USD")

        urlopen.assert_called_once_with(
            "https://rates.example.test/v6/secret/latest/USD", timeout=10
        )
        self.assertTrue(snapshot.is_success)
        self.assertEqual(snapshot.base_currency, "USD")
        self.assertEqual(snapshot.rates["USD"], Decimal("1"))
        self.assertIsNone(self.cache.get())
        self.assertIsNone(self.cache.get_fallback())

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_transport_failure_uses_fallback_slot(self, urlopen: mock.MagicMock) -> None:
        previous = RateSnapshot(
            base_currency="AUD",
            rates={"AUD": Decimal("1"), "USD": Decimal("0.64")},
            last_updated=NOW,
        )
        self.cache.put(previous)
        urlopen.side_effect = URLError("offline")

        snapshot = self.source.fetch_latest("AUD")

        self.assertFalse(snapshot.is_success)
        self.assertEqual(snapshot.error_message, FALLBACK_MESSAGE)
        self.assertEqual(snapshot.rates, previous.rates)
        # The cached snapshot itself is never edited.
        self.assertTrue(previous.is_success)
        self.assertIsNone(previous.error_message)

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_timeout_without_fallback_uses_static_rates(self, urlopen: mock.MagicMock) -> None:
        urlopen.side_effect = TimeoutError("timed out")

        snapshot = self.source.fetch_latest("AUD")

        self.assertFalse(snapshot.is_success)
        self.assertEqual(snapshot.error_message, STATIC_MESSAGE)
        self.assertEqual(dict(snapshot.rates), DEFAULT_RATES)
        self.assertIsNone(self.cache.get())

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_unsuccessful_result_is_treated_as_failure(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"result": "error", "error-type": "invalid-key"})

        snapshot = self.source.fetch_latest("AUD")

        self.assertFalse(snapshot.is_success)
        self.assertEqual(snapshot.error_message, STATIC_MESSAGE)
        self.assertIsNone(self.cache.get_fallback())

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_malformed_json_is_treated_as_failure(self, urlopen: mock.MagicMock) -> None:
        response = mock.MagicMock()
        response.__enter__.return_value = io.BytesIO(b"<html>oops</html>")
        urlopen.return_value = response

        snapshot = self.source.fetch_latest("AUD")

        self.assertFalse(snapshot.is_success)
        self.assertTrue(snapshot.rates)

    @mock.patch("expense_tracker.rate_source.urlopen")
    def test_missing_rates_is_treated_as_failure(self, urlopen: mock.MagicMock) -> None:
        urlopen.return_value = fake_response({"result": "success"})

        snapshot = self.source.fetch_latest("AUD")

        self.assertFalse(snapshot.is_success)
        self.assertEqual(snapshot.error_message, STATIC_MESSAGE)


class StaticRateSourceTests(unittest.TestCase):
    def test_static_rates_are_flagged_as_approximate(self) -> None:
        source = StaticRateSource(clock=lambda: NOW)

        snapshot = source.fetch_latest()

        self.assertEqual(snapshot.base_currency, "AUD")
        self.assertFalse(snapshot.is_success)
        self.assertEqual(snapshot.rates["USD"], Decimal("0.65"))
        self.assertEqual(snapshot.last_updated, NOW)

    def test_custom_rates_override_defaults(self) -> None:
        source = StaticRateSource(rates={"AUD": Decimal("1"), "NZD": Decimal("1.08")})

        self.assertEqual(source.fetch_latest().rates, {"AUD": Decimal("1"), "NZD": Decimal("1.08")})


if __name__ == "__main__":
    unittest.main()
