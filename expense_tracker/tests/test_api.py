import os
import tempfile
import unittest
import uuid
from decimal import Decimal

from fastapi.testclient import TestClient

from expense_tracker.rate_cache import RateSnapshot, utc_now

TEMP_DIR = tempfile.TemporaryDirectory()
os.environ["DATABASE_URL"] = f"sqlite:///{TEMP_DIR.name}/expense_tracker_test.db"
os.environ["REFERENCE_CURRENCY"] = "AUD"

from expense_tracker import main  # noqa: E402


class StubRateSource:
    def __init__(self, cache) -> None:
        self.cache = cache
        self.calls = 0

    def fetch_latest(self, base_currency=None) -> RateSnapshot:
        self.calls += 1
        snapshot = RateSnapshot(
            base_currency="AUD",
            rates={"AUD": Decimal("1"), "USD": Decimal("0.5"), "EUR": Decimal("0.25")},
            last_updated=utc_now(),
        )
        self.cache.put(snapshot)
        return snapshot


def tearDownModule() -> None:
    main.engine.dispose()
    TEMP_DIR.cleanup()


class ApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        main.init_db()
        cls.client = TestClient(main.app)

    def setUp(self) -> None:
        main.RATE_CACHE.clear()
        self.rate_source = StubRateSource(main.RATE_CACHE)
        self.original_source = main.CONVERTER.source
        main.CONVERTER.source = self.rate_source
        self.user_id = self.signup()["id"]
        self.headers = {"x-user-id": str(self.user_id)}

    def tearDown(self) -> None:
        main.CONVERTER.source = self.original_source
        main.RATE_CACHE.clear()

    def signup(self, email: str | None = None, password: str = "s3cret!") -> dict:
        email = email or f"{uuid.uuid4().hex}@example.com"
        response = self.client.post("/auth/signup", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def add_expense(self, **overrides) -> dict:
        payload = {
            "amount": "100.00",
            "currency": "AUD",
            "date": "2024-03-10",
            "description": "Desk",
            "is_tax_deductible": True,
        }
        payload.update(overrides)
        response = self.client.post("/expenses", json=payload, headers=self.headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()


class AuthApiTests(ApiTestCase):
    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})

    def test_login_with_valid_and_invalid_password(self) -> None:
        email = f"{uuid.uuid4().hex}@example.com"
        created = self.signup(email, password="hunter22")

        ok = self.client.post("/auth/login", json={"email": email.upper(), "password": "hunter22"})
        bad = self.client.post("/auth/login", json={"email": email, "password": "wrong"})

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["id"], created["id"])
        self.assertEqual(bad.status_code, 401)

    def test_duplicate_signup_conflicts(self) -> None:
        email = f"{uuid.uuid4().hex}@example.com"
        self.signup(email)

        response = self.client.post("/auth/signup", json={"email": email, "password": "x"})

        self.assertEqual(response.status_code, 409)

    def test_user_identity_header_is_required(self) -> None:
        self.assertEqual(self.client.get("/expenses").status_code, 401)
        self.assertEqual(
            self.client.get("/expenses", headers={"x-user-id": "abc"}).status_code, 400
        )
        self.assertEqual(
            self.client.get("/expenses", headers={"x-user-id": "999999"}).status_code, 404
        )


class SettingsApiTests(ApiTestCase):
    def test_default_currency_round_trip(self) -> None:
        initial = self.client.get("/users/me/settings", headers=self.headers)
        self.assertEqual(initial.json()["default_currency"], "USD")

        updated = self.client.put(
            "/users/me/settings", json={"default_currency": "gbp"}, headers=self.headers
        )

        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["default_currency"], "GBP")

    def test_invalid_default_currency_is_rejected(self) -> None:
        response = self.client.put(
            "/users/me/settings", json={"default_currency": "dollars"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)


class ExpenseApiTests(ApiTestCase):
    def test_create_uses_default_currency_when_missing(self) -> None:
        self.client.put("/users/me/settings", json={"default_currency": "EUR"}, headers=self.headers)

        created = self.add_expense(currency=None)

        self.assertEqual(created["currency"], "EUR")
        self.assertEqual(Decimal(created["amount"]), Decimal("100"))

    def test_recurring_without_frequency_is_rejected(self) -> None:
        response = self.client.post(
            "/expenses",
            json={"amount": "10", "date": "2024-03-01", "is_recurring": True},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_unknown_category_is_not_found(self) -> None:
        response = self.client.post(
            "/expenses",
            json={"amount": "10", "date": "2024-03-01", "category_id": 987654},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 404)

    def test_list_filter_and_delete(self) -> None:
        kept = self.add_expense(description="Monitor arm")
        removed = self.add_expense(description="Lunch", is_tax_deductible=False)

        searched = self.client.get("/expenses", params={"search": "monitor"}, headers=self.headers)
        self.assertEqual([row["id"] for row in searched.json()], [kept["id"]])

        deleted = self.client.delete(f"/expenses/{removed['id']}", headers=self.headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(
            self.client.get(f"/expenses/{removed['id']}", headers=self.headers).status_code, 404
        )


    def test_update_expense(self) -> None:
        created = self.add_expense(amount="20.00", currency="USD")

        response = self.client.put(
            f"/expenses/{created['id']}",
            json={
                "amount": "35.50",
                "date": "2024-04-02",
                "description": "Desk lamp",
                "is_tax_deductible": True,
                "is_recurring": True,
                "recurring_frequency": "quarterly",
            },
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(Decimal(body["amount"]), Decimal("35.50"))
        self.assertEqual(body["currency"], "USD")
        self.assertEqual(body["date"], "2024-04-02")
        self.assertEqual(body["recurring_frequency"], "quarterly")

    def test_update_expense_validation_and_ownership(self) -> None:
        created = self.add_expense()
        invalid = self.client.put(
            f"/expenses/{created['id']}",
            json={"amount": "10", "date": "2024-03-01", "is_recurring": True},
            headers=self.headers,
        )
        stranger = {"x-user-id": str(self.signup()["id"])}
        foreign = self.client.put(
            f"/expenses/{created['id']}",
            json={"amount": "10", "currency": "AUD", "date": "2024-03-01"},
            headers=stranger,
        )

        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(foreign.status_code, 404)

    def test_list_recurring_expenses(self) -> None:
        self.add_expense(description="Software", is_recurring=True, recurring_frequency="monthly")
        self.add_expense(description="Chair")

        response = self.client.get("/expenses/recurring", headers=self.headers)

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual([row["description"] for row in response.json()], ["Software"])

    def test_category_rename_and_delete(self) -> None:
        created = self.client.post("/categories", json={"name": "Books"}, headers=self.headers).json()

        renamed = self.client.put(
            f"/categories/{created['id']}", json={"name": "Reading"}, headers=self.headers
        )
        self.assertEqual(renamed.json(), {"id": created["id"], "name": "Reading"})

        self.add_expense(category_id=created["id"])
        deleted = self.client.delete(f"/categories/{created['id']}", headers=self.headers)
        self.assertEqual(deleted.json(), {"status": "deactivated"})

        listed = self.client.get("/categories", headers=self.headers).json()
        self.assertNotIn("Reading", [row["name"] for row in listed])
        self.assertEqual(
            self.client.delete(f"/categories/{created['id']}", headers=self.headers).status_code,
            404,
        )


class ReportApiTests(ApiTestCase):
    def test_monthly_report_counts_only_deductible_expenses(self) -> None:
        self.add_expense(amount="100.00")
        self.add_expense(amount="50.00", is_tax_deductible=False)

        response = self.client.get(
            "/reports",
            params={"report_type": "monthly", "year": 2024, "month": 3},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body["title"], "Monthly Report - March 2024")
        report = body["monthly_report"]
        self.assertEqual(Decimal(report["total_amount"]), Decimal("100"))
        self.assertEqual(report["total_transactions"], 1)
        self.assertIsNone(report["conversion"])
        self.assertEqual(self.rate_source.calls, 0)

    def test_converted_report_includes_reference_totals(self) -> None:
        self.add_expense(amount="60.00", currency="USD")
        self.add_expense(amount="40.00", currency="AUD")

        response = self.client.get(
            "/reports",
            params={"report_type": "annual", "year": 2024, "convert": True},
            headers=self.headers,
        )

        conversion = response.json()["annual_report"]["conversion"]
        self.assertTrue(conversion["is_success"])
        self.assertEqual(conversion["currency"], "AUD")
        self.assertEqual(Decimal(conversion["total_amount"]), Decimal("160"))
        self.assertEqual(Decimal(conversion["currency_breakdown"]["USD"]), Decimal("120"))

    def test_monthly_report_without_month_is_empty(self) -> None:
        response = self.client.get(
            "/reports", params={"report_type": "monthly", "year": 2024}, headers=self.headers
        )

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["monthly_report"])

    def test_reversed_custom_range_is_empty(self) -> None:
        response = self.client.get(
            "/reports",
            params={"report_type": "custom", "from_date": "2024-02-01", "to_date": "2024-01-01"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertIsNone(response.json()["custom_report"])
        self.assertEqual(response.json()["title"], "")

    def test_unknown_report_type_is_bad_request(self) -> None:
        response = self.client.get(
            "/reports", params={"report_type": "weekly"}, headers=self.headers
        )

        self.assertEqual(response.status_code, 400)

    def test_download_returns_csv_attachment(self) -> None:
        self.add_expense(amount="1234.56")

        response = self.client.get(
            "/reports/download",
            params={"report_type": "custom", "from_date": "2024-03-01", "to_date": "2024-03-31"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/csv"))
        self.assertIn(
            'filename="Custom_Report_20240301_20240331.csv"',
            response.headers["content-disposition"],
        )
        self.assertTrue(response.text.startswith("Custom Report - 01 Mar 2024 to 31 Mar 2024"))

    def test_download_without_report_is_not_found(self) -> None:
        response = self.client.get(
            "/reports/download",
            params={"report_type": "custom", "from_date": "2024-03-01"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 404)


class CurrencyApiTests(ApiTestCase):
    def test_convert_uses_cached_rates(self) -> None:
        first = self.client.post(
            "/currency/convert",
            json={"amount": "10", "from_currency": "usd"},
            headers=self.headers,
        )
        second = self.client.post(
            "/currency/convert",
            json={"amount": "5", "from_currency": "EUR"},
            headers=self.headers,
        )

        self.assertEqual(Decimal(first.json()["converted_amount"]), Decimal("20.00"))
        self.assertEqual(first.json()["converted_currency"], "AUD")
        self.assertEqual(Decimal(second.json()["converted_amount"]), Decimal("20.00"))
        self.assertEqual(self.rate_source.calls, 1)

    def test_invalid_currency_code_is_rejected(self) -> None:
        response = self.client.post(
            "/currency/convert",
            json={"amount": "10", "from_currency": "dollars"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_rates_and_clear(self) -> None:
        rates = self.client.get("/currency/rates", headers=self.headers)
        self.assertEqual(rates.json()["base_currency"], "AUD")
        self.assertTrue(rates.json()["is_success"])

        cleared = self.client.post("/currency/rates/clear", headers=self.headers)
        self.client.get("/currency/rates", headers=self.headers)

        self.assertEqual(cleared.json(), {"status": "cleared"})
        self.assertEqual(self.rate_source.calls, 2)


if __name__ == "__main__":
    unittest.main()
