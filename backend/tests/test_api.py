import unittest
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient

from backend.account_matcher import OUTSIDE_ACCOUNT_NAME
from backend.db import accounts
from backend.main import app
from backend.tests.test_ledger_store import asset_amount, build_engine, seed_ledger

HEADERS = {"x-user-id": "u1"}


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = build_engine()
        seed_ledger(self.engine)
        with self.engine.begin() as conn:
            conn.execute(accounts.insert().values(id="out", user_id="u1", name=OUTSIDE_ACCOUNT_NAME))
        patcher = patch("backend.main.engine", self.engine)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = TestClient(app)


class TradeEndpointTests(ApiTestCase):
    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_canonicalize_buy(self) -> None:
        response = self.client.post(
            "/trades/canonicalize",
            json={
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "11.1",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "14.9628",
            },
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(str(body["amount"])), Decimal("14.9628"))
        self.assertEqual(body["currency"], "USDT")
        self.assertEqual(Decimal(str(body["converted_amount"])), Decimal("11.1"))
        self.assertEqual(body["convert_to_currency"], "TON")

    def test_canonicalize_reports_missing_field(self) -> None:
        response = self.client.post(
            "/trades/canonicalize",
            json={"trade_type": "sell", "trade_base_currency": "TON", "trade_base_amount": "3"},
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["detail"]["missing"], "pair")

    def test_canonicalize_rejects_non_trade(self) -> None:
        response = self.client.post("/trades/canonicalize", json={"amount": "3", "currency": "USD"})

        self.assertEqual(response.status_code, 400)


class CurrencyEndpointTests(ApiTestCase):
    def test_explicit_currency(self) -> None:
        response = self.client.post(
            "/currency/resolve",
            json={
                "raw_text": "кофе 20 usd",
                "llm_currency": "USD",
                "amount": "20",
                "assets": [{"currency": "EUR", "amount": "100"}],
            },
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"currency": "USD", "source": "explicit", "explicit_mentioned": True},
        )

    def test_account_assets_are_loaded(self) -> None:
        response = self.client.post(
            "/currency/resolve",
            json={"raw_text": "кофе 20", "llm_currency": "RUB", "amount": "20", "account_id": "a1"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "USD")
        self.assertEqual(response.json()["source"], "inferred")

    def test_account_lookup_requires_user(self) -> None:
        response = self.client.post("/currency/resolve", json={"account_id": "a1"})

        self.assertEqual(response.status_code, 401)

    def test_foreign_account_is_not_found(self) -> None:
        response = self.client.post("/currency/resolve", json={"account_id": "a2"}, headers=HEADERS)

        self.assertEqual(response.status_code, 404)


class AccountEndpointTests(ApiTestCase):
    def test_match_with_explicit_mention(self) -> None:
        response = self.client.post(
            "/accounts/match",
            json={"name": "main", "text": "оплатил с Main 20"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"id": "a1", "name": "Main", "explicit_mentioned": True})

    def test_no_match(self) -> None:
        response = self.client.post("/accounts/match", json={"name": "Sparkasse"}, headers=HEADERS)

        self.assertEqual(response.status_code, 404)

    def test_unknown_user(self) -> None:
        response = self.client.post("/accounts/match", json={"name": "main"}, headers={"x-user-id": "nobody"})

        self.assertEqual(response.status_code, 404)


class LedgerEndpointTests(ApiTestCase):
    def test_balances_replay_history(self) -> None:
        response = self.client.get("/ledger/balances", headers=HEADERS)

        self.assertEqual(response.status_code, 200)
        rows = response.json()
        self.assertEqual([(row["account_id"], row["currency"]) for row in rows], [("a1", "USD")])
        self.assertAlmostEqual(float(rows[0]["balance"]), -50.0)

    def test_reconcile_dry_run(self) -> None:
        response = self.client.post("/ledger/reconcile", headers=HEADERS)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["mode"], "dry-run")
        self.assertFalse(body["applied"])
        self.assertEqual(body["changed_trades"][0]["transaction_id"], "t1")
        self.assertAlmostEqual(float(body["diffs"][0]["delta"]), 2.0)
        self.assertAlmostEqual(float(asset_amount(self.engine, "a1", "USD")), 100.0)

    def test_reconcile_apply(self) -> None:
        response = self.client.post("/ledger/reconcile", params={"mode": "apply"}, headers=HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["applied"])
        self.assertAlmostEqual(float(asset_amount(self.engine, "a1", "USD")), 102.0)

    def test_reconcile_rejects_unknown_mode(self) -> None:
        response = self.client.post("/ledger/reconcile", params={"mode": "force"}, headers=HEADERS)

        self.assertEqual(response.status_code, 400)


class TransactionEndpointTests(ApiTestCase):
    def test_income_updates_asset(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"direction": "income", "account_id": "a1", "amount": "25", "currency": "usd"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "USD")
        self.assertAlmostEqual(float(asset_amount(self.engine, "a1", "USD")), 125.0)

    def test_currency_resolved_from_text(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "direction": "expense",
                "account_id": "a1",
                "amount": "3",
                "currency": "EUR",
                "raw_text": "кофе 3 евро",
            },
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "EUR")
        self.assertAlmostEqual(float(asset_amount(self.engine, "a1", "EUR")), 1.0)

    def test_currency_inferred_from_balances(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"direction": "expense", "account_id": "a1", "amount": "10"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "USD")

    def test_transfer_defaults_to_outside_account(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"direction": "transfer", "account_id": "a1", "amount": "10", "currency": "USD"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["to_account_id"], "out")
        self.assertAlmostEqual(float(asset_amount(self.engine, "a1", "USD")), 90.0)
        self.assertAlmostEqual(float(asset_amount(self.engine, "out", "USD")), 10.0)

    def test_transfer_target_matched_by_name(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(accounts.insert().values(id="a3", user_id="u1", name="MEXC"))

        response = self.client.post(
            "/transactions",
            json={
                "direction": "transfer",
                "account_id": "a1",
                "amount": "10",
                "currency": "USD",
                "to_account_name": "мекс",
            },
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["to_account_id"], "a3")
        self.assertAlmostEqual(float(asset_amount(self.engine, "a3", "USD")), 10.0)

    def test_trade_stays_on_same_account(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "direction": "transfer",
                "account_id": "a1",
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "10",
                "trade_quote_currency": "USD",
                "trade_quote_amount": "20",
            },
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["to_account_id"], "a1")
        self.assertEqual(body["convert_to_currency"], "TON")
        self.assertAlmostEqual(float(asset_amount(self.engine, "a1", "TON")), 10.0)

    def test_unresolvable_trade_is_rejected(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "direction": "transfer",
                "account_id": "a1",
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "10",
            },
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["detail"]["missing"], "pair")

    def test_outside_account_rejects_expense(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"direction": "expense", "account_id": "out", "amount": "5", "currency": "USD"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 400)

    def test_non_positive_amount_is_rejected(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"direction": "income", "account_id": "a1", "amount": "0", "currency": "USD"},
            headers=HEADERS,
        )

        self.assertEqual(response.status_code, 400)

    def test_unsupported_currency_is_rejected(self) -> None:
        with patch("backend.main.SUPPORTED_CURRENCIES", frozenset({"USD", "EUR"})):
            response = self.client.post(
                "/transactions",
                json={"direction": "income", "account_id": "a1", "amount": "5", "currency": "GBP"},
                headers=HEADERS,
            )

        self.assertEqual(response.status_code, 400)
        self.assertIsNone(asset_amount(self.engine, "a1", "GBP"))


if __name__ == "__main__":
    unittest.main()
