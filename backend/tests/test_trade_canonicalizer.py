import unittest
from decimal import Decimal

from backend.trade_canonicalizer import (
    MISSING_AMOUNT,
    MISSING_PAIR,
    MISSING_PRICE,
    TradeInput,
    TradeUnresolvable,
    canonicalize_trade,
    trade_matches,
)


class CanonicalizeTradeTests(unittest.TestCase):
    def test_buy_spends_quote_and_receives_base(self) -> None:
        trade = canonicalize_trade(
            {
                "tradeType": "buy",
                "tradeBaseCurrency": "TON",
                "tradeBaseAmount": 11.1,
                "tradeQuoteCurrency": "USDT",
                "tradeQuoteAmount": 14.9628,
            }
        )

        self.assertEqual(trade.amount, Decimal("14.9628"))
        self.assertEqual(trade.currency, "USDT")
        self.assertEqual(trade.converted_amount, Decimal("11.1"))
        self.assertEqual(trade.convert_to_currency, "TON")
        self.assertEqual(trade.execution_price, Decimal("1.348"))

    def test_sell_spends_base_and_receives_quote(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "sell",
                "trade_base_currency": "LAB",
                "trade_base_amount": "753",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "109.938",
            }
        )

        self.assertEqual(trade.amount, Decimal("753"))
        self.assertEqual(trade.currency, "LAB")
        self.assertEqual(trade.converted_amount, Decimal("109.938"))
        self.assertEqual(trade.convert_to_currency, "USDT")
        self.assertEqual(trade.trade_base_amount, Decimal("753"))
        self.assertEqual(trade.trade_quote_amount, Decimal("109.938"))

    def test_non_trade_returns_none(self) -> None:
        self.assertIsNone(canonicalize_trade({"amount": 10, "currency": "USD"}))
        self.assertIsNone(canonicalize_trade({"trade_type": "swap", "amount": 10}))

    def test_canonicalization_is_idempotent(self) -> None:
        first = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "ton",
                "trade_base_amount": "11.1",
                "trade_quote_currency": "usdt",
                "trade_quote_amount": "14.9628",
                "trade_fee_amount": "0.5",
            }
        )
        second = canonicalize_trade(first)

        self.assertEqual(first, second)
        self.assertTrue(trade_matches(first, second))

    def test_pair_derived_from_legacy_fields(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "amount": "100",
                "currency": "USDT",
                "converted_amount": "50",
                "convert_to_currency": "TON",
            }
        )

        self.assertEqual(trade.trade_base_currency, "TON")
        self.assertEqual(trade.trade_quote_currency, "USDT")
        self.assertEqual(trade.trade_base_amount, Decimal("50"))
        self.assertEqual(trade.trade_quote_amount, Decimal("100"))
        self.assertEqual(trade.execution_price, Decimal("2"))

    def test_missing_quote_amount_derived_from_price(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "sell",
                "trade_base_currency": "TON",
                "trade_base_amount": "10",
                "trade_quote_currency": "USDT",
                "execution_price": "1.5",
            }
        )

        self.assertEqual(trade.trade_quote_amount, Decimal("15"))
        self.assertEqual(trade.converted_amount, Decimal("15"))

    def test_missing_base_amount_derived_from_price(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "BTC",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "500",
                "execution_price": "250",
            }
        )

        self.assertEqual(trade.trade_base_amount, Decimal("2"))
        self.assertEqual(trade.converted_amount, Decimal("2"))

    def test_inconsistent_price_is_rederived_from_amounts(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "10",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "20",
                "execution_price": "3",
            }
        )

        self.assertEqual(trade.execution_price, Decimal("2"))
        self.assertEqual(trade.trade_quote_amount, Decimal("20"))

    def test_negative_amounts_use_magnitude(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "-4",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "-8",
            }
        )

        self.assertEqual(trade.trade_base_amount, Decimal("4"))
        self.assertEqual(trade.amount, Decimal("8"))

    def test_fee_defaults_to_quote_currency(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "10",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "20",
                "trade_fee_amount": "0.25",
            }
        )

        self.assertEqual(trade.trade_fee_amount, Decimal("0.25"))
        self.assertEqual(trade.trade_fee_currency, "USDT")

    def test_zero_fee_is_dropped(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "TON",
                "trade_base_amount": "10",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "20",
                "trade_fee_currency": "TON",
                "trade_fee_amount": "0",
            }
        )

        self.assertIsNone(trade.trade_fee_amount)
        self.assertIsNone(trade.trade_fee_currency)

    def test_missing_pair_raises(self) -> None:
        with self.assertRaises(TradeUnresolvable) as ctx:
            canonicalize_trade(
                {"trade_type": "buy", "trade_base_currency": "TON", "trade_base_amount": "10"}
            )

        self.assertEqual(ctx.exception.missing, MISSING_PAIR)
        self.assertIn("TON/USDT", str(ctx.exception))

    def test_same_currency_pair_raises(self) -> None:
        with self.assertRaises(TradeUnresolvable) as ctx:
            canonicalize_trade(
                {
                    "trade_type": "sell",
                    "trade_base_currency": "USDT",
                    "trade_base_amount": "10",
                    "trade_quote_currency": "usdt",
                    "trade_quote_amount": "10",
                }
            )

        self.assertEqual(ctx.exception.missing, MISSING_PAIR)

    def test_missing_amounts_raise(self) -> None:
        with self.assertRaises(TradeUnresolvable) as ctx:
            canonicalize_trade(
                {
                    "trade_type": "buy",
                    "trade_base_currency": "TON",
                    "trade_quote_currency": "USDT",
                    "execution_price": "2",
                }
            )

        self.assertEqual(ctx.exception.missing, MISSING_AMOUNT)

    def test_single_amount_without_price_raises(self) -> None:
        with self.assertRaises(TradeUnresolvable) as ctx:
            canonicalize_trade(
                {
                    "trade_type": "buy",
                    "trade_base_currency": "TON",
                    "trade_base_amount": "10",
                    "trade_quote_currency": "USDT",
                }
            )

        self.assertEqual(ctx.exception.missing, MISSING_PRICE)


    def test_very_large_derived_price(self) -> None:
        trade = canonicalize_trade(
            {
                "trade_type": "buy",
                "trade_base_currency": "BTC",
                "trade_base_amount": "0.0000001",
                "trade_quote_currency": "SHIB",
                "trade_quote_amount": "10000000000",
            }
        )

        self.assertEqual(trade.execution_price, Decimal("1e17"))
        self.assertEqual(trade.amount, Decimal("10000000000"))
        self.assertEqual(trade.converted_amount, Decimal("0.0000001"))

    def test_sell_rederived_from_legacy_fields(self) -> None:
        canonical = canonicalize_trade(
            {
                "trade_type": "sell",
                "trade_base_currency": "LAB",
                "trade_base_amount": "753",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "109.938",
            }
        )

        rederived = canonicalize_trade(
            {
                "trade_type": "sell",
                "amount": canonical.amount,
                "currency": canonical.currency,
                "converted_amount": canonical.converted_amount,
                "convert_to_currency": canonical.convert_to_currency,
            }
        )

        self.assertEqual(rederived.trade_base_currency, "LAB")
        self.assertEqual(rederived.trade_quote_currency, "USDT")
        tolerance = Decimal("1e-8")
        self.assertLessEqual(abs(rederived.trade_base_amount - canonical.trade_base_amount), tolerance)
        self.assertLessEqual(abs(rederived.trade_quote_amount - canonical.trade_quote_amount), tolerance)
        self.assertLessEqual(abs(rederived.execution_price - canonical.execution_price), tolerance)
        self.assertLessEqual(abs(rederived.execution_price - Decimal("0.146")), tolerance)


class TradeInputTests(unittest.TestCase):
    def test_from_record_accepts_camel_case_keys(self) -> None:
        trade = TradeInput.from_record({"tradeType": " BUY ", "tradeBaseCurrency": " ton "})

        self.assertEqual(trade.trade_type, "buy")
        self.assertEqual(trade.trade_base_currency, "TON")

    def test_from_record_reads_object_attributes(self) -> None:
        class Row:
            trade_type = "sell"
            amount = "5"

        trade = TradeInput.from_record(Row())

        self.assertEqual(trade.trade_type, "sell")
        self.assertEqual(trade.amount, Decimal("5"))
        self.assertIsNone(trade.currency)


class TradeMatchesTests(unittest.TestCase):
    def test_stale_converted_amount_does_not_match(self) -> None:
        stored = {
            "trade_type": "buy",
            "amount": "20",
            "currency": "USDT",
            "converted_amount": "11",
            "convert_to_currency": "TON",
            "trade_base_currency": "TON",
            "trade_base_amount": "10",
            "trade_quote_currency": "USDT",
            "trade_quote_amount": "20",
            "execution_price": "2",
        }
        canonical = canonicalize_trade(stored)

        self.assertFalse(trade_matches(stored, canonical))
        self.assertEqual(canonical.converted_amount, Decimal("10"))

    def test_canonical_record_matches_itself(self) -> None:
        canonical = canonicalize_trade(
            {
                "trade_type": "sell",
                "trade_base_currency": "LAB",
                "trade_base_amount": "753",
                "trade_quote_currency": "USDT",
                "trade_quote_amount": "109.938",
            }
        )

        self.assertTrue(trade_matches(canonical.as_fields(), canonical))


if __name__ == "__main__":
    unittest.main()
