from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal, localcontext
from typing import Mapping, Optional

from backend.money import (
    PRICE_QUANTUM,
    ZERO,
    amounts_equal,
    codes_equal,
    normalize_code,
    optional_decimal,
    positive_decimal,
)

TRADE_TYPES = {"buy", "sell"}
CONSISTENCY_TOLERANCE = Decimal("1e-8")

MISSING_PAIR = "pair"
MISSING_AMOUNT = "amount"
MISSING_PRICE = "price"

CANONICAL_AMOUNT_FIELDS = (
    "amount",
    "converted_amount",
    "trade_base_amount",
    "trade_quote_amount",
    "execution_price",
    "trade_fee_amount",
)
CANONICAL_CODE_FIELDS = (
    "trade_type",
    "currency",
    "convert_to_currency",
    "trade_base_currency",
    "trade_quote_currency",
    "trade_fee_currency",
)

_CAMEL_KEYS = {
    "tradeType": "trade_type",
    "convertedAmount": "converted_amount",
    "convertToCurrency": "convert_to_currency",
    "tradeBaseCurrency": "trade_base_currency",
    "tradeBaseAmount": "trade_base_amount",
    "tradeQuoteCurrency": "trade_quote_currency",
    "tradeQuoteAmount": "trade_quote_amount",
    "executionPrice": "execution_price",
    "tradeFeeCurrency": "trade_fee_currency",
    "tradeFeeAmount": "trade_fee_amount",
}


class TradeUnresolvable(ValueError):
    """Raised when a trade's pair, amounts or price cannot be determined."""

    def __init__(self, missing: str, message: str) -> None:
        super().__init__(message)
        self.missing = missing


@dataclass(frozen=True)
class TradeInput:
    trade_type: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    converted_amount: Optional[Decimal] = None
    convert_to_currency: Optional[str] = None
    trade_base_currency: Optional[str] = None
    trade_base_amount: Optional[Decimal] = None
    trade_quote_currency: Optional[str] = None
    trade_quote_amount: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    trade_fee_currency: Optional[str] = None
    trade_fee_amount: Optional[Decimal] = None

    @classmethod
    def from_record(cls, record: object) -> "TradeInput":
        """Build an input from a mapping (snake_case or camelCase keys) or any object."""
        if isinstance(record, TradeInput):
            return record
        values: dict[str, object] = {}
        if isinstance(record, Mapping):
            for key, value in record.items():
                values[_CAMEL_KEYS.get(key, key)] = value
        else:
            for field in fields(cls):
                values[field.name] = getattr(record, field.name, None)

        kwargs: dict[str, object] = {}
        for field in fields(cls):
            raw = values.get(field.name)
            if field.name in CANONICAL_AMOUNT_FIELDS:
                kwargs[field.name] = optional_decimal(raw)
            elif field.name == "trade_type":
                kwargs[field.name] = str(raw).strip().lower() if raw is not None else None
            else:
                kwargs[field.name] = normalize_code(raw)
        return cls(**kwargs)


@dataclass(frozen=True)
class CanonicalTrade:
    trade_type: str
    amount: Decimal
    currency: str
    converted_amount: Decimal
    convert_to_currency: str
    trade_base_currency: str
    trade_base_amount: Decimal
    trade_quote_currency: str
    trade_quote_amount: Decimal
    execution_price: Decimal
    trade_fee_currency: Optional[str] = None
    trade_fee_amount: Optional[Decimal] = None

    def as_fields(self) -> dict[str, object]:
        return {field.name: getattr(self, field.name) for field in fields(self)}


def canonicalize_trade(record: object) -> CanonicalTrade | None:
    """Normalize a buy/sell record into the canonical base/quote form.

    Returns None when the record is not a trade. A buy spends the quote leg,
    so amount/currency carry the quote and converted_amount/convert_to_currency
    the base; a sell is the mirror image.
    """
    trade = TradeInput.from_record(record)
    trade_type = trade.trade_type if trade.trade_type in TRADE_TYPES else None
    if trade_type is None:
        return None
    is_buy = trade_type == "buy"

    amount = positive_decimal(trade.amount)
    converted_amount = positive_decimal(trade.converted_amount)

    base_currency = normalize_code(trade.trade_base_currency) or (
        normalize_code(trade.convert_to_currency) if is_buy else normalize_code(trade.currency)
    )
    quote_currency = normalize_code(trade.trade_quote_currency) or (
        normalize_code(trade.currency) if is_buy else normalize_code(trade.convert_to_currency)
    )

    base_amount = _first_positive(trade.trade_base_amount, converted_amount if is_buy else amount)
    quote_amount = _first_positive(trade.trade_quote_amount, amount if is_buy else converted_amount)
    execution_price = positive_decimal(trade.execution_price)

    if execution_price is not None and base_amount is not None and quote_amount is not None:
        if not _is_consistent(base_amount, quote_amount, execution_price):
            execution_price = None
    if execution_price is None and base_amount is not None and quote_amount is not None:
        execution_price = _derive_price(base_amount, quote_amount)
    if quote_amount is None and execution_price is not None and base_amount is not None:
        quote_amount = base_amount * execution_price
    if base_amount is None and execution_price is not None and quote_amount is not None:
        base_amount = quote_amount / execution_price

    _ensure_resolved(base_currency, quote_currency, base_amount, quote_amount, execution_price)

    fee_amount = positive_decimal(trade.trade_fee_amount)
    fee_currency = (normalize_code(trade.trade_fee_currency) or quote_currency) if fee_amount else None

    return CanonicalTrade(
        trade_type=trade_type,
        amount=quote_amount if is_buy else base_amount,
        currency=quote_currency if is_buy else base_currency,
        converted_amount=base_amount if is_buy else quote_amount,
        convert_to_currency=base_currency if is_buy else quote_currency,
        trade_base_currency=base_currency,
        trade_base_amount=base_amount,
        trade_quote_currency=quote_currency,
        trade_quote_amount=quote_amount,
        execution_price=execution_price,
        trade_fee_currency=fee_currency,
        trade_fee_amount=fee_amount,
    )


def trade_matches(stored: object, canonical: CanonicalTrade) -> bool:
    """Compare a stored record against its canonical form field by field."""
    current = TradeInput.from_record(stored)
    for name in CANONICAL_AMOUNT_FIELDS:
        if not amounts_equal(getattr(current, name), getattr(canonical, name)):
            return False
    for name in CANONICAL_CODE_FIELDS:
        if not codes_equal(getattr(current, name), getattr(canonical, name)):
            return False
    return True


def _first_positive(*values: object) -> Decimal | None:
    for value in values:
        amount = positive_decimal(value)
        if amount is not None:
            return amount
    return None


def _derive_price(base_amount: Decimal, quote_amount: Decimal) -> Decimal:
    exact = quote_amount / base_amount
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, exact.adjusted() + 14)
        rounded = exact.quantize(PRICE_QUANTUM)
    return rounded if rounded > ZERO else exact


def _is_consistent(base_amount: Decimal, quote_amount: Decimal, price: Decimal) -> bool:
    expected = base_amount * price
    return abs(expected - quote_amount) <= CONSISTENCY_TOLERANCE * quote_amount


def _ensure_resolved(
    base_currency: str | None,
    quote_currency: str | None,
    base_amount: Decimal | None,
    quote_amount: Decimal | None,
    execution_price: Decimal | None,
) -> None:
    if not base_currency or not quote_currency:
        raise TradeUnresolvable(
            MISSING_PAIR,
            "Trade pair is ambiguous: specify both currencies, e.g. TON/USDT.",
        )
    if base_currency == quote_currency:
        raise TradeUnresolvable(
            MISSING_PAIR,
            f"Trade pair must use two different currencies, got {base_currency}/{quote_currency}.",
        )
    if base_amount is None and quote_amount is None:
        raise TradeUnresolvable(
            MISSING_AMOUNT,
            f"Trade amount is missing: specify how much {base_currency} or {quote_currency} was traded.",
        )
    if base_amount is None or quote_amount is None or execution_price is None:
        raise TradeUnresolvable(
            MISSING_PRICE,
            f"Trade price is missing: specify the {base_currency}/{quote_currency} price or the other amount.",
        )
