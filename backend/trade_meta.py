from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from backend.money import ZERO, format_plain, normalize_code, positive_decimal
from backend.trade_canonicalizer import TRADE_TYPES, CanonicalTrade

TRADE_META_PREFIX = "[[TRADE:"
TRADE_META_SUFFIX = "]]"
TRADE_META_PATTERN = re.compile(r"\[\[TRADE:(.*?)\]\]", re.DOTALL)


@dataclass(frozen=True)
class TradeMeta:
    type: str
    base_currency: str
    base_amount: Decimal
    quote_currency: str
    quote_amount: Decimal
    execution_price: Decimal
    fee_currency: Optional[str] = None
    fee_amount: Optional[Decimal] = None

    @classmethod
    def from_canonical(cls, trade: CanonicalTrade) -> "TradeMeta":
        return cls(
            type=trade.trade_type,
            base_currency=trade.trade_base_currency,
            base_amount=trade.trade_base_amount,
            quote_currency=trade.trade_quote_currency,
            quote_amount=trade.trade_quote_amount,
            execution_price=trade.execution_price,
            fee_currency=trade.trade_fee_currency,
            fee_amount=trade.trade_fee_amount,
        )


def attach_trade_meta(raw_text: str | None, meta: TradeMeta) -> str:
    parts = [
        f"type={meta.type}",
        f"base={normalize_code(meta.base_currency) or ''}",
        f"baseAmount={format_plain(meta.base_amount)}",
        f"quote={normalize_code(meta.quote_currency) or ''}",
        f"quoteAmount={format_plain(meta.quote_amount)}",
        f"price={format_plain(meta.execution_price)}",
    ]
    if meta.fee_amount is not None and meta.fee_amount > ZERO:
        fee_currency = normalize_code(meta.fee_currency) or normalize_code(meta.quote_currency) or ""
        parts.append(f"fee={format_plain(meta.fee_amount)}")
        parts.append(f"feeCurrency={fee_currency}")
    token = f"{TRADE_META_PREFIX}{';'.join(parts)}{TRADE_META_SUFFIX}"
    return f"{strip_trade_meta(raw_text)} {token}".strip()


def strip_trade_meta(raw_text: str | None) -> str:
    return TRADE_META_PATTERN.sub("", str(raw_text or "")).strip()


def extract_trade_meta(raw_text: str | None) -> TradeMeta | None:
    match = TRADE_META_PATTERN.search(str(raw_text or ""))
    if not match:
        return None
    entries: dict[str, str] = {}
    for part in match.group(1).split(";"):
        key, _, value = part.strip().partition("=")
        if key:
            entries[key.strip()] = value.strip()

    trade_type = entries.get("type", "").lower()
    base_currency = normalize_code(entries.get("base"))
    quote_currency = normalize_code(entries.get("quote"))
    base_amount = positive_decimal(entries.get("baseAmount"))
    quote_amount = positive_decimal(entries.get("quoteAmount"))
    execution_price = positive_decimal(entries.get("price"))
    if (
        trade_type not in TRADE_TYPES
        or not base_currency
        or not quote_currency
        or base_amount is None
        or quote_amount is None
        or execution_price is None
    ):
        return None

    fee_amount = positive_decimal(entries.get("fee"))
    fee_currency = normalize_code(entries.get("feeCurrency")) if fee_amount else None
    return TradeMeta(
        type=trade_type,
        base_currency=base_currency,
        base_amount=base_amount,
        quote_currency=quote_currency,
        quote_amount=quote_amount,
        execution_price=execution_price,
        fee_currency=fee_currency or (quote_currency if fee_amount else None),
        fee_amount=fee_amount,
    )

