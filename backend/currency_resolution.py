from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable, Mapping

from backend.money import ZERO, coerce_decimal, normalize_code

SOURCE_EXPLICIT = "explicit"
SOURCE_INFERRED = "inferred"

CURRENCY_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "$": "USD",
        "USD": "USD",
        "US$": "USD",
        "ДОЛ": "USD",
        "ДОЛЛ": "USD",
        "ДОЛ.": "USD",
        "ДОЛЛ.": "USD",
        "ДОЛЛАР": "USD",
        "ДОЛЛАРЫ": "USD",
        "ДОЛЛАРОВ": "USD",
        "ЮСД": "USD",
        "DOL": "USD",
        "DLL": "USD",
        "€": "EUR",
        "EUR": "EUR",
        "ЕВРО": "EUR",
        "₽": "RUB",
        "RUB": "RUB",
        "RUR": "RUB",
        "РУБ": "RUB",
        "РУБЛЬ": "RUB",
        "РУБЛЯ": "RUB",
        "РУБЛЕЙ": "RUB",
        "₴": "UAH",
        "UAH": "UAH",
        "ГРН": "UAH",
        "ГРИВНА": "UAH",
        "ГРИВНЫ": "UAH",
        "£": "GBP",
        "GBP": "GBP",
        "ФУНТ": "GBP",
        "BYN": "BYN",
        "BYP": "BYN",
        "BYR": "BYN",
        "БЕЛРУБ": "BYN",
        "USDT": "USDT",
        "ТЕТЕР": "USDT",
        "TON": "TON",
        "ТОН": "TON",
        "BTC": "BTC",
        "БИТКОИН": "BTC",
        "ETH": "ETH",
        "ЭФИР": "ETH",
    }
)

MENTION_PATTERN = re.compile(r"[A-Za-zА-Яа-яЁё$€₽₴£]{1,16}")
CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9]{1,9}$")


class CurrencyUnsupported(ValueError):
    """Raised when a resolved currency is outside the supported set."""

    def __init__(self, currency: str) -> None:
        super().__init__(f"Unsupported currency: {currency or '<empty>'}")
        self.currency = currency


@dataclass(frozen=True)
class CurrencyAsset:
    currency: str
    amount: Decimal = ZERO


@dataclass(frozen=True)
class CurrencyResolution:
    currency: str | None
    source: str
    explicit_mentioned: bool


def normalize_currency_mention(
    raw: str | None,
    supported_currencies: Iterable[str] | None = None,
) -> str:
    supported = _supported_set(supported_currencies)
    compact = re.sub(r"\s+", "", str(raw or "").strip().upper())
    if not compact:
        return ""
    alias = CURRENCY_ALIASES.get(compact)
    if alias:
        return _accept(alias, supported)
    token = re.sub(r"[^A-Z0-9]", "", compact)
    if not token:
        return ""
    alias = CURRENCY_ALIASES.get(token)
    if alias:
        return _accept(alias, supported)
    if CODE_PATTERN.match(token):
        return _accept(token, supported)
    return ""


def detect_explicit_currency_mentions(
    text: str | None,
    supported_currencies: Iterable[str] | None = None,
) -> set[str]:
    supported = _supported_set(supported_currencies)
    found: set[str] = set()
    for match in MENTION_PATTERN.finditer(str(text or "")):
        code = normalize_currency_mention(match.group(0), supported)
        if code:
            found.add(code)
    return found


def infer_currency_from_balances(
    direction: str | None,
    amount: object,
    assets: Iterable[CurrencyAsset | Mapping[str, object]],
    fallback_currency: str | None = None,
) -> str | None:
    """Guess a currency from account holdings.

    Income lands in the first asset currency. Spending picks the first asset,
    in the order supplied, whose balance covers the amount, and falls back to
    the first asset currency otherwise.
    """
    normalized_assets = _normalize_assets(assets)
    fallback = normalize_code(fallback_currency)
    first_currency = normalized_assets[0].currency if normalized_assets else fallback
    if not first_currency:
        return None
    if _normalize_direction(direction) == "income":
        return first_currency
    needed = coerce_decimal(amount)
    if needed > ZERO:
        for asset in normalized_assets:
            if asset.amount >= needed:
                return asset.currency
    return first_currency


def resolve_transaction_currency(
    raw_text: str | None,
    llm_currency: str | None,
    direction: str | None,
    amount: object,
    assets: Iterable[CurrencyAsset | Mapping[str, object]],
    fallback_currency: str | None = None,
    *,
    description: str | None = None,
    supported_currencies: Iterable[str] | None = None,
) -> CurrencyResolution:
    supported = _supported_set(supported_currencies)
    source_text = f"{raw_text or ''} {description or ''}"
    explicit_mentions = detect_explicit_currency_mentions(source_text, supported)
    suggested = normalize_currency_mention(llm_currency, supported)
    normalized_assets = _normalize_assets(assets)
    account_currencies = {asset.currency for asset in normalized_assets}

    if suggested and suggested in explicit_mentions:
        return CurrencyResolution(currency=suggested, source=SOURCE_EXPLICIT, explicit_mentioned=True)
    if suggested and suggested in account_currencies:
        return CurrencyResolution(currency=suggested, source=SOURCE_INFERRED, explicit_mentioned=False)

    inferred = infer_currency_from_balances(direction, amount, normalized_assets, fallback_currency)
    if inferred:
        return CurrencyResolution(currency=inferred, source=SOURCE_INFERRED, explicit_mentioned=False)
    return CurrencyResolution(
        currency=suggested or None,
        source=SOURCE_INFERRED,
        explicit_mentioned=False,
    )


def ensure_supported_currency(
    currency: str | None,
    supported_currencies: Iterable[str] | None = None,
) -> str:
    code = normalize_code(currency) or ""
    supported = _supported_set(supported_currencies)
    if not code or (supported is not None and code not in supported):
        raise CurrencyUnsupported(code)
    return code


def _accept(code: str, supported: frozenset[str] | None) -> str:
    if supported is None or code in supported:
        return code
    return ""


def _supported_set(values: Iterable[str] | None) -> frozenset[str] | None:
    if values is None:
        return None
    if isinstance(values, frozenset):
        return values
    return frozenset(code for code in (normalize_code(value) for value in values) if code)


def _normalize_assets(
    assets: Iterable[CurrencyAsset | Mapping[str, object]],
) -> list[CurrencyAsset]:
    normalized: list[CurrencyAsset] = []
    for asset in assets or []:
        if isinstance(asset, Mapping):
            currency = asset.get("currency")
            amount = asset.get("amount")
        else:
            currency = getattr(asset, "currency", None)
            amount = getattr(asset, "amount", None)
        code = normalize_code(currency)
        if not code:
            continue
        normalized.append(CurrencyAsset(currency=code, amount=coerce_decimal(amount)))
    return normalized


def _normalize_direction(value: str | None) -> str:
    return str(value or "").strip().lower()
