from __future__ import annotations

from dataclasses import dataclass, fields, replace
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Iterable, List, Mapping, NamedTuple, Optional

from backend.money import ZERO, coerce_decimal, normalize_code, optional_decimal
from backend.trade_canonicalizer import CanonicalTrade

SUPPORTED_DIRECTIONS = {"income", "expense", "transfer"}

_AMOUNT_FIELDS = {
    "amount",
    "converted_amount",
    "trade_base_amount",
    "trade_quote_amount",
    "execution_price",
    "trade_fee_amount",
}
_CODE_FIELDS = {
    "currency",
    "convert_to_currency",
    "trade_base_currency",
    "trade_quote_currency",
    "trade_fee_currency",
}


class LedgerKey(NamedTuple):
    account_id: str
    currency: str


@dataclass(frozen=True)
class LedgerTransaction:
    id: str
    direction: str
    account_id: Optional[str]
    amount: Decimal
    currency: str
    transaction_date: Optional[datetime] = None
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    converted_amount: Optional[Decimal] = None
    convert_to_currency: Optional[str] = None
    trade_type: Optional[str] = None
    trade_base_currency: Optional[str] = None
    trade_base_amount: Optional[Decimal] = None
    trade_quote_currency: Optional[str] = None
    trade_quote_amount: Optional[Decimal] = None
    execution_price: Optional[Decimal] = None
    trade_fee_currency: Optional[str] = None
    trade_fee_amount: Optional[Decimal] = None

    @classmethod
    def from_record(cls, record: Mapping[str, object]) -> "LedgerTransaction":
        values: dict[str, object] = {}
        for field in fields(cls):
            raw = record.get(field.name)
            if field.name == "amount":
                values[field.name] = coerce_decimal(raw)
            elif field.name in _AMOUNT_FIELDS:
                values[field.name] = optional_decimal(raw)
            elif field.name == "currency":
                values[field.name] = normalize_code(raw) or ""
            elif field.name in _CODE_FIELDS:
                values[field.name] = normalize_code(raw)
            elif field.name in {"direction", "trade_type"}:
                values[field.name] = str(raw).strip().lower() if raw is not None else None
            elif field.name == "transaction_date":
                values[field.name] = _coerce_date(raw)
            elif field.name in {"id", "account_id", "from_account_id", "to_account_id"}:
                values[field.name] = str(raw) if raw is not None else None
        values["direction"] = values["direction"] or ""
        return cls(**values)

    @property
    def is_trade(self) -> bool:
        return self.trade_type in {"buy", "sell"}

    def with_trade(self, trade: CanonicalTrade) -> "LedgerTransaction":
        return replace(self, **trade.as_fields())


def transaction_effects(txn: LedgerTransaction) -> List[tuple[LedgerKey, Decimal]]:
    """Signed balance effects of one transaction, keyed by (account, currency)."""
    use_converted = txn.converted_amount is not None and bool(txn.convert_to_currency)
    if use_converted:
        effective_amount = abs(txn.converted_amount)
        effective_currency = txn.convert_to_currency
    else:
        effective_amount = abs(txn.amount)
        effective_currency = txn.currency

    effects: List[tuple[LedgerKey, Decimal]] = []
    direction = txn.direction.strip().lower()
    if direction == "expense":
        _add_effect(effects, txn.account_id, effective_currency, -effective_amount)
    elif direction == "income":
        _add_effect(effects, txn.account_id, effective_currency, effective_amount)
    elif direction == "transfer" and txn.to_account_id:
        source_account = txn.from_account_id or txn.account_id
        _add_effect(effects, source_account, txn.currency, -abs(txn.amount))
        _add_effect(effects, txn.to_account_id, effective_currency, effective_amount)
        fee_amount = txn.trade_fee_amount or ZERO
        if fee_amount > ZERO and txn.trade_fee_currency:
            _add_effect(effects, source_account, txn.trade_fee_currency, -abs(fee_amount))
    return effects


def replay_ledger(transactions: Iterable[LedgerTransaction | Mapping[str, object]]) -> dict[LedgerKey, Decimal]:
    """Fold a transaction history into per-(account, currency) balances.

    Transactions are replayed in transaction_date order, ties broken by their
    position in the input.
    """
    balances: dict[LedgerKey, Decimal] = {}
    for txn in order_transactions(transactions):
        for key, delta in transaction_effects(txn):
            balances[key] = balances.get(key, ZERO) + delta
    return balances


def balances_as_of(
    transactions: Iterable[LedgerTransaction | Mapping[str, object]],
    as_of: date | datetime,
) -> dict[LedgerKey, Decimal]:
    if isinstance(as_of, datetime):
        cutoff = _date_sort_key(as_of)
    else:
        cutoff = datetime.combine(as_of, time.max)
    included = [
        txn
        for txn in order_transactions(transactions)
        if txn.transaction_date is None or _date_sort_key(txn.transaction_date) <= cutoff
    ]
    return replay_ledger(included)


def order_transactions(
    transactions: Iterable[LedgerTransaction | Mapping[str, object]],
) -> List[LedgerTransaction]:
    normalized = [_as_ledger_transaction(txn) for txn in transactions]
    indexed = sorted(
        enumerate(normalized),
        key=lambda pair: (_date_sort_key(pair[1].transaction_date), pair[0]),
    )
    return [txn for _, txn in indexed]


def _as_ledger_transaction(txn: LedgerTransaction | Mapping[str, object]) -> LedgerTransaction:
    if isinstance(txn, LedgerTransaction):
        return txn
    return LedgerTransaction.from_record(txn)


def _add_effect(
    effects: List[tuple[LedgerKey, Decimal]],
    account_id: Optional[str],
    currency: Optional[str],
    delta: Decimal,
) -> None:
    if not account_id:
        return
    code = normalize_code(currency)
    if not code or delta == ZERO:
        return
    effects.append((LedgerKey(account_id, code), delta))


def _coerce_date(value: object) -> date | datetime | None:
    if isinstance(value, (date, datetime)):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _date_sort_key(value: date | datetime | None) -> datetime:
    if value is None:
        return datetime.min
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, time.min)
