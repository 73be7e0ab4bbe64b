import os
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal

import structlog
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import select

from backend.account_matcher import (
    is_account_explicitly_mentioned,
    is_outside_account,
    match_account,
    resolve_transfer_accounts,
)
from backend.currency_resolution import (
    CurrencyUnsupported,
    ensure_supported_currency,
    resolve_transaction_currency,
)
from backend.db import DEFAULT_DATABASE_URL, create_db_engine, get_database_url, metadata, users
from backend.ledger_replay import replay_ledger
from backend.ledger_store import (
    PersistenceFailure,
    load_account,
    load_accounts,
    load_transactions,
    reconcile,
    record_transaction,
)
from backend.logging_config import configure_logging
from backend.money import normalize_code
from backend.reconciliation import ReconcileMode
from backend.trade_canonicalizer import TradeUnresolvable, canonicalize_trade

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(get_database_url(DEFAULT_DATABASE_URL))


def get_system_default_currency() -> str:
    code = normalize_code(os.getenv("DEFAULT_CURRENCY", "USD"))
    if not code or not code.isalpha():
        return "USD"
    return code


def get_supported_currencies() -> frozenset[str] | None:
    raw = os.getenv("SUPPORTED_CURRENCIES", "")
    codes = frozenset(code for code in (normalize_code(part) for part in raw.split(",")) if code)
    return codes or None


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
SUPPORTED_CURRENCIES = get_supported_currencies()


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class TransactionDirection:
    values = {"income", "expense", "transfer"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction direction.")
        return normalized


class TradePayload(BaseModel):
    trade_type: str | None = None
    amount: Decimal | str | None = None
    currency: str | None = None
    converted_amount: Decimal | str | None = None
    convert_to_currency: str | None = None
    trade_base_currency: str | None = None
    trade_base_amount: Decimal | str | None = None
    trade_quote_currency: str | None = None
    trade_quote_amount: Decimal | str | None = None
    execution_price: Decimal | str | None = None
    trade_fee_currency: str | None = None
    trade_fee_amount: Decimal | str | None = None


class CanonicalTradeResponse(BaseModel):
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
    trade_fee_currency: str | None = None
    trade_fee_amount: Decimal | None = None


class AssetPayload(BaseModel):
    currency: str
    amount: Decimal | str | None = None


class CurrencyResolvePayload(BaseModel):
    raw_text: str | None = None
    description: str | None = None
    llm_currency: str | None = None
    direction: str = "expense"
    amount: Decimal | str | None = None
    account_id: str | None = None
    assets: list[AssetPayload] | None = None
    fallback_currency: str | None = None


class CurrencyResolveResponse(BaseModel):
    currency: str | None = None
    source: str
    explicit_mentioned: bool


class AccountMatchPayload(BaseModel):
    name: str
    text: str | None = None


class AccountMatchResponse(BaseModel):
    id: str
    name: str
    explicit_mentioned: bool | None = None


class BalanceResponse(BaseModel):
    account_id: str
    account_name: str
    currency: str
    balance: Decimal


class AssetDiffResponse(BaseModel):
    account_id: str
    account_name: str
    currency: str
    current: Decimal
    target: Decimal
    delta: Decimal


class ChangedTradeResponse(BaseModel):
    transaction_id: str
    summary: str
    trade: CanonicalTradeResponse


class ReconciliationResponse(BaseModel):
    mode: str
    applied: bool
    transaction_count: int
    diffs: list[AssetDiffResponse]
    changed_trades: list[ChangedTradeResponse]
    unresolved_trade_ids: list[str]


class TransactionPayload(TradePayload):
    direction: str
    account_id: str
    from_account_id: str | None = None
    to_account_id: str | None = None
    to_account_name: str | None = None
    transaction_date: datetime | None = None
    description: str | None = None
    raw_text: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.direction = TransactionDirection.validate(payload.direction)
        payload.trade_type = payload.trade_type.strip().lower() if payload.trade_type else None
        if payload.trade_type and payload.trade_type not in {"buy", "sell"}:
            raise ValueError("Trade type must be 'buy' or 'sell'.")
        payload.description = payload.description.strip() if payload.description else None
        if payload.trade_type is None:
            try:
                amount = Decimal(str(payload.amount)) if payload.amount is not None else None
            except ArithmeticError as exc:
                raise ValueError("Amount must be a number.") from exc
            if amount is None or not amount.is_finite() or amount <= 0:
                raise ValueError("Amount must be greater than zero.")
            payload.amount = amount
        return payload


class TransactionResponse(BaseModel):
    id: str
    direction: str
    account_id: str | None = None
    from_account_id: str | None = None
    to_account_id: str | None = None
    amount: Decimal
    currency: str
    converted_amount: Decimal | None = None
    convert_to_currency: str | None = None
    transaction_date: datetime | None = None
    trade_type: str | None = None
    trade_base_currency: str | None = None
    trade_base_amount: Decimal | None = None
    trade_quote_currency: str | None = None
    trade_quote_amount: Decimal | None = None
    execution_price: Decimal | None = None
    trade_fee_currency: str | None = None
    trade_fee_amount: Decimal | None = None


def get_user_id(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    user_id = x_user_id.strip()
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def trade_unresolvable_detail(exc: TradeUnresolvable) -> dict:
    return {"missing": exc.missing, "message": str(exc)}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/trades/canonicalize", response_model=CanonicalTradeResponse)
def canonicalize_trade_payload(payload: TradePayload) -> CanonicalTradeResponse:
    try:
        canonical = canonicalize_trade(payload.model_dump())
    except TradeUnresolvable as exc:
        raise HTTPException(status_code=422, detail=trade_unresolvable_detail(exc)) from exc
    if canonical is None:
        raise HTTPException(status_code=400, detail="Trade type must be 'buy' or 'sell'.")
    return CanonicalTradeResponse(**canonical.as_fields())


@app.post("/currency/resolve", response_model=CurrencyResolveResponse)
def resolve_currency(
    payload: CurrencyResolvePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CurrencyResolveResponse:
    if payload.account_id:
        user_id = get_user_id(x_user_id)
        with engine.begin() as conn:
            account = load_account(conn, user_id, payload.account_id)
        if not account:
            raise HTTPException(status_code=404, detail="Account not found.")
        assets = list(account.assets)
    else:
        assets = [asset.model_dump() for asset in payload.assets or []]

    resolution = resolve_transaction_currency(
        payload.raw_text,
        payload.llm_currency,
        payload.direction,
        payload.amount,
        assets,
        payload.fallback_currency or SYSTEM_DEFAULT_CURRENCY,
        description=payload.description,
        supported_currencies=SUPPORTED_CURRENCIES,
    )
    if resolution.currency:
        try:
            ensure_supported_currency(resolution.currency, SUPPORTED_CURRENCIES)
        except CurrencyUnsupported as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return CurrencyResolveResponse(**asdict(resolution))


@app.post("/accounts/match", response_model=AccountMatchResponse)
def match_account_mention(
    payload: AccountMatchPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountMatchResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        user_accounts = load_accounts(conn, user_id)
    account = match_account(payload.name, user_accounts)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found.")
    explicit = None
    if payload.text is not None:
        explicit = is_account_explicitly_mentioned(payload.text, account.name)
    return AccountMatchResponse(id=account.id, name=account.name, explicit_mentioned=explicit)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        user_accounts = load_accounts(conn, user_id)
        accounts_by_id = {account.id: account for account in user_accounts}
        account = accounts_by_id.get(payload.account_id)
        if not account:
            raise HTTPException(status_code=404, detail="Account not found.")

        record = payload.model_dump()
        if payload.direction == "transfer":
            record["from_account_id"] = payload.from_account_id or account.id
            if not payload.to_account_id:
                if payload.trade_type:
                    record["to_account_id"] = account.id
                else:
                    _, target = resolve_transfer_accounts(None, payload.to_account_name, user_accounts)
                    record["to_account_id"] = target.id if target else None
            if not record["to_account_id"]:
                raise HTTPException(status_code=400, detail="Transfer requires a target account.")
            for endpoint in (record["from_account_id"], record["to_account_id"]):
                if endpoint not in accounts_by_id:
                    raise HTTPException(status_code=404, detail="Account not found.")
        elif is_outside_account(account):
            raise HTTPException(
                status_code=400,
                detail="The outside account cannot be used for income or expenses.",
            )

        if not payload.trade_type and (payload.raw_text or not payload.currency):
            resolution = resolve_transaction_currency(
                payload.raw_text,
                payload.currency,
                payload.direction,
                payload.amount,
                account.assets,
                SYSTEM_DEFAULT_CURRENCY,
                description=payload.description,
                supported_currencies=SUPPORTED_CURRENCIES,
            )
            record["currency"] = resolution.currency or SYSTEM_DEFAULT_CURRENCY

        try:
            txn = record_transaction(conn, user_id, record)
            for code in (txn.currency, txn.convert_to_currency, txn.trade_fee_currency):
                if code:
                    ensure_supported_currency(code, SUPPORTED_CURRENCIES)
        except TradeUnresolvable as exc:
            raise HTTPException(status_code=422, detail=trade_unresolvable_detail(exc)) from exc
        except CurrencyUnsupported as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    return TransactionResponse(**asdict(txn))


@app.get("/ledger/balances", response_model=list[BalanceResponse])
def ledger_balances(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[BalanceResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        user_accounts = load_accounts(conn, user_id)
        history = load_transactions(conn, user_id)
    names = {account.id: account.name for account in user_accounts}
    balances = [
        BalanceResponse(
            account_id=key.account_id,
            account_name=names.get(key.account_id, key.account_id),
            currency=key.currency,
            balance=balance,
        )
        for key, balance in replay_ledger(history).items()
    ]
    balances.sort(key=lambda row: (row.account_name, row.currency))
    return balances


@app.post("/ledger/reconcile", response_model=ReconciliationResponse)
def reconcile_ledger(
    mode: str = Query("dry-run"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReconciliationResponse:
    user_id = get_user_id(x_user_id)
    try:
        normalized_mode = ReconcileMode.validate(mode)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        result = reconcile(engine, user_id, normalized_mode)
    except PersistenceFailure as exc:
        logger.error("reconcile_endpoint_failed", user_id=user_id, error=str(exc.__cause__ or exc))
        raise HTTPException(status_code=500, detail="Failed to apply reconciliation.") from exc

    return ReconciliationResponse(
        mode=result.mode,
        applied=result.applied,
        transaction_count=result.transaction_count,
        diffs=[
            AssetDiffResponse(
                account_id=diff.account_id,
                account_name=diff.account_name,
                currency=diff.currency,
                current=diff.current,
                target=diff.target,
                delta=diff.delta,
            )
            for diff in result.diffs
        ],
        changed_trades=[
            ChangedTradeResponse(
                transaction_id=changed.transaction_id,
                summary=changed.summary,
                trade=CanonicalTradeResponse(**changed.canonical.as_fields()),
            )
            for changed in result.changed_trades
        ],
        unresolved_trade_ids=list(result.unresolved_trade_ids),
    )
