"""
Ledger Storage

Reads a user's accounts, asset caches and transactions, and writes
reconciliation corrections. All writes of one reconciliation run happen in a
single database transaction.
"""

from dataclasses import fields, replace
from decimal import Decimal
from typing import Mapping, Optional
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.db import account_assets, accounts, transactions
from backend.ledger_replay import LedgerTransaction, transaction_effects
from backend.money import coerce_decimal, normalize_code
from backend.reconciliation import (
    MODE_APPLY,
    AccountAsset,
    ReconcileMode,
    ReconciliationResult,
    StoredAccount,
    plan_reconciliation,
)
from backend.trade_canonicalizer import canonicalize_trade
from backend.trade_meta import TradeMeta, attach_trade_meta

logger = structlog.get_logger(__name__)


class PersistenceFailure(RuntimeError):
    """Raised when reconciliation corrections cannot be committed."""


def load_accounts(conn: Connection, user_id: str) -> list[StoredAccount]:
    """
    Load a user's accounts with their cached asset balances.

    Accounts come back in creation order and each account's assets in
    insertion order, which is the order currency inference relies on.

    Args:
        conn: Database connection
        user_id: Owner of the accounts

    Returns:
        List of StoredAccount
    """
    account_rows = conn.execute(
        select(accounts.c.id, accounts.c.name)
        .where(accounts.c.user_id == user_id)
        .order_by(accounts.c.created_at.asc(), accounts.c.id.asc())
    ).mappings().all()
    if not account_rows:
        return []

    account_ids = [row["id"] for row in account_rows]
    asset_rows = conn.execute(
        select(account_assets.c.account_id, account_assets.c.currency, account_assets.c.amount)
        .where(account_assets.c.account_id.in_(account_ids))
        .order_by(account_assets.c.id.asc())
    ).mappings().all()

    assets_by_account: dict[str, list[AccountAsset]] = {account_id: [] for account_id in account_ids}
    for row in asset_rows:
        code = normalize_code(row["currency"])
        if not code:
            continue
        assets_by_account[row["account_id"]].append(
            AccountAsset(currency=code, amount=coerce_decimal(row["amount"]))
        )

    return [
        StoredAccount(
            id=row["id"],
            name=row["name"] or row["id"],
            assets=tuple(assets_by_account[row["id"]]),
        )
        for row in account_rows
    ]


def load_transactions(conn: Connection, user_id: str) -> list[LedgerTransaction]:
    rows = conn.execute(
        select(transactions)
        .where(transactions.c.user_id == user_id)
        .order_by(
            transactions.c.transaction_date.asc(),
            transactions.c.created_at.asc(),
            transactions.c.id.asc(),
        )
    ).mappings().all()
    return [LedgerTransaction.from_record(row) for row in rows]


def load_account(conn: Connection, user_id: str, account_id: str) -> Optional[StoredAccount]:
    for account in load_accounts(conn, user_id):
        if account.id == account_id:
            return account
    return None


def upsert_account_asset(conn: Connection, account_id: str, currency: str, amount: Decimal) -> None:
    """Set an asset balance, creating the row when the account lacks that currency."""
    _write_asset(conn, account_id, currency, amount, increment=False)


def apply_asset_delta(conn: Connection, account_id: str, currency: str, delta: Decimal) -> None:
    _write_asset(conn, account_id, currency, delta, increment=True)


def _write_asset(
    conn: Connection,
    account_id: str,
    currency: str,
    amount: Decimal,
    *,
    increment: bool,
) -> None:
    values = {"account_id": account_id, "currency": currency, "amount": amount}
    dialect = conn.dialect.name
    if dialect in {"postgresql", "sqlite"}:
        insert_factory = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert_factory(account_assets).values(**values)
        new_amount = stmt.excluded.amount
        if increment:
            new_amount = account_assets.c.amount + stmt.excluded.amount
        stmt = stmt.on_conflict_do_update(
            index_elements=["account_id", "currency"],
            set_={"amount": new_amount},
        )
        conn.execute(stmt)
        return

    # Dialects without ON CONFLICT support fall back to update-then-insert.
    new_value = account_assets.c.amount + amount if increment else amount
    result = conn.execute(
        update(account_assets)
        .where(account_assets.c.account_id == account_id, account_assets.c.currency == currency)
        .values(amount=new_value)
    )
    if result.rowcount == 0:
        conn.execute(account_assets.insert().values(**values))


def record_transaction(conn: Connection, user_id: str, record: Mapping[str, object]) -> LedgerTransaction:
    """
    Insert a transaction and apply its balance effects to the asset caches.

    Trade records are canonicalized before they are stored and their raw text
    is tagged with the resolved trade parameters.

    Raises:
        TradeUnresolvable: If a trade's pair, amount or price is missing
    """
    txn = LedgerTransaction.from_record({**record, "id": record.get("id") or str(uuid4())})
    raw_text = record.get("raw_text")
    if txn.is_trade:
        canonical = canonicalize_trade(txn)
        if canonical is not None:
            txn = txn.with_trade(canonical)
            raw_text = attach_trade_meta(raw_text, TradeMeta.from_canonical(canonical))

    values = {
        field.name: getattr(txn, field.name)
        for field in fields(txn)
        if getattr(txn, field.name) is not None
    }
    conn.execute(
        transactions.insert().values(
            user_id=user_id,
            description=record.get("description"),
            raw_text=raw_text,
            **values,
        )
    )
    for key, delta in transaction_effects(txn):
        apply_asset_delta(conn, key.account_id, key.currency, delta)
    logger.info("transaction_recorded", user_id=user_id, transaction_id=txn.id, direction=txn.direction)
    return txn


def apply_reconciliation(conn: Connection, result: ReconciliationResult) -> None:
    for changed in result.changed_trades:
        conn.execute(
            update(transactions)
            .where(transactions.c.id == changed.transaction_id)
            .values(**changed.canonical.as_fields())
        )
    for diff in result.asset_writes():
        upsert_account_asset(conn, diff.account_id, diff.currency, diff.target)


def reconcile(engine: Engine, user_id: str, mode: str) -> ReconciliationResult:
    """
    Reconcile a user's asset caches against their transaction history.

    Reading, planning and (in apply mode) writing share one database
    transaction, so a failed apply leaves no partial corrections behind.

    Raises:
        ValueError: If mode is not 'dry-run' or 'apply'
        PersistenceFailure: If the apply step cannot be committed
    """
    normalized_mode = ReconcileMode.validate(mode)
    log = logger.bind(user_id=user_id, mode=normalized_mode)
    try:
        with engine.begin() as conn:
            stored_accounts = load_accounts(conn, user_id)
            stored_transactions = load_transactions(conn, user_id)
            result = replace(
                plan_reconciliation(stored_accounts, stored_transactions),
                mode=normalized_mode,
            )
            if normalized_mode == MODE_APPLY and result.needs_changes:
                apply_reconciliation(conn, result)
                result = replace(result, applied=True)
    except SQLAlchemyError as exc:
        log.error("reconciliation_failed", error=str(exc))
        if normalized_mode == MODE_APPLY:
            raise PersistenceFailure("Failed to apply reconciliation.") from exc
        raise

    log.info(
        "reconciliation_complete",
        applied=result.applied,
        changed_trades=len(result.changed_trades),
        asset_diffs=len(result.diffs),
    )
    return result
