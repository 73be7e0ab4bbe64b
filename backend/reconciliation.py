from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Mapping, Sequence

import structlog

from backend.ledger_replay import LedgerKey, LedgerTransaction, replay_ledger
from backend.money import AMOUNT_TOLERANCE, ZERO, coerce_decimal, normalize_code
from backend.trade_canonicalizer import (
    CanonicalTrade,
    TradeUnresolvable,
    canonicalize_trade,
    trade_matches,
)

logger = structlog.get_logger(__name__)

MODE_DRY_RUN = "dry-run"
MODE_APPLY = "apply"


class ReconcileMode:
    values = {MODE_DRY_RUN, MODE_APPLY}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "dryrun":
            normalized = MODE_DRY_RUN
        if normalized not in cls.values:
            raise ValueError("Mode must be 'dry-run' or 'apply'.")
        return normalized


@dataclass(frozen=True)
class AccountAsset:
    currency: str
    amount: Decimal


@dataclass(frozen=True)
class StoredAccount:
    id: str
    name: str
    assets: tuple[AccountAsset, ...] = ()


@dataclass(frozen=True)
class AssetDiff:
    account_id: str
    account_name: str
    currency: str
    current: Decimal
    target: Decimal

    @property
    def delta(self) -> Decimal:
        return self.target - self.current


@dataclass(frozen=True)
class ChangedTrade:
    transaction_id: str
    summary: str
    canonical: CanonicalTrade


@dataclass(frozen=True)
class ReconciliationResult:
    transaction_count: int
    diffs: tuple[AssetDiff, ...]
    changed_trades: tuple[ChangedTrade, ...]
    targets: Mapping[LedgerKey, Decimal] = field(default_factory=dict)
    unresolved_trade_ids: tuple[str, ...] = ()
    known_account_ids: frozenset[str] = frozenset()
    mode: str = MODE_DRY_RUN
    applied: bool = False

    @property
    def needs_changes(self) -> bool:
        return bool(self.diffs or self.changed_trades)

    def asset_writes(self) -> List[AssetDiff]:
        """Asset rows that must be written, limited to the user's own accounts."""
        return [diff for diff in self.diffs if diff.account_id in self.known_account_ids]


def plan_reconciliation(
    accounts: Sequence[StoredAccount],
    transactions: Iterable[LedgerTransaction | Mapping[str, object]],
) -> ReconciliationResult:
    """Compute the corrective write-set for a user's balance caches.

    The part of each stored balance not explained by the transaction log is
    kept as a baseline; canonicalized trades are replayed on top of it.
    """
    ledger = [
        txn if isinstance(txn, LedgerTransaction) else LedgerTransaction.from_record(txn)
        for txn in transactions
    ]
    current_assets = _current_assets(accounts)

    changed: List[ChangedTrade] = []
    unresolved: List[str] = []
    canonical_ledger: List[LedgerTransaction] = []
    for txn in ledger:
        if not txn.is_trade:
            canonical_ledger.append(txn)
            continue
        try:
            canonical = canonicalize_trade(txn)
        except TradeUnresolvable as exc:
            logger.warning(
                "trade_unresolvable",
                transaction_id=txn.id,
                missing=exc.missing,
                reason=str(exc),
            )
            unresolved.append(txn.id)
            canonical_ledger.append(txn)
            continue
        if canonical is None or trade_matches(txn, canonical):
            canonical_ledger.append(txn)
            continue
        changed.append(
            ChangedTrade(
                transaction_id=txn.id,
                summary=f"{txn.trade_type} {txn.trade_base_currency or txn.currency}",
                canonical=canonical,
            )
        )
        canonical_ledger.append(txn.with_trade(canonical))

    old_effects = replay_ledger(ledger)
    new_effects = replay_ledger(canonical_ledger)

    baseline: dict[LedgerKey, Decimal] = {
        key: amount - old_effects.get(key, ZERO) for key, amount in current_assets.items()
    }
    for key, delta in old_effects.items():
        baseline.setdefault(key, -delta)

    targets: dict[LedgerKey, Decimal] = {
        key: base + new_effects.get(key, ZERO) for key, base in baseline.items()
    }
    for key, delta in new_effects.items():
        targets.setdefault(key, delta)

    names = {account.id: account.name or account.id for account in accounts}
    diffs = [
        AssetDiff(
            account_id=key.account_id,
            account_name=names.get(key.account_id, key.account_id),
            currency=key.currency,
            current=current_assets.get(key, ZERO),
            target=target,
        )
        for key, target in targets.items()
        if abs(target - current_assets.get(key, ZERO)) > AMOUNT_TOLERANCE
    ]
    diffs.sort(key=lambda diff: (diff.account_name, diff.currency))

    logger.info(
        "reconciliation_planned",
        transactions=len(ledger),
        changed_trades=len(changed),
        unresolved_trades=len(unresolved),
        asset_diffs=len(diffs),
    )
    return ReconciliationResult(
        transaction_count=len(ledger),
        diffs=tuple(diffs),
        changed_trades=tuple(changed),
        targets=targets,
        unresolved_trade_ids=tuple(unresolved),
        known_account_ids=frozenset(names),
    )


def _current_assets(accounts: Sequence[StoredAccount]) -> dict[LedgerKey, Decimal]:
    current: dict[LedgerKey, Decimal] = {}
    for account in accounts:
        for asset in account.assets:
            code = normalize_code(asset.currency)
            if not code:
                continue
            current[LedgerKey(account.id, code)] = coerce_decimal(asset.amount)
    return current
