"""
Asset Reconciliation Command

Replays a user's transaction history, canonicalizes trade records and
compares the result with the cached account asset balances. Runs as a
dry-run unless --apply is given.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional, Sequence

import structlog

from backend.db import create_db_engine, get_database_url
from backend.ledger_store import reconcile
from backend.logging_config import configure_logging
from backend.money import format_amount, format_plain
from backend.reconciliation import MODE_APPLY, MODE_DRY_RUN, ReconciliationResult

logger = structlog.get_logger(__name__)

USAGE = "Usage: reconcile-assets --user-id <id> [--dry-run] [--apply]"
PREVIEW_LIMIT = 30


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconcile-assets",
        description="Reconcile cached account balances against transaction history",
    )
    parser.add_argument("--user-id", dest="user_id", help="User whose ledger is reconciled")
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing (default)")
    parser.add_argument("--apply", action="store_true", help="Persist trade and balance corrections")
    return parser


def render_report(user_id: str, result: ReconciliationResult) -> List[str]:
    if not result.known_account_ids:
        return ["No accounts found for this user"]
    if result.transaction_count == 0:
        return ["No transactions found for this user"]

    lines = [
        f"User: {user_id}",
        f"Transactions total: {result.transaction_count}",
        f"Trade transactions to canonicalize: {len(result.changed_trades)}",
        f"Mode: {'APPLY' if result.mode == MODE_APPLY else 'DRY-RUN'}",
        "",
    ]

    if not result.diffs:
        lines.append("Asset diff: no changes needed.")
    else:
        lines.append("Asset diff:")
        for diff in result.diffs:
            lines.append(
                f"- {diff.account_name} {diff.currency}: {format_amount(diff.current)} -> "
                f"{format_amount(diff.target)} (delta {format_amount(diff.delta)})"
            )

    if result.changed_trades:
        lines.append("")
        lines.append("Changed trade transactions:")
        for changed in result.changed_trades[:PREVIEW_LIMIT]:
            canonical = changed.canonical
            lines.append(
                f"- {changed.transaction_id}: {changed.summary} | "
                f"amount={format_plain(canonical.amount)} {canonical.currency}, "
                f"converted={format_plain(canonical.converted_amount)} {canonical.convert_to_currency}"
            )
        overflow = len(result.changed_trades) - PREVIEW_LIMIT
        if overflow > 0:
            lines.append(f"... and {overflow} more")

    if result.unresolved_trade_ids:
        lines.append("")
        lines.append(f"Unresolvable trades left unchanged: {len(result.unresolved_trade_ids)}")

    lines.append("")
    if result.mode == MODE_APPLY:
        lines.append("Apply complete.")
    else:
        lines.append("Dry-run complete. Use --apply to persist changes.")
    return lines


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)

    if not args.user_id:
        print(USAGE, file=sys.stderr)
        return 1
    database_url = get_database_url()
    if not database_url:
        print("DATABASE_URL is required", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        return 1

    mode = MODE_APPLY if args.apply and not args.dry_run else MODE_DRY_RUN
    try:
        engine = create_db_engine(database_url)
        result = reconcile(engine, args.user_id, mode)
    except Exception:
        logger.exception("reconcile_assets_failed", user_id=args.user_id, mode=mode)
        return 1

    for line in render_report(args.user_id, result):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
