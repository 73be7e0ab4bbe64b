"""
Account Matching

Maps free-text account mentions coming from the upstream parser onto the
user's real accounts. Matching accepts aliases, substrings and small typos;
the explicit-mention check only accepts a name that sits next to a
preposition or an account keyword.
"""

from __future__ import annotations

import re
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence, TypeVar

OUTSIDE_ACCOUNT_NAME = "Вне Wallet"
MAX_EDIT_DISTANCE = 2

ACCOUNT_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "нал": "Наличные",
        "налик": "Наличные",
        "наличка": "Наличные",
        "кэш": "Наличные",
        "байбит": "Bybit",
        "байбиту": "Bybit",
        "мех": "MEXC",
        "мекс": "MEXC",
        "мэкс": "MEXC",
        "бингх": "BingX",
        "бингикс": "BingX",
        "бинанс": "Binance",
        "тинь": "Тинькофф",
        "тинек": "Тинькофф",
        "тинька": "Тинькофф",
        "шпаркассе": "Sparkasse",
        "шпаркаса": "Sparkasse",
    }
)

PREPOSITIONS = frozenset(
    {"с", "со", "из", "на", "в", "во", "для", "from", "to", "on", "in", "via", "into"}
)
ACCOUNT_KEYWORDS = frozenset(
    {
        "счёт",
        "счет",
        "счёта",
        "счета",
        "счёте",
        "счете",
        "карта",
        "карты",
        "карту",
        "кошелёк",
        "кошелек",
        "кошелька",
        "account",
        "wallet",
        "card",
    }
)

WORD_PATTERN = re.compile(r"[\w$€₽₴£'-]+", re.UNICODE)

AccountT = TypeVar("AccountT")


def levenshtein(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i] + [0] * len(right)
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current[j] = min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            )
        previous = current
    return previous[-1]


def normalize_account_alias(value: str | None) -> str:
    cleaned = str(value or "").strip()
    if not cleaned:
        return ""
    return ACCOUNT_ALIASES.get(cleaned.casefold(), cleaned)


def account_name(account: object) -> str:
    if isinstance(account, Mapping):
        return str(account.get("name") or "")
    return str(getattr(account, "name", "") or "")


def is_outside_account(account: object) -> bool:
    return account_name(account) == OUTSIDE_ACCOUNT_NAME


def find_outside_account(accounts: Iterable[AccountT]) -> Optional[AccountT]:
    for account in accounts:
        if is_outside_account(account):
            return account
    return None


def match_account(name_or_alias: str | None, accounts: Iterable[AccountT]) -> Optional[AccountT]:
    """
    Find the account a free-text mention refers to.

    Tries, in order:
    1. Exact case-insensitive name match
    2. Substring match in either direction
    3. Levenshtein distance <= 2 on whitespace-compacted names

    The reserved outside account never matches free text.

    Args:
        name_or_alias: Raw mention such as "мекс" or "tinkoff black"
        accounts: Candidate accounts (objects or mappings with a name)

    Returns:
        The matching account, or None
    """
    query = normalize_account_alias(name_or_alias)
    if not query:
        return None
    candidates = [account for account in accounts if not is_outside_account(account)]
    folded_query = query.casefold()

    for account in candidates:
        if account_name(account).strip().casefold() == folded_query:
            return account

    for account in candidates:
        folded_name = account_name(account).strip().casefold()
        if folded_name and (folded_query in folded_name or folded_name in folded_query):
            return account

    compact_query = _compact(query)
    best: Optional[AccountT] = None
    best_distance = MAX_EDIT_DISTANCE + 1
    for account in candidates:
        compact_name = _compact(account_name(account))
        if not compact_name:
            continue
        distance = levenshtein(compact_query, compact_name)
        if distance < best_distance:
            best = account
            best_distance = distance
    return best


def is_account_explicitly_mentioned(text: str | None, name: str | None) -> bool:
    """Check that ``name`` appears next to a preposition or an account keyword."""
    tokens = [token.casefold() for token in WORD_PATTERN.findall(str(text or ""))]
    if not tokens:
        return False
    for variant in _name_variants(name):
        width = len(variant)
        for start in range(len(tokens) - width + 1):
            if not _window_matches(tokens[start : start + width], variant):
                continue
            before = tokens[start - 1] if start > 0 else ""
            after = tokens[start + width] if start + width < len(tokens) else ""
            if before in PREPOSITIONS or before in ACCOUNT_KEYWORDS or after in ACCOUNT_KEYWORDS:
                return True
    return False


def resolve_transfer_accounts(
    from_name: str | None,
    to_name: str | None,
    accounts: Sequence[AccountT],
) -> tuple[Optional[AccountT], Optional[AccountT]]:
    """Resolve both transfer endpoints, using the outside account for an unnamed side."""
    outside = find_outside_account(accounts)
    source = match_account(from_name, accounts) if from_name else None
    target = match_account(to_name, accounts) if to_name else None
    return source or outside, target or outside


def _name_variants(name: str | None) -> list[list[str]]:
    canonical = str(name or "").strip()
    if not canonical:
        return []
    folded = canonical.casefold()
    variants = [canonical]
    variants.extend(alias for alias, target in ACCOUNT_ALIASES.items() if target.casefold() == folded)
    result: list[list[str]] = []
    for variant in variants:
        words = [word.casefold() for word in WORD_PATTERN.findall(variant)]
        if words and words not in result:
            result.append(words)
    return result


def _window_matches(window: list[str], variant: list[str]) -> bool:
    for token, expected in zip(window, variant):
        if token == expected:
            continue
        if len(expected) >= 5 and levenshtein(token, expected) <= 1:
            continue
        return False
    return True


def _compact(value: str) -> str:
    return re.sub(r"\s+", "", value).casefold()
