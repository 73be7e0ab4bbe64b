from __future__ import annotations

import math
import re
from decimal import Decimal, InvalidOperation

ZERO = Decimal("0")
AMOUNT_TOLERANCE = Decimal("1e-12")
PRICE_QUANTUM = Decimal("1e-12")


def coerce_decimal(value: object, fallback: Decimal = ZERO) -> Decimal:
    """Coerce a loosely-typed upstream value into a finite Decimal.

    Strings, floats, ints, Decimals and objects exposing ``to_decimal`` are
    accepted. Anything else, including NaN and infinities, yields ``fallback``.
    """
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, Decimal):
        return value if value.is_finite() else fallback
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return fallback
        return Decimal(str(value))
    if isinstance(value, str):
        return _parse_decimal_text(value, fallback)
    to_decimal = getattr(value, "to_decimal", None)
    if callable(to_decimal):
        return coerce_decimal(to_decimal(), fallback)
    return _parse_decimal_text(str(value), fallback)


def optional_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    return coerce_decimal(value)


def positive_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    amount = abs(coerce_decimal(value))
    return amount if amount > ZERO else None


def normalize_code(value: object) -> str | None:
    if value is None:
        return None
    code = str(value).strip().upper()
    return code or None


def amounts_equal(left: object, right: object, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    return abs(coerce_decimal(left) - coerce_decimal(right)) <= tolerance


def codes_equal(left: object, right: object) -> bool:
    return (normalize_code(left) or "") == (normalize_code(right) or "")


def format_amount(value: Decimal, places: int = 8) -> str:
    return f"{coerce_decimal(value):.{places}f}"


def format_plain(value: Decimal | None) -> str:
    if value is None:
        return "None"
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def _parse_decimal_text(value: str, fallback: Decimal) -> Decimal:
    cleaned = re.sub(r"\s+", "", value)
    if not cleaned:
        return fallback
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return fallback
    return amount if amount.is_finite() else fallback
