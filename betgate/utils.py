from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Any

MONEY_QUANT = Decimal("0.01")
SYNC_TOLERANCE = Decimal("0.01")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidOperation(f"Not a number: {value!r}")
    return Decimal(str(value))


def q_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_DOWN)


def fmt_money(value: Any, currency: str = "$") -> str:
    amount = q_money(value)
    return f"{currency}{amount}"


def is_synced(local: Decimal, external: Decimal) -> bool:
    return abs(to_decimal(local) - to_decimal(external)) < SYNC_TOLERANCE


def parse_amount(value: Any) -> Decimal | None:
    """Non-negative decimal from an upstream field, None when unusable."""
    if value is None:
        return None
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def page_count(total: int, limit: int) -> int:
    return (total + limit - 1) // limit if limit else 0
