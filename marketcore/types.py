"""
Shared value helpers for marketcore.

Time is always timezone-aware UTC. Money is always Decimal, quantised to
cents at the boundary so that sums never drift.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO datetime string (or pass through a datetime).

    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage."""
    return value.isoformat() if value else None


def to_money(value: Any) -> Decimal:
    """Convert a number or numeric string to a cent-quantised Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.10"), not the binary
    approximation.
    """
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Invalid money amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def money_str(value: Optional[Decimal]) -> Optional[str]:
    """Serialize money as a string so it survives JSON untouched."""
    return str(value) if value is not None else None
