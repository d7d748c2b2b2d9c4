"""
Credit ledger data models.

Credits are append-mostly entries. An entry is created by issuance and
only ever changes once, when it is consumed (``used_at``/``order_id``
set). Balances are computed from the entries, never stored.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from marketcore.types import format_datetime, money_str, parse_datetime, to_money, utc_now


class CreditSource(str, Enum):
    """Why a credit entry was issued."""

    REFERRAL_REFERRER = "referral_referrer"  # Referrer reward, referral_id = referral
    REFERRAL_REFEREE = "referral_referee"  # Welcome credit for the referred user
    ERRAND_COMPLETION = "errand_completion"  # Helper payout, referral_id = errand
    BONUS = "bonus"
    PARTIAL_REFUND = "partial_refund"  # Returned after an interrupted application, refund_order_id = order


def keyed_entry_id(source, key: str, user_id: str) -> str:
    """Stable id for a credit that is issued at most once per ``key`` and user."""
    name = f"marketcore:credit:{CreditSource(source).value}:{key}:{user_id}"
    return str(uuid.uuid5(uuid.NAMESPACE_URL, name))


@dataclass
class CreditEntry:
    """One issuance of credit to a user."""

    user_id: str
    amount: Decimal
    source: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    expires_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    order_id: Optional[str] = None
    referral_id: Optional[str] = None
    parent_id: Optional[str] = None
    refund_order_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Credit amount must be positive")
        if isinstance(self.source, CreditSource):
            self.source = self.source.value
        valid = {s.value for s in CreditSource}
        if self.source not in valid:
            raise ValueError(f"Invalid source: {self.source}. Must be one of {sorted(valid)}")
        self.expires_at = parse_datetime(self.expires_at)
        self.used_at = parse_datetime(self.used_at)

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at <= (now or utc_now())

    def is_available(self, now: Optional[datetime] = None) -> bool:
        """Unused and unexpired: counts toward the balance."""
        return not self.is_used and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": money_str(self.amount),
            "source": self.source,
            "expires_at": format_datetime(self.expires_at),
            "used_at": format_datetime(self.used_at),
            "order_id": self.order_id,
            "referral_id": self.referral_id,
            "parent_id": self.parent_id,
            "refund_order_id": self.refund_order_id,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreditEntry":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            amount=data["amount"],
            source=data["source"],
            expires_at=parse_datetime(data.get("expires_at")),
            used_at=parse_datetime(data.get("used_at")),
            order_id=data.get("order_id"),
            referral_id=data.get("referral_id"),
            parent_id=data.get("parent_id"),
            refund_order_id=data.get("refund_order_id"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
        )
