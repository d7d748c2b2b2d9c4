"""
Vendor wallet data models.

The wallet is a derived view over the escrow ledger: it is always
recomputable from the vendor's orders and withdrawal requests. The stored
copy is a snapshot, useful for fast reads and for spotting drift.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from marketcore.types import ZERO, format_datetime, money_str, parse_datetime, to_money, utc_now


class WithdrawalStatus(str, Enum):
    """Status of a payout request."""

    PENDING = "pending"  # Recorded, waiting for payout processing
    PROCESSING = "processing"  # Picked up by the payout processor
    COMPLETED = "completed"  # Paid out
    FAILED = "failed"  # Payout failed; amount is available again
    REJECTED = "rejected"  # Refused by review; amount is available again


VALID_WITHDRAWAL_TRANSITIONS: Dict[WithdrawalStatus, set] = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.PROCESSING, WithdrawalStatus.REJECTED},
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED},
    WithdrawalStatus.COMPLETED: set(),
    WithdrawalStatus.FAILED: set(),
    WithdrawalStatus.REJECTED: set(),
}

# Withdrawals in these statuses no longer count against the balance
RELEASED_WITHDRAWAL_STATUSES = frozenset({WithdrawalStatus.FAILED, WithdrawalStatus.REJECTED})

_BALANCE_FIELDS = ("available_balance", "pending_balance", "total_earned", "total_withdrawn")


@dataclass
class VendorWallet:
    """Balances of one vendor, derived from escrow."""

    vendor_id: str
    available_balance: Decimal = ZERO
    pending_balance: Decimal = ZERO
    total_earned: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        for name in _BALANCE_FIELDS:
            setattr(self, name, to_money(getattr(self, name)))

    def drift_from(self, other: "VendorWallet") -> Dict[str, Decimal]:
        """Balance fields that differ from ``other``, as self minus other."""
        drift = {}
        for name in _BALANCE_FIELDS:
            delta = getattr(self, name) - getattr(other, name)
            if delta != 0:
                drift[name] = delta
        return drift

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "available_balance": money_str(self.available_balance),
            "pending_balance": money_str(self.pending_balance),
            "total_earned": money_str(self.total_earned),
            "total_withdrawn": money_str(self.total_withdrawn),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VendorWallet":
        return cls(
            vendor_id=data["vendor_id"],
            available_balance=data.get("available_balance") or ZERO,
            pending_balance=data.get("pending_balance") or ZERO,
            total_earned=data.get("total_earned") or ZERO,
            total_withdrawn=data.get("total_withdrawn") or ZERO,
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class WithdrawalRequest:
    """A vendor's request to pay out part of the available balance."""

    vendor_id: str
    method_id: str
    amount: Decimal
    minimum_threshold: Decimal
    fee: Decimal = ZERO
    net_amount: Optional[Decimal] = None
    status: str = WithdrawalStatus.PENDING.value
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    requested_at: datetime = field(default_factory=utc_now)
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.method_id:
            raise ValueError("Payout method is required")
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Withdrawal amount must be positive")
        self.fee = to_money(self.fee)
        if self.fee < 0:
            raise ValueError("Fee cannot be negative")
        self.minimum_threshold = to_money(self.minimum_threshold)
        if self.net_amount is None:
            self.net_amount = self.amount - self.fee
        self.net_amount = to_money(self.net_amount)
        if isinstance(self.status, WithdrawalStatus):
            self.status = self.status.value
        valid = {s.value for s in WithdrawalStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {sorted(valid)}")

    @property
    def counts_against_balance(self) -> bool:
        return WithdrawalStatus(self.status) not in RELEASED_WITHDRAWAL_STATUSES

    def can_transition_to(self, new_status: WithdrawalStatus) -> bool:
        return WithdrawalStatus(new_status) in VALID_WITHDRAWAL_TRANSITIONS[WithdrawalStatus(self.status)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "method_id": self.method_id,
            "amount": money_str(self.amount),
            "fee": money_str(self.fee),
            "net_amount": money_str(self.net_amount),
            "minimum_threshold": money_str(self.minimum_threshold),
            "status": self.status,
            "requested_at": format_datetime(self.requested_at),
            "processed_at": format_datetime(self.processed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WithdrawalRequest":
        return cls(
            id=data["id"],
            vendor_id=data["vendor_id"],
            method_id=data["method_id"],
            amount=data["amount"],
            fee=data.get("fee") or ZERO,
            net_amount=data.get("net_amount"),
            minimum_threshold=data["minimum_threshold"],
            status=data.get("status") or WithdrawalStatus.PENDING.value,
            requested_at=parse_datetime(data.get("requested_at")) or utc_now(),
            processed_at=parse_datetime(data.get("processed_at")),
        )


@dataclass
class WalletReconciliation:
    """Outcome of recomputing a wallet and comparing it with its snapshot."""

    wallet: VendorWallet
    previous: Optional[VendorWallet] = None
    drift: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def has_drift(self) -> bool:
        return bool(self.drift)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet.to_dict(),
            "previous": self.previous.to_dict() if self.previous else None,
            "drift": {k: money_str(v) for k, v in self.drift.items()},
        }
