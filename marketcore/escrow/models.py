"""
Escrow data models.

An Order is a buyer's stake in a regional batch. Its escrow status moves
forward only:

    PENDING -> HELD -> RELEASED
                    -> REFUNDED

RELEASED and REFUNDED are terminal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from marketcore.types import format_datetime, money_str, parse_datetime, to_money


class EscrowStatus(str, Enum):
    """Escrow status of an order."""

    PENDING = "pending"  # Payment initiated, not yet authorized into escrow
    HELD = "held"  # Authorized, funds held against the batch outcome
    RELEASED = "released"  # Captured for the vendor (batch succeeded)
    REFUNDED = "refunded"  # Returned to the buyer (batch failed or cancelled)


VALID_ESCROW_TRANSITIONS: Dict[EscrowStatus, set] = {
    EscrowStatus.PENDING: {EscrowStatus.HELD},
    EscrowStatus.HELD: {EscrowStatus.RELEASED, EscrowStatus.REFUNDED},
    EscrowStatus.RELEASED: set(),
    EscrowStatus.REFUNDED: set(),
}

TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})


class SettlementAction(str, Enum):
    """Batch-wide escrow operation."""

    RELEASE = "release"
    REFUND = "refund"


@dataclass
class Order:
    """A buyer's order against a regional batch."""

    id: str
    batch_id: str
    buyer_id: str
    amount: Decimal
    quantity: int = 1
    escrow_status: str = EscrowStatus.PENDING.value
    payment_ref: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    held_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Order amount must be positive")
        if self.quantity < 1:
            raise ValueError("Order quantity must be at least 1")
        if isinstance(self.escrow_status, EscrowStatus):
            self.escrow_status = self.escrow_status.value
        valid = {s.value for s in EscrowStatus}
        if self.escrow_status not in valid:
            raise ValueError(f"Invalid status: {self.escrow_status}. Must be one of {sorted(valid)}")

    @property
    def status(self) -> EscrowStatus:
        return EscrowStatus(self.escrow_status)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ESCROW_STATUSES

    def can_transition_to(self, new_status: EscrowStatus) -> bool:
        return EscrowStatus(new_status) in VALID_ESCROW_TRANSITIONS[self.status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "buyer_id": self.buyer_id,
            "amount": money_str(self.amount),
            "quantity": self.quantity,
            "escrow_status": self.escrow_status,
            "payment_ref": self.payment_ref,
            "last_error": self.last_error,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "held_at": format_datetime(self.held_at),
            "captured_at": format_datetime(self.captured_at),
            "refunded_at": format_datetime(self.refunded_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            batch_id=data["batch_id"],
            buyer_id=data["buyer_id"],
            amount=data["amount"],
            quantity=int(data.get("quantity") or 1),
            escrow_status=data.get("escrow_status") or EscrowStatus.PENDING.value,
            payment_ref=data.get("payment_ref"),
            last_error=data.get("last_error"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            held_at=parse_datetime(data.get("held_at")),
            captured_at=parse_datetime(data.get("captured_at")),
            refunded_at=parse_datetime(data.get("refunded_at")),
        )


@dataclass
class EscrowFailure:
    """One order that could not be settled."""

    order_id: str
    error: str


@dataclass
class SettlementResult:
    """Outcome of a batch-wide release or refund.

    Partial success is normal: orders that failed stay HELD and are listed
    in ``failed`` for per-order retry. ``skipped`` holds orders that were
    already settled (re-invocation is a no-op for them).
    """

    batch_id: str
    action: str
    succeeded: List[str] = field(default_factory=list)
    failed: List[EscrowFailure] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def is_partial_failure(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def failed_order_ids(self) -> List[str]:
        return [f.order_id for f in self.failed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "action": self.action,
            "success": self.success,
            "succeeded": list(self.succeeded),
            "failed": [{"order_id": f.order_id, "error": f.error} for f in self.failed],
            "skipped": list(self.skipped),
        }
