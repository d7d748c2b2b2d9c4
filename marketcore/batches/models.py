"""
Regional batch data models.

A regional batch pools buyer orders for one listing in one region. It
succeeds when enough units are ordered, fails when the deadline passes
short of the minimum, or is cancelled by the vendor.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from marketcore.escrow.models import SettlementResult
from marketcore.types import format_datetime, money_str, parse_datetime, to_money, utc_now


class BatchStatus(str, Enum):
    """Lifecycle status of a regional batch."""

    DRAFT = "draft"  # Being set up by the vendor, not visible to buyers
    ACTIVE = "active"  # Collecting orders
    SUCCESSFUL = "successful"  # Reached minimum quantity; escrow released
    FAILED = "failed"  # Deadline passed short of minimum; escrow refunded
    CANCELLED = "cancelled"  # Cancelled by the vendor; escrow refunded


VALID_BATCH_TRANSITIONS: Dict[BatchStatus, set] = {
    BatchStatus.DRAFT: {BatchStatus.ACTIVE, BatchStatus.CANCELLED},
    BatchStatus.ACTIVE: {BatchStatus.SUCCESSFUL, BatchStatus.FAILED, BatchStatus.CANCELLED},
    BatchStatus.SUCCESSFUL: set(),
    BatchStatus.FAILED: set(),
    BatchStatus.CANCELLED: set(),
}

TERMINAL_BATCH_STATUSES = frozenset(
    {BatchStatus.SUCCESSFUL, BatchStatus.FAILED, BatchStatus.CANCELLED}
)

MAX_REGION_LENGTH = 100


@dataclass
class RegionalBatch:
    """A pooled purchase of one listing in one region."""

    id: str
    vendor_id: str
    listing_id: str
    region: str
    unit_price: Decimal
    minimum_quantity: int
    deadline: datetime
    current_quantity: int = 0
    status: str = BatchStatus.DRAFT.value
    delivery_method: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        self.unit_price = to_money(self.unit_price)
        if self.unit_price <= 0:
            raise ValueError("Unit price must be positive")
        if self.minimum_quantity < 1:
            raise ValueError("Minimum quantity must be at least 1")
        if self.current_quantity < 0:
            raise ValueError("Current quantity cannot be negative")
        if not self.region or len(self.region) > MAX_REGION_LENGTH:
            raise ValueError(f"Region must be 1-{MAX_REGION_LENGTH} characters")
        self.deadline = parse_datetime(self.deadline)
        if isinstance(self.status, BatchStatus):
            self.status = self.status.value
        valid = {s.value for s in BatchStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {sorted(valid)}")

    @property
    def batch_status(self) -> BatchStatus:
        return BatchStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.batch_status in TERMINAL_BATCH_STATUSES

    @property
    def has_reached_minimum(self) -> bool:
        return self.current_quantity >= self.minimum_quantity

    @property
    def progress(self) -> float:
        """Percentage of the minimum quantity reached, capped at 100."""
        return min(self.current_quantity / self.minimum_quantity * 100, 100.0)

    def is_past_deadline(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.deadline

    def can_transition_to(self, new_status: BatchStatus) -> bool:
        return BatchStatus(new_status) in VALID_BATCH_TRANSITIONS[self.batch_status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "listing_id": self.listing_id,
            "region": self.region,
            "unit_price": money_str(self.unit_price),
            "minimum_quantity": self.minimum_quantity,
            "current_quantity": self.current_quantity,
            "deadline": format_datetime(self.deadline),
            "status": self.status,
            "delivery_method": self.delivery_method,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "closed_at": format_datetime(self.closed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegionalBatch":
        return cls(
            id=data["id"],
            vendor_id=data["vendor_id"],
            listing_id=data["listing_id"],
            region=data["region"],
            unit_price=data["unit_price"],
            minimum_quantity=int(data["minimum_quantity"]),
            current_quantity=int(data.get("current_quantity") or 0),
            deadline=parse_datetime(data["deadline"]),
            status=data.get("status") or BatchStatus.DRAFT.value,
            delivery_method=data.get("delivery_method"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            closed_at=parse_datetime(data.get("closed_at")),
        )


@dataclass
class BatchStateTransition:
    """Audit log entry for a batch status change."""

    batch_id: str
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BatchStateTransition":
        return cls(
            id=data["id"],
            batch_id=data["batch_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor_id=data.get("actor_id"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
        )


@dataclass
class BatchTransitionResult:
    """What a lifecycle call did.

    ``transitioned`` is True only for the caller that observed the status
    change; only that caller triggers settlement and notifications.
    """

    batch: RegionalBatch
    transitioned: bool = False
    settlement: Optional[SettlementResult] = None
    notified: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch": self.batch.to_dict(),
            "transitioned": self.transitioned,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "notified": self.notified,
        }
