"""
Errand data models.

An errand is a one-to-one task contract between a requester and a helper:

    OPEN -> ASSIGNED -> AWAITING_CONFIRMATION -> COMPLETED
    (any non-terminal) -> CANCELLED

Completion needs both parties to confirm. The helper's payout is issued
as credit exactly once, guarded by ``payment_released``.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from marketcore.types import format_datetime, money_str, parse_datetime, to_money, utc_now


class ErrandStatus(str, Enum):
    """Lifecycle status of an errand."""

    OPEN = "open"  # Accepting applications
    ASSIGNED = "assigned"  # Helper chosen, work in progress
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # One party has confirmed completion
    COMPLETED = "completed"  # Both parties confirmed
    CANCELLED = "cancelled"  # Cancelled by the requester


class ApplicationStatus(str, Enum):
    """Status of a helper's application to an errand."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


VALID_ERRAND_TRANSITIONS: Dict[ErrandStatus, set] = {
    ErrandStatus.OPEN: {ErrandStatus.ASSIGNED, ErrandStatus.CANCELLED},
    ErrandStatus.ASSIGNED: {
        ErrandStatus.AWAITING_CONFIRMATION,
        ErrandStatus.COMPLETED,
        ErrandStatus.CANCELLED,
    },
    ErrandStatus.AWAITING_CONFIRMATION: {ErrandStatus.COMPLETED, ErrandStatus.CANCELLED},
    ErrandStatus.COMPLETED: set(),
    ErrandStatus.CANCELLED: set(),
}

# Statuses in which an errand counts against the helper's active limit
ACTIVE_ERRAND_STATUSES = frozenset({ErrandStatus.ASSIGNED, ErrandStatus.AWAITING_CONFIRMATION})

# Statuses in which assigned_helper_id must be set
ASSIGNED_ERRAND_STATUSES = frozenset(
    {ErrandStatus.ASSIGNED, ErrandStatus.AWAITING_CONFIRMATION, ErrandStatus.COMPLETED}
)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000


@dataclass
class Errand:
    """A one-to-one task posted by a requester."""

    id: str
    requester_id: str
    title: str
    description: str
    budget: Decimal
    status: str = ErrandStatus.OPEN.value
    assigned_helper_id: Optional[str] = None
    requester_confirmed: bool = False
    helper_confirmed: bool = False
    payment_released: bool = False
    deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payment_released_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.title or len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title must be 1-{MAX_TITLE_LENGTH} characters")
        if len(self.description or "") > MAX_DESCRIPTION_LENGTH:
            raise ValueError(f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters")
        self.budget = to_money(self.budget)
        if self.budget <= 0:
            raise ValueError("Budget must be positive")
        if isinstance(self.status, ErrandStatus):
            self.status = self.status.value
        valid = {s.value for s in ErrandStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {sorted(valid)}")
        self.deadline = parse_datetime(self.deadline)

    @property
    def errand_status(self) -> ErrandStatus:
        return ErrandStatus(self.status)

    @property
    def is_open(self) -> bool:
        """Check if the errand is accepting applications."""
        return self.status == ErrandStatus.OPEN.value and self.assigned_helper_id is None

    @property
    def is_active(self) -> bool:
        """Check if the errand counts against its helper's active limit."""
        return self.errand_status in ACTIVE_ERRAND_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in (ErrandStatus.COMPLETED.value, ErrandStatus.CANCELLED.value)

    def can_transition_to(self, new_status: ErrandStatus) -> bool:
        return ErrandStatus(new_status) in VALID_ERRAND_TRANSITIONS[self.errand_status]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requester_id": self.requester_id,
            "title": self.title,
            "description": self.description,
            "budget": money_str(self.budget),
            "status": self.status,
            "assigned_helper_id": self.assigned_helper_id,
            "requester_confirmed": self.requester_confirmed,
            "helper_confirmed": self.helper_confirmed,
            "payment_released": self.payment_released,
            "deadline": format_datetime(self.deadline),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "assigned_at": format_datetime(self.assigned_at),
            "completed_at": format_datetime(self.completed_at),
            "payment_released_at": format_datetime(self.payment_released_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Errand":
        return cls(
            id=data["id"],
            requester_id=data["requester_id"],
            title=data["title"],
            description=data.get("description") or "",
            budget=data["budget"],
            status=data.get("status") or ErrandStatus.OPEN.value,
            assigned_helper_id=data.get("assigned_helper_id"),
            requester_confirmed=bool(data.get("requester_confirmed")),
            helper_confirmed=bool(data.get("helper_confirmed")),
            payment_released=bool(data.get("payment_released")),
            deadline=parse_datetime(data.get("deadline")),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            assigned_at=parse_datetime(data.get("assigned_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            payment_released_at=parse_datetime(data.get("payment_released_at")),
        )


@dataclass
class ErrandApplication:
    """A helper's application to an errand."""

    id: str
    errand_id: str
    helper_id: str
    offer_amount: Optional[Decimal] = None
    message: Optional[str] = None
    status: str = ApplicationStatus.PENDING.value
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.offer_amount is not None:
            self.offer_amount = to_money(self.offer_amount)
            if self.offer_amount <= 0:
                raise ValueError("Offer amount must be positive")
        if isinstance(self.status, ApplicationStatus):
            self.status = self.status.value
        valid = {s.value for s in ApplicationStatus}
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {sorted(valid)}")

    @property
    def is_pending(self) -> bool:
        return self.status == ApplicationStatus.PENDING.value

    @property
    def is_accepted(self) -> bool:
        return self.status == ApplicationStatus.ACCEPTED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "errand_id": self.errand_id,
            "helper_id": self.helper_id,
            "offer_amount": money_str(self.offer_amount),
            "message": self.message,
            "status": self.status,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrandApplication":
        offer = data.get("offer_amount")
        return cls(
            id=data["id"],
            errand_id=data["errand_id"],
            helper_id=data["helper_id"],
            offer_amount=offer if offer not in (None, "") else None,
            message=data.get("message"),
            status=data.get("status") or ApplicationStatus.PENDING.value,
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class ErrandRating:
    """A requester's rating of the helper on a completed errand."""

    errand_id: str
    rater_id: str
    rated_id: str
    rating: int
    comment: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        if not isinstance(self.rating, int) or not 1 <= self.rating <= 5:
            raise ValueError("Rating must be an integer between 1 and 5")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "errand_id": self.errand_id,
            "rater_id": self.rater_id,
            "rated_id": self.rated_id,
            "rating": self.rating,
            "comment": self.comment,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrandRating":
        return cls(
            id=data["id"],
            errand_id=data["errand_id"],
            rater_id=data["rater_id"],
            rated_id=data["rated_id"],
            rating=int(data["rating"]),
            comment=data.get("comment"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
            updated_at=parse_datetime(data.get("updated_at")) or utc_now(),
        )


@dataclass
class ErrandStateTransition:
    """Audit log entry for an errand status change."""

    errand_id: str
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "errand_id": self.errand_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrandStateTransition":
        return cls(
            id=data["id"],
            errand_id=data["errand_id"],
            from_status=data.get("from_status"),
            to_status=data["to_status"],
            actor_id=data.get("actor_id"),
            created_at=parse_datetime(data.get("created_at")) or utc_now(),
        )
