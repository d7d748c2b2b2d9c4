"""
Marketcore Protocols - The contracts between the engine and its collaborators.

The settlement engine never talks to a payment processor, a notification
transport or a moderation system directly. It talks to these protocols.
Anything that satisfies them can be plugged in: a Stripe adapter, a push
notification queue, a test fake.

Collaborators:
- PaymentProcessor: authorize/capture/refund of card payments
- NotificationDispatcher: fire-and-forget user notifications
- SuspensionChecker: moderation lookups for listings and errands
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, runtime_checkable

# =============================================================================
# ERRORS
# =============================================================================


class MarketcoreError(Exception):
    """Base for all marketcore errors."""

    pass


class InvalidTransitionError(MarketcoreError):
    """Raised when a status precondition is violated.

    Shared by every state machine in the engine (orders, batches, errands).
    """

    def __init__(self, entity: str, entity_id: str, from_status: str, to_status: str):
        self.entity = entity
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for {entity} {entity_id}: {from_status} -> {to_status}"
        )


class UnauthorizedError(MarketcoreError):
    """Actor is not allowed to perform this action."""

    pass


class EntitySuspendedError(MarketcoreError):
    """Raised when a listing or errand has been suspended by moderation."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} is suspended")


# =============================================================================
# PAYMENT PROCESSOR
# =============================================================================


@dataclass
class PaymentResult:
    """Outcome of a capture or refund call."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "PaymentResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "PaymentResult":
        return cls(ok=False, error=error)


@runtime_checkable
class PaymentProcessor(Protocol):
    """Card payment operations. The engine trusts their result."""

    def authorize(self, amount: Decimal, customer: str) -> str:
        """Place a hold on the customer's payment method. Returns a payment reference."""
        ...

    def capture(self, payment_ref: str) -> PaymentResult:
        """Capture a previously authorized payment."""
        ...

    def refund(self, payment_ref: str) -> PaymentResult:
        """Refund (or void) a previously authorized payment."""
        ...


# =============================================================================
# NOTIFICATIONS
# =============================================================================


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Delivers a notification to a user. Delivery is not our concern."""

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class NullNotificationDispatcher:
    """Dispatcher that drops everything. Used when no transport is configured."""

    def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        return None


# =============================================================================
# MODERATION
# =============================================================================


@runtime_checkable
class SuspensionChecker(Protocol):
    """Answers whether a moderated entity is currently suspended."""

    def is_suspended(self, entity_type: str, entity_id: str) -> bool:
        ...


class NeverSuspended:
    """Suspension checker for deployments without moderation."""

    def is_suspended(self, entity_type: str, entity_id: str) -> bool:
        return False
