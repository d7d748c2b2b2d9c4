"""
Regional batch service.

Drives the batch lifecycle and the escrow actions hanging off it:

    DRAFT --activate--> ACTIVE --evaluate--> SUCCESSFUL  (escrow released)
                               --evaluate--> FAILED      (escrow refunded)
    DRAFT | ACTIVE --cancel--> CANCELLED                 (escrow refunded)

Every status change is a compare-and-set. Only the caller that actually
observed the change fires settlement and notifications, so ``evaluate``
can be called from a user action, a scheduled sweep and a realtime
trigger at the same time without double-settling.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from marketcore.batches.models import (
    BatchStateTransition,
    BatchStatus,
    BatchTransitionResult,
    RegionalBatch,
)
from marketcore.batches.storage import BatchStorage
from marketcore.config import SettlementConfig
from marketcore.escrow.models import EscrowStatus, Order, SettlementResult
from marketcore.escrow.service import AuthorizationRequiredError, EscrowLedger
from marketcore.notifications import NotificationType, Notifier
from marketcore.protocols import (
    EntitySuspendedError,
    InvalidTransitionError,
    MarketcoreError,
    NeverSuspended,
    SuspensionChecker,
    UnauthorizedError,
)
from marketcore.retry import SideEffectKind, call_with_retry
from marketcore.types import to_money, utc_now

logger = logging.getLogger(__name__)


class BatchError(MarketcoreError):
    """Base exception for batch operations."""

    pass


class BatchNotFoundError(BatchError):
    """Batch does not exist."""

    pass


class BatchNotAcceptingOrdersError(BatchError):
    """Batch is not ACTIVE, or its deadline has passed."""

    pass


_OUTCOME_MESSAGES = {
    BatchStatus.SUCCESSFUL: (
        NotificationType.BATCH_SUCCESSFUL,
        "Group Buy Successful!",
        "The group buy in {region} reached its goal. Your payment has been captured.",
    ),
    BatchStatus.FAILED: (
        NotificationType.BATCH_FAILED,
        "Group Buy Did Not Reach Its Goal",
        "The group buy in {region} closed short of its minimum. Your payment is being refunded.",
    ),
    BatchStatus.CANCELLED: (
        NotificationType.BATCH_CANCELLED,
        "Group Buy Cancelled",
        "The group buy in {region} was cancelled by the vendor. Your payment is being refunded.",
    ),
}


class BatchService:
    """Service for regional batch lifecycle operations."""

    def __init__(
        self,
        storage: BatchStorage,
        escrow: EscrowLedger,
        notifier: Optional[Notifier] = None,
        suspensions: Optional[SuspensionChecker] = None,
        config: Optional[SettlementConfig] = None,
    ):
        """Initialize batch service.

        Args:
            storage: Batch storage backend (also stores orders atomically)
            escrow: Escrow ledger used to hold and settle orders
            notifier: Notification wrapper for outcome messages
            suspensions: Moderation lookup consulted before accepting orders
            config: Engine configuration
        """
        self.storage = storage
        self.escrow = escrow
        self.notifier = notifier or Notifier()
        self.suspensions = suspensions or NeverSuspended()
        self.config = config or escrow.config

    # === Creation & lookup ===

    def create_batch(
        self,
        vendor_id: str,
        listing_id: str,
        region: str,
        unit_price,
        minimum_quantity: int,
        deadline: datetime,
        delivery_method: Optional[str] = None,
    ) -> RegionalBatch:
        """Create a DRAFT batch for one of the vendor's listings."""
        now = utc_now()
        if deadline <= now:
            raise BatchError("Deadline must be in the future")

        try:
            batch = RegionalBatch(
                id=str(uuid.uuid4()),
                vendor_id=vendor_id,
                listing_id=listing_id,
                region=region,
                unit_price=unit_price,
                minimum_quantity=minimum_quantity,
                deadline=deadline,
                delivery_method=delivery_method,
                created_at=now,
                updated_at=now,
            )
        except ValueError as e:
            raise BatchError(str(e)) from e

        self.storage.save_batch(batch)
        self._record_transition(batch.id, None, BatchStatus.DRAFT, vendor_id)
        logger.info(f"Created batch {batch.id} for listing {listing_id} in {region}")
        return batch

    def get_batch(self, batch_id: str) -> RegionalBatch:
        batch = self.storage.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return batch

    def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        vendor_id: Optional[str] = None,
        listing_id: Optional[str] = None,
    ) -> List[RegionalBatch]:
        return self.storage.list_batches(status=status, vendor_id=vendor_id, listing_id=listing_id)

    def due_batches(self, now: Optional[datetime] = None) -> List[RegionalBatch]:
        """ACTIVE batches that evaluate() would move to a terminal state."""
        now = now or utc_now()
        return [
            b
            for b in self.storage.list_batches(status=BatchStatus.ACTIVE)
            if b.has_reached_minimum or b.is_past_deadline(now)
        ]

    def progress(self, batch_id: str) -> float:
        return self.get_batch(batch_id).progress

    def transitions(self, batch_id: str) -> List[BatchStateTransition]:
        return self.storage.get_batch_transitions(batch_id)

    # === Lifecycle ===

    def activate(self, batch_id: str, actor_id: Optional[str] = None) -> RegionalBatch:
        """Open a DRAFT batch for orders.

        Raises:
            InvalidTransitionError: Batch is not DRAFT
            UnauthorizedError: Actor is not the batch's vendor
        """
        batch = self.get_batch(batch_id)
        if actor_id is not None and actor_id != batch.vendor_id:
            raise UnauthorizedError("Only the vendor can activate this batch")
        if batch.batch_status != BatchStatus.DRAFT:
            raise InvalidTransitionError("batch", batch_id, batch.status, BatchStatus.ACTIVE.value)

        updated = self.storage.transition_batch(batch_id, BatchStatus.DRAFT, BatchStatus.ACTIVE)
        if updated is None:
            current = self.get_batch(batch_id)
            raise InvalidTransitionError("batch", batch_id, current.status, BatchStatus.ACTIVE.value)

        self._record_transition(batch_id, BatchStatus.DRAFT, BatchStatus.ACTIVE, actor_id)
        logger.info(f"Batch {batch_id} activated")
        return updated

    def join_batch(
        self,
        batch_id: str,
        buyer_id: str,
        quantity: int = 1,
        customer: Optional[str] = None,
    ) -> Order:
        """Place a buyer's order in an ACTIVE batch and hold its payment.

        The payment is authorized first; the order insert and the quantity
        bump then land together, only while the batch is still ACTIVE.

        Raises:
            BatchNotAcceptingOrdersError: Batch not ACTIVE or past deadline
            EntitySuspendedError: Listing is suspended
            AuthorizationRequiredError: Processor returned no reference
        """
        if quantity < 1:
            raise BatchError("Quantity must be at least 1")

        batch = self.get_batch(batch_id)
        if self.suspensions.is_suspended("listing", batch.listing_id):
            raise EntitySuspendedError("listing", batch.listing_id)
        if batch.batch_status != BatchStatus.ACTIVE or batch.is_past_deadline():
            raise BatchNotAcceptingOrdersError(f"Batch {batch_id} is not accepting orders")

        amount = to_money(batch.unit_price * quantity)
        payment_ref = self.escrow.payments.authorize(amount, customer or buyer_id)
        if not payment_ref:
            raise AuthorizationRequiredError(f"Payment authorization failed for batch {batch_id}")

        now = utc_now()
        order = Order(
            id=str(uuid.uuid4()),
            batch_id=batch_id,
            buyer_id=buyer_id,
            amount=amount,
            quantity=quantity,
            created_at=now,
            updated_at=now,
        )
        if self.storage.add_order(order) is None:
            self._void_authorization(payment_ref, batch_id)
            raise BatchNotAcceptingOrdersError(f"Batch {batch_id} closed before the order was placed")

        held = self.escrow.hold(order.id, amount, payment_ref)
        logger.info(f"Buyer {buyer_id} joined batch {batch_id} (qty {quantity})")
        return held

    def evaluate(self, batch_id: str, now: Optional[datetime] = None) -> BatchTransitionResult:
        """Decide an ACTIVE batch by quantity and deadline.

        Reaching the minimum makes it SUCCESSFUL and releases escrow; a
        passed deadline short of the minimum makes it FAILED and refunds.
        Otherwise nothing happens. Safe to call any number of times.
        """
        batch = self.get_batch(batch_id)
        if batch.batch_status != BatchStatus.ACTIVE:
            return BatchTransitionResult(batch=batch)

        if batch.has_reached_minimum:
            target = BatchStatus.SUCCESSFUL
        elif batch.is_past_deadline(now):
            target = BatchStatus.FAILED
        else:
            return BatchTransitionResult(batch=batch)

        return self._close(batch_id, BatchStatus.ACTIVE, target, actor_id=None)

    def cancel(self, batch_id: str, actor_id: Optional[str] = None) -> BatchTransitionResult:
        """Cancel a DRAFT or ACTIVE batch and refund its orders.

        Cancelling an already-CANCELLED batch is a no-op.

        Raises:
            InvalidTransitionError: Batch already SUCCESSFUL or FAILED
            UnauthorizedError: Actor is not the batch's vendor
        """
        batch = self.get_batch(batch_id)
        if actor_id is not None and actor_id != batch.vendor_id:
            raise UnauthorizedError("Only the vendor can cancel this batch")

        while True:
            if batch.batch_status == BatchStatus.CANCELLED:
                return BatchTransitionResult(batch=batch)
            if batch.is_terminal:
                raise InvalidTransitionError("batch", batch_id, batch.status, BatchStatus.CANCELLED.value)

            result = self._close(batch_id, batch.batch_status, BatchStatus.CANCELLED, actor_id)
            if result.transitioned:
                return result
            # Lost a race (e.g. activated or evaluated meanwhile); look again
            batch = self.get_batch(batch_id)

    def settle(self, batch_id: str) -> Optional[SettlementResult]:
        """Re-run the escrow action implied by a terminal batch's status.

        Used by the reconciliation sweep for orders left HELD after a failed
        capture or refund. Returns None for non-terminal batches.
        """
        batch = self.get_batch(batch_id)
        if not batch.is_terminal:
            return None
        return self._run_settlement(batch)

    def recount_quantity(self, batch_id: str) -> bool:
        """Reset a terminal batch's quantity to the sum of its unrefunded orders.

        A refund whose quantity give-back was lost leaves the stored count
        too high. ACTIVE batches are skipped because a join may have bumped
        the count before its order row landed. Returns True if corrected.
        """
        batch = self.get_batch(batch_id)
        if not batch.is_terminal:
            return False
        counted = sum(
            o.quantity
            for o in self.escrow.orders_for(batch_id)
            if o.escrow_status != EscrowStatus.REFUNDED.value
        )
        if batch.current_quantity == counted:
            return False
        if not self.storage.reset_quantity(batch_id, batch.current_quantity, counted):
            return False
        logger.warning(
            f"Recounted batch {batch_id} quantity: {batch.current_quantity} -> {counted}"
        )
        return True

    # === Internals ===

    def _close(
        self,
        batch_id: str,
        expected: BatchStatus,
        target: BatchStatus,
        actor_id: Optional[str],
    ) -> BatchTransitionResult:
        updated = self.storage.transition_batch(
            batch_id, expected, target, {"closed_at": utc_now()}
        )
        if updated is None:
            # Someone else observed the transition; they own the side effects
            return BatchTransitionResult(batch=self.get_batch(batch_id))

        self._record_transition(batch_id, expected, target, actor_id)
        logger.info(f"Batch {batch_id}: {expected.value} -> {target.value}")

        settlement = self._run_settlement(updated)
        notified = self._notify_outcome(updated)
        return BatchTransitionResult(
            batch=self.get_batch(batch_id),
            transitioned=True,
            settlement=settlement,
            notified=notified,
        )

    def _run_settlement(self, batch: RegionalBatch) -> Optional[SettlementResult]:
        if batch.batch_status == BatchStatus.SUCCESSFUL:
            action, kind = self.escrow.release, SideEffectKind.ESCROW_RELEASE
        else:
            action, kind = self.escrow.refund, SideEffectKind.ESCROW_REFUND
        try:
            return action(batch.id)
        except Exception as e:
            # The transition already committed; the sweep will settle later
            self.escrow.side_effects.record(kind, batch.id, f"{type(e).__name__}: {e}")
            return None

    def _notify_outcome(self, batch: RegionalBatch) -> int:
        type_, title, template = _OUTCOME_MESSAGES[batch.batch_status]
        message = template.format(region=batch.region)
        data = {"type": type_.value, "batch_id": batch.id, "listing_id": batch.listing_id}

        buyers = [o.buyer_id for o in self.escrow.orders_for(batch.id)]
        sent = self.notifier.send_many(buyers, type_, title, message, data)
        vendor_message = f"Your group buy in {batch.region} is now {batch.status}."
        if self.notifier.send(batch.vendor_id, type_, title, vendor_message, data):
            sent += 1
        return sent

    def _void_authorization(self, payment_ref: str, batch_id: str) -> None:
        outcome = call_with_retry(
            lambda: self.escrow.payments.refund(payment_ref),
            self.escrow.retry,
            operation=f"void authorization for batch {batch_id}",
            is_success=lambda r: bool(getattr(r, "ok", False)),
        )
        if not outcome.ok:
            logger.error(f"Could not void authorization {payment_ref}: {outcome.error}")

    def _record_transition(
        self,
        batch_id: str,
        from_status: Optional[BatchStatus],
        to_status: BatchStatus,
        actor_id: Optional[str],
    ) -> None:
        self.storage.save_batch_transition(
            BatchStateTransition(
                batch_id=batch_id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                actor_id=actor_id,
            )
        )

