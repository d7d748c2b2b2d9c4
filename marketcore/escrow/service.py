"""
Escrow ledger.

Holds buyer payments against a batch outcome and settles them in bulk:
``release`` captures every HELD order of a batch for the vendor,
``refund`` returns every HELD order to its buyer.

Settlement is per order. A failed capture leaves that order HELD, records
the error, and moves on; the batch is never rolled back as a whole. Calling
``release``/``refund`` again only touches orders that are still HELD, so
batch-status triggers may fire any number of times.
"""

import logging
import threading
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import List, Optional

from marketcore.config import SettlementConfig
from marketcore.escrow.models import (
    EscrowFailure,
    EscrowStatus,
    Order,
    SettlementAction,
    SettlementResult,
)
from marketcore.escrow.storage import OrderStorage
from marketcore.protocols import InvalidTransitionError, MarketcoreError, PaymentProcessor
from marketcore.retry import RetryConfig, SideEffectKind, SideEffectQueue, call_with_retry
from marketcore.types import ZERO, to_money, utc_now

logger = logging.getLogger(__name__)


class EscrowError(MarketcoreError):
    """Base exception for escrow ledger operations."""

    pass


class OrderNotFoundError(EscrowError):
    """Order does not exist."""

    pass


class AuthorizationRequiredError(EscrowError):
    """An order cannot be held without a payment authorization reference."""

    pass


# Sentinel: the order left HELD under us (another pass settled it)
_ALREADY_SETTLED = "__already_settled__"

_SIDE_EFFECT_FOR = {
    SettlementAction.RELEASE: SideEffectKind.ESCROW_RELEASE,
    SettlementAction.REFUND: SideEffectKind.ESCROW_REFUND,
}


class EscrowLedger:
    """Per-order hold/release/refund record for regional batches."""

    def __init__(
        self,
        storage: OrderStorage,
        payments: PaymentProcessor,
        config: Optional[SettlementConfig] = None,
        side_effects: Optional[SideEffectQueue] = None,
    ):
        self.storage = storage
        self.payments = payments
        self.config = config or SettlementConfig()
        self.retry = RetryConfig.from_settings(self.config)
        self.side_effects = side_effects if side_effects is not None else SideEffectQueue()
        # One settlement pass per batch at a time, so a capture is never sent twice
        self._batch_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _batch_lock(self, batch_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._batch_locks[batch_id]

    # === Orders ===

    def create_order(
        self,
        batch_id: str,
        buyer_id: str,
        amount,
        quantity: int = 1,
        order_id: Optional[str] = None,
    ) -> Order:
        """Record a PENDING order. Batch joins use BatchService.join_batch instead."""
        now = utc_now()
        order = Order(
            id=order_id or str(uuid.uuid4()),
            batch_id=batch_id,
            buyer_id=buyer_id,
            amount=amount,
            quantity=quantity,
            created_at=now,
            updated_at=now,
        )
        self.storage.save_order(order)
        return order

    def get_order(self, order_id: str) -> Order:
        order = self.storage.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    def orders_for(self, batch_id: str) -> List[Order]:
        return self.storage.list_orders(batch_id=batch_id)

    def held_orders(self, batch_id: str) -> List[Order]:
        return self.storage.list_orders(batch_id=batch_id, status=EscrowStatus.HELD)

    # === Hold ===

    def hold(self, order_id: str, amount, payment_ref: Optional[str]) -> Order:
        """Move an order into escrow (PENDING -> HELD).

        The payment must already be authorized; ``payment_ref`` is the
        processor's reference for that authorization.

        Raises:
            AuthorizationRequiredError: No payment reference supplied
            OrderNotFoundError: Unknown order
            InvalidTransitionError: Order already settled, or held under
                another payment reference
        """
        if not payment_ref or not str(payment_ref).strip():
            raise AuthorizationRequiredError(
                f"Order {order_id} requires a payment authorization before it can be held"
            )
        amount = to_money(amount)
        if amount <= 0:
            raise EscrowError("Escrow amount must be positive")

        order = self.get_order(order_id)
        if order.status == EscrowStatus.HELD and order.payment_ref == payment_ref:
            return order
        if order.status != EscrowStatus.PENDING:
            raise InvalidTransitionError("order", order_id, order.escrow_status, EscrowStatus.HELD.value)

        updated = self.storage.transition_order(
            order_id,
            EscrowStatus.PENDING,
            EscrowStatus.HELD,
            {"amount": amount, "payment_ref": payment_ref, "held_at": utc_now()},
        )
        if updated is None:
            current = self.get_order(order_id)
            if current.status == EscrowStatus.HELD and current.payment_ref == payment_ref:
                return current
            raise InvalidTransitionError("order", order_id, current.escrow_status, EscrowStatus.HELD.value)

        logger.info(f"Order {order_id} held in escrow ({amount})")
        return updated

    # === Settlement ===

    def release(self, batch_id: str) -> SettlementResult:
        """Capture every HELD order of a batch for the vendor."""
        return self._settle_batch(batch_id, SettlementAction.RELEASE)

    def refund(self, batch_id: str) -> SettlementResult:
        """Refund every HELD order of a batch to its buyer."""
        return self._settle_batch(batch_id, SettlementAction.REFUND)

    def release_order(self, order_id: str) -> bool:
        """Capture a single HELD order. Returns True if it is RELEASED afterwards."""
        return self._settle_single(order_id, SettlementAction.RELEASE)

    def refund_order(self, order_id: str) -> bool:
        """Refund a single HELD order. Returns True if it is REFUNDED afterwards."""
        return self._settle_single(order_id, SettlementAction.REFUND)

    def _settle_single(self, order_id: str, action: SettlementAction) -> bool:
        order = self.get_order(order_id)
        target = EscrowStatus.RELEASED if action == SettlementAction.RELEASE else EscrowStatus.REFUNDED
        if order.status == target:
            return True
        if order.status != EscrowStatus.HELD:
            raise InvalidTransitionError("order", order_id, order.escrow_status, target.value)
        with self._batch_lock(order.batch_id):
            self._settle_order(order_id, action)
        return self.get_order(order_id).status == target

    def _settle_batch(self, batch_id: str, action: SettlementAction) -> SettlementResult:
        result = SettlementResult(batch_id=batch_id, action=action.value)
        target = EscrowStatus.RELEASED if action == SettlementAction.RELEASE else EscrowStatus.REFUNDED

        with self._batch_lock(batch_id):
            for order in self.storage.list_orders(batch_id=batch_id):
                if order.escrow_status == target.value:
                    result.skipped.append(order.id)
                    continue
                if order.escrow_status != EscrowStatus.HELD.value:
                    continue
                error = self._settle_order(order.id, action)
                if error is None:
                    result.succeeded.append(order.id)
                elif error == _ALREADY_SETTLED:
                    result.skipped.append(order.id)
                else:
                    result.failed.append(EscrowFailure(order_id=order.id, error=error))

        kind = _SIDE_EFFECT_FOR[action]
        if result.failed:
            self.side_effects.record(
                kind,
                batch_id,
                f"{len(result.failed)} order(s) failed to {action.value}",
                order_ids=result.failed_order_ids,
            )
            logger.warning(
                f"Escrow {action.value} for batch {batch_id}: "
                f"{len(result.succeeded)} settled, {len(result.failed)} failed"
            )
        else:
            self.side_effects.resolve(kind, batch_id)
            if result.succeeded:
                logger.info(f"Escrow {action.value} for batch {batch_id}: {len(result.succeeded)} settled")
        return result

    def _settle_order(self, order_id: str, action: SettlementAction) -> Optional[str]:
        """Settle one HELD order. Returns None on success, otherwise an error string."""
        order = self.storage.get_order(order_id)
        if order is None or order.escrow_status != EscrowStatus.HELD.value:
            return _ALREADY_SETTLED
        if not order.payment_ref:
            error = "missing payment reference"
            self.storage.record_order_error(order_id, error)
            return error

        if action == SettlementAction.RELEASE:
            call = self.payments.capture
            target = EscrowStatus.RELEASED
            stamp = "captured_at"
        else:
            call = self.payments.refund
            target = EscrowStatus.REFUNDED
            stamp = "refunded_at"

        outcome = call_with_retry(
            lambda: call(order.payment_ref),
            self.retry,
            operation=f"{action.value} order {order_id}",
            is_success=lambda r: bool(getattr(r, "ok", False)),
            describe_failure=lambda r: getattr(r, "error", None) or "payment processor declined",
        )
        if not outcome.ok:
            self.storage.record_order_error(order_id, outcome.error)
            return outcome.error or "unknown error"

        updated = self.storage.transition_order(
            order_id,
            EscrowStatus.HELD,
            target,
            {stamp: utc_now(), "last_error": None},
        )
        if updated is None:
            return _ALREADY_SETTLED
        return None

    # === Queries ===

    def status_of(self, order_id: str) -> EscrowStatus:
        """Get the escrow status of an order."""
        return self.get_order(order_id).status

    def total_held(self, batch_id: str) -> Decimal:
        """Sum of amounts currently HELD for a batch."""
        total = ZERO
        for order in self.held_orders(batch_id):
            total += order.amount
        return total

