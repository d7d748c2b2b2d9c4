"""
Order (escrow) storage layer.

Every status change goes through ``transition_order``, a compare-and-set
on the escrow status: the write only lands if the order is still in the
status the caller observed.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from marketcore.escrow.models import EscrowStatus, Order

logger = logging.getLogger(__name__)


class OrderStorage(Protocol):
    """Protocol for order persistence backends."""

    def save_order(self, order: Order) -> str:
        """Save an order. Returns the order ID."""
        ...

    def get_order(self, order_id: str) -> Optional[Order]:
        """Get an order by ID."""
        ...

    def list_orders(
        self,
        batch_id: Optional[str] = None,
        batch_ids: Optional[Iterable[str]] = None,
        buyer_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        limit: int = 10000,
    ) -> List[Order]:
        """List orders with optional filters, oldest first."""
        ...

    def transition_order(
        self,
        order_id: str,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        """Move an order from ``expected`` to ``new_status`` atomically.

        ``updates`` are extra fields written in the same unit. When the new
        status is REFUNDED the owning batch's current quantity is decreased
        by the order quantity in the same unit.

        Returns the updated order, or None if the order was not in
        ``expected`` (someone else got there first).
        """
        ...

    def record_order_error(self, order_id: str, error: Optional[str]) -> bool:
        """Record (or clear) the last settlement error on an order."""
        ...


class InMemoryOrderStorage:
    """In-memory order storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._orders: dict[str, Order] = {}
        # Shared with InMemoryBatchStorage so multi-record units are atomic
        self.lock = threading.RLock()
        # Set by the batch storage: called under the lock when an order is refunded
        self.refund_hook: Optional[Callable[[Order], None]] = None

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    def save_order(self, order: Order) -> str:
        """Save an order."""
        with self.lock:
            self._orders[order.id] = order
        return order.id

    def get_order(self, order_id: str) -> Optional[Order]:
        """Get an order by ID."""
        return self._orders.get(order_id)

    def list_orders(
        self,
        batch_id: Optional[str] = None,
        batch_ids: Optional[Iterable[str]] = None,
        buyer_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        limit: int = 10000,
    ) -> List[Order]:
        """List orders with optional filters."""
        with self.lock:
            orders = list(self._orders.values())

        if batch_id is not None:
            orders = [o for o in orders if o.batch_id == batch_id]
        if batch_ids is not None:
            wanted = set(batch_ids)
            orders = [o for o in orders if o.batch_id in wanted]
        if buyer_id is not None:
            orders = [o for o in orders if o.buyer_id == buyer_id]
        if status is not None:
            status_val = EscrowStatus(status).value
            orders = [o for o in orders if o.escrow_status == status_val]

        orders.sort(key=lambda o: o.created_at or self._utc_now())
        return orders[:limit]

    def transition_order(
        self,
        order_id: str,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        """Compare-and-set the escrow status of an order."""
        with self.lock:
            order = self._orders.get(order_id)
            if order is None or order.escrow_status != EscrowStatus(expected).value:
                return None
            for key, value in (updates or {}).items():
                setattr(order, key, value)
            order.escrow_status = EscrowStatus(new_status).value
            order.updated_at = self._utc_now()
            if order.escrow_status == EscrowStatus.REFUNDED.value and self.refund_hook:
                self.refund_hook(order)
            return order

    def record_order_error(self, order_id: str, error: Optional[str]) -> bool:
        """Record the last settlement error."""
        with self.lock:
            order = self._orders.get(order_id)
            if order is None:
                return False
            order.last_error = error
            order.updated_at = self._utc_now()
            return True
