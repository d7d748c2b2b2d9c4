"""
Regional batch storage layer.

Batches and their orders are kept consistent in two places:
- ``add_order`` inserts an order and bumps the batch quantity as one unit,
  and only while the batch is still ACTIVE
- refunding an order (see OrderStorage.transition_order) gives its
  quantity back in the same unit
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from marketcore.batches.models import BatchStateTransition, BatchStatus, RegionalBatch
from marketcore.escrow.models import Order
from marketcore.escrow.storage import InMemoryOrderStorage

logger = logging.getLogger(__name__)


class BatchStorage(Protocol):
    """Protocol for regional batch persistence backends."""

    def save_batch(self, batch: RegionalBatch) -> str:
        """Save a batch. Returns the batch ID."""
        ...

    def get_batch(self, batch_id: str) -> Optional[RegionalBatch]:
        """Get a batch by ID."""
        ...

    def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        vendor_id: Optional[str] = None,
        listing_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[RegionalBatch]:
        """List batches with optional filters, oldest first."""
        ...

    def transition_batch(
        self,
        batch_id: str,
        expected: BatchStatus,
        new_status: BatchStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[RegionalBatch]:
        """Compare-and-set the batch status. Returns None if not in ``expected``."""
        ...

    def add_order(self, order: Order) -> Optional[RegionalBatch]:
        """Insert ``order`` and add its quantity to the batch, atomically.

        Returns the updated batch, or None (nothing written) if the batch
        is missing or no longer ACTIVE.
        """
        ...

    def reset_quantity(self, batch_id: str, observed: int, quantity: int) -> bool:
        """Set the batch quantity to ``quantity`` if it still equals ``observed``."""
        ...

    def save_batch_transition(self, transition: BatchStateTransition) -> str:
        """Save a state transition record. Returns the transition ID."""
        ...

    def get_batch_transitions(self, batch_id: str) -> List[BatchStateTransition]:
        """Get all state transitions for a batch, oldest first."""
        ...


class InMemoryBatchStorage:
    """In-memory batch storage for testing and local development.

    Shares the lock of the order storage it is built on, so that order
    inserts and refunds move the batch quantity atomically.
    """

    def __init__(self, orders: InMemoryOrderStorage):
        """Initialize empty storage on top of an order store."""
        self.orders = orders
        self.lock = orders.lock
        self._batches: dict[str, RegionalBatch] = {}
        self._transitions: dict[str, list[BatchStateTransition]] = {}  # batch_id -> list
        orders.refund_hook = self._give_back_quantity

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Batches ===

    def save_batch(self, batch: RegionalBatch) -> str:
        """Save a batch."""
        with self.lock:
            self._batches[batch.id] = batch
            self._transitions.setdefault(batch.id, [])
        return batch.id

    def get_batch(self, batch_id: str) -> Optional[RegionalBatch]:
        """Get a batch by ID."""
        return self._batches.get(batch_id)

    def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        vendor_id: Optional[str] = None,
        listing_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[RegionalBatch]:
        """List batches with optional filters."""
        with self.lock:
            batches = list(self._batches.values())

        if status is not None:
            status_val = BatchStatus(status).value
            batches = [b for b in batches if b.status == status_val]
        if vendor_id is not None:
            batches = [b for b in batches if b.vendor_id == vendor_id]
        if listing_id is not None:
            batches = [b for b in batches if b.listing_id == listing_id]

        batches.sort(key=lambda b: b.created_at or self._utc_now())
        return batches[:limit]

    def transition_batch(
        self,
        batch_id: str,
        expected: BatchStatus,
        new_status: BatchStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[RegionalBatch]:
        """Compare-and-set the batch status."""
        with self.lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status != BatchStatus(expected).value:
                return None
            for key, value in (updates or {}).items():
                setattr(batch, key, value)
            batch.status = BatchStatus(new_status).value
            batch.updated_at = self._utc_now()
            return batch

    def add_order(self, order: Order) -> Optional[RegionalBatch]:
        """Insert an order and bump the batch quantity while ACTIVE."""
        with self.lock:
            batch = self._batches.get(order.batch_id)
            if batch is None or batch.status != BatchStatus.ACTIVE.value:
                return None
            self.orders.save_order(order)
            batch.current_quantity += order.quantity
            batch.updated_at = self._utc_now()
            return batch

    def _give_back_quantity(self, order: Order) -> None:
        # Called by the order store, under the shared lock
        batch = self._batches.get(order.batch_id)
        if batch is not None:
            batch.current_quantity = max(0, batch.current_quantity - order.quantity)
            batch.updated_at = self._utc_now()

    def reset_quantity(self, batch_id: str, observed: int, quantity: int) -> bool:
        """Overwrite the batch quantity if it has not moved."""
        with self.lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.current_quantity != observed:
                return False
            batch.current_quantity = quantity
            batch.updated_at = self._utc_now()
            return True

    # === Transitions ===

    def save_batch_transition(self, transition: BatchStateTransition) -> str:
        """Save a state transition record."""
        with self.lock:
            self._transitions.setdefault(transition.batch_id, []).append(transition)
        return transition.id

    def get_batch_transitions(self, batch_id: str) -> List[BatchStateTransition]:
        """Get all state transitions for a batch."""
        transitions = self._transitions.get(batch_id, [])
        return sorted(transitions, key=lambda t: t.created_at or self._utc_now())
