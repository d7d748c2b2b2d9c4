"""Escrow subsystem for marketcore.

Escrow holds buyer payments for regional group-buy batches until the batch
outcome is known:
- Orders are HELD once the payment processor has authorized them
- A successful batch RELEASES (captures) every held order for the vendor
- A failed or cancelled batch REFUNDS every held order to its buyer

Modules:
- models.py: Order, EscrowStatus, SettlementResult
- storage.py: OrderStorage protocol and in-memory backend
- service.py: EscrowLedger (hold, release, refund, totals)
"""

from marketcore.escrow.models import (
    TERMINAL_ESCROW_STATUSES,
    VALID_ESCROW_TRANSITIONS,
    EscrowFailure,
    EscrowStatus,
    Order,
    SettlementAction,
    SettlementResult,
)
from marketcore.escrow.service import (
    AuthorizationRequiredError,
    EscrowError,
    EscrowLedger,
    OrderNotFoundError,
)
from marketcore.escrow.storage import InMemoryOrderStorage, OrderStorage

__all__ = [
    # Models
    "Order",
    "EscrowStatus",
    "EscrowFailure",
    "SettlementAction",
    "SettlementResult",
    "VALID_ESCROW_TRANSITIONS",
    "TERMINAL_ESCROW_STATUSES",
    # Storage
    "OrderStorage",
    "InMemoryOrderStorage",
    # Service
    "EscrowLedger",
    "EscrowError",
    "OrderNotFoundError",
    "AuthorizationRequiredError",
]
