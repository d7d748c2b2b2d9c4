"""Regional batch subsystem for marketcore.

A regional batch pools orders for one listing in one region until it
reaches its minimum quantity or its deadline passes.

Modules:
- models.py: RegionalBatch, BatchStatus, BatchStateTransition
- storage.py: BatchStorage protocol and in-memory backend
- service.py: BatchService (activate, join, evaluate, cancel)
"""

from marketcore.batches.models import (
    TERMINAL_BATCH_STATUSES,
    VALID_BATCH_TRANSITIONS,
    BatchStateTransition,
    BatchStatus,
    BatchTransitionResult,
    RegionalBatch,
)
from marketcore.batches.service import (
    BatchError,
    BatchNotAcceptingOrdersError,
    BatchNotFoundError,
    BatchService,
)
from marketcore.batches.storage import BatchStorage, InMemoryBatchStorage

__all__ = [
    # Models
    "RegionalBatch",
    "BatchStatus",
    "BatchStateTransition",
    "BatchTransitionResult",
    "VALID_BATCH_TRANSITIONS",
    "TERMINAL_BATCH_STATUSES",
    # Storage
    "BatchStorage",
    "InMemoryBatchStorage",
    # Service
    "BatchService",
    "BatchError",
    "BatchNotFoundError",
    "BatchNotAcceptingOrdersError",
]
