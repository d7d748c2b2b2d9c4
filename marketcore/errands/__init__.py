"""Errands subsystem for marketcore.

An errand is a one-to-one task: a requester posts it, helpers apply, the
requester accepts one helper, and both parties confirm completion before
the helper is paid in credit.

Modules:
- models.py: Errand, ErrandApplication, ErrandRating, ErrandStatus
- storage.py: ErrandStorage protocol and in-memory backend
- service.py: ErrandService (apply, accept, confirm, release payment, rate, cancel)
"""

from marketcore.errands.models import (
    ACTIVE_ERRAND_STATUSES,
    ASSIGNED_ERRAND_STATUSES,
    VALID_ERRAND_TRANSITIONS,
    ApplicationStatus,
    Errand,
    ErrandApplication,
    ErrandRating,
    ErrandStateTransition,
    ErrandStatus,
)
from marketcore.errands.service import (
    ActiveErrandLimitExceededError,
    AlreadyAppliedError,
    ApplicationNotFoundError,
    ErrandError,
    ErrandNotFoundError,
    ErrandService,
    NotAcceptingApplicationsError,
)
from marketcore.errands.storage import ErrandStorage, InMemoryErrandStorage

__all__ = [
    # Models
    "Errand",
    "ErrandApplication",
    "ErrandRating",
    "ErrandStateTransition",
    "ErrandStatus",
    "ApplicationStatus",
    "VALID_ERRAND_TRANSITIONS",
    "ACTIVE_ERRAND_STATUSES",
    "ASSIGNED_ERRAND_STATUSES",
    # Storage
    "ErrandStorage",
    "InMemoryErrandStorage",
    # Service
    "ErrandService",
    "ErrandError",
    "ErrandNotFoundError",
    "ApplicationNotFoundError",
    "AlreadyAppliedError",
    "NotAcceptingApplicationsError",
    "ActiveErrandLimitExceededError",
]
