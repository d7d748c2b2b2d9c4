"""
Errands storage layer.

Provides persistence for errands, applications, ratings and the status
audit log. Multi-record changes (assigning a helper, cancelling) are one
method each so that a backend can apply them as a single unit.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from marketcore.errands.models import (
    ACTIVE_ERRAND_STATUSES,
    ApplicationStatus,
    Errand,
    ErrandApplication,
    ErrandRating,
    ErrandStateTransition,
    ErrandStatus,
)

logger = logging.getLogger(__name__)

StatusFilter = Union[ErrandStatus, Iterable[ErrandStatus], None]


def status_values(status: StatusFilter) -> Optional[set]:
    """Normalize a single status or a collection of statuses to a set of values."""
    if status is None:
        return None
    if isinstance(status, (ErrandStatus, str)):
        return {ErrandStatus(status).value}
    return {ErrandStatus(s).value for s in status}


class ErrandStorage(Protocol):
    """Protocol for errand persistence backends."""

    # Errands
    def save_errand(self, errand: Errand) -> str:
        """Save an errand. Returns the errand ID."""
        ...

    def get_errand(self, errand_id: str) -> Optional[Errand]:
        """Get an errand by ID."""
        ...

    def list_errands(
        self,
        status: StatusFilter = None,
        requester_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        payment_released: Optional[bool] = None,
        limit: int = 1000,
    ) -> List[Errand]:
        """List errands with optional filters, newest first."""
        ...

    def count_active_errands(self, helper_id: str) -> int:
        """Count errands ASSIGNED or AWAITING_CONFIRMATION for a helper."""
        ...

    def transition_errand(
        self,
        errand_id: str,
        expected: ErrandStatus,
        new_status: ErrandStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Errand]:
        """Compare-and-set the errand status, writing ``updates`` in the same unit.

        ``new_status`` may equal ``expected`` to update fields under a
        status guard. Returns None if the errand is not in ``expected``.
        """
        ...

    def assign_errand(self, errand_id: str, application_id: str) -> Optional[Errand]:
        """Accept an application as one unit.

        Only applies if the errand is OPEN with no helper and the
        application is PENDING: errand -> ASSIGNED with the applicant as
        helper, application -> ACCEPTED, every other PENDING application
        of the errand -> REJECTED. Returns None (nothing written) otherwise.
        """
        ...

    def cancel_errand(self, errand_id: str, expected: ErrandStatus) -> Optional[Errand]:
        """Cancel as one unit: status -> CANCELLED, helper cleared, PENDING applications rejected."""
        ...

    def mark_payment_released(self, errand_id: str, released_at: datetime) -> bool:
        """Set ``payment_released`` on a COMPLETED errand if not already set."""
        ...

    def clear_payment_released(self, errand_id: str) -> bool:
        """Undo ``mark_payment_released`` after a failed payout."""
        ...

    # Applications
    def save_application(self, application: ErrandApplication) -> str:
        """Save an application. Returns the application ID."""
        ...

    def get_application(self, application_id: str) -> Optional[ErrandApplication]:
        """Get an application by ID."""
        ...

    def list_applications(
        self,
        errand_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
        limit: int = 1000,
    ) -> List[ErrandApplication]:
        """List applications with optional filters, oldest first."""
        ...

    def accept_application(self, application_id: str) -> bool:
        """Mark a PENDING application ACCEPTED. Returns False if it was not PENDING."""
        ...

    def reject_pending_applications(self, errand_id: str) -> int:
        """Reject every PENDING application of an errand. Returns the number rejected."""
        ...

    # Ratings
    def upsert_rating(self, rating: ErrandRating) -> ErrandRating:
        """Insert or update the rating for (errand_id, rater_id)."""
        ...

    def get_rating(self, errand_id: str, rater_id: str) -> Optional[ErrandRating]:
        """Get the rating a rater left on an errand."""
        ...

    def list_ratings(self, rated_id: str) -> List[ErrandRating]:
        """List ratings received by a user."""
        ...

    # Transitions (audit log)
    def save_errand_transition(self, transition: ErrandStateTransition) -> str:
        """Save a state transition record. Returns the transition ID."""
        ...

    def get_errand_transitions(self, errand_id: str) -> List[ErrandStateTransition]:
        """Get all state transitions for an errand, oldest first."""
        ...


class InMemoryErrandStorage:
    """In-memory errand storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._errands: dict[str, Errand] = {}
        self._applications: dict[str, ErrandApplication] = {}
        self._ratings: dict[tuple, ErrandRating] = {}  # (errand_id, rater_id) -> rating
        self._transitions: dict[str, list[ErrandStateTransition]] = {}  # errand_id -> list
        self._lock = threading.RLock()

    def _utc_now(self) -> datetime:
        """Get current UTC timestamp."""
        return datetime.now(timezone.utc)

    # === Errands ===

    def save_errand(self, errand: Errand) -> str:
        """Save an errand."""
        with self._lock:
            self._errands[errand.id] = errand
            self._transitions.setdefault(errand.id, [])
        return errand.id

    def get_errand(self, errand_id: str) -> Optional[Errand]:
        """Get an errand by ID."""
        return self._errands.get(errand_id)

    def list_errands(
        self,
        status: StatusFilter = None,
        requester_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        payment_released: Optional[bool] = None,
        limit: int = 1000,
    ) -> List[Errand]:
        """List errands with optional filters."""
        with self._lock:
            errands = list(self._errands.values())

        wanted = status_values(status)
        if wanted is not None:
            errands = [e for e in errands if e.status in wanted]
        if requester_id is not None:
            errands = [e for e in errands if e.requester_id == requester_id]
        if helper_id is not None:
            errands = [e for e in errands if e.assigned_helper_id == helper_id]
        if payment_released is not None:
            errands = [e for e in errands if e.payment_released == payment_released]

        # Sort by created_at desc
        errands.sort(key=lambda e: e.created_at or self._utc_now(), reverse=True)
        return errands[:limit]

    def count_active_errands(self, helper_id: str) -> int:
        """Count a helper's active errands."""
        return len(self.list_errands(status=ACTIVE_ERRAND_STATUSES, helper_id=helper_id))

    def transition_errand(
        self,
        errand_id: str,
        expected: ErrandStatus,
        new_status: ErrandStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Errand]:
        """Compare-and-set the errand status."""
        with self._lock:
            errand = self._errands.get(errand_id)
            if errand is None or errand.status != ErrandStatus(expected).value:
                return None
            for key, value in (updates or {}).items():
                setattr(errand, key, value)
            errand.status = ErrandStatus(new_status).value
            errand.updated_at = self._utc_now()
            return errand

    def assign_errand(self, errand_id: str, application_id: str) -> Optional[Errand]:
        """Accept an application and reject its siblings."""
        with self._lock:
            errand = self._errands.get(errand_id)
            application = self._applications.get(application_id)
            if errand is None or application is None or application.errand_id != errand_id:
                return None
            if not errand.is_open or not application.is_pending:
                return None

            now = self._utc_now()
            errand.status = ErrandStatus.ASSIGNED.value
            errand.assigned_helper_id = application.helper_id
            errand.assigned_at = now
            errand.updated_at = now
            application.status = ApplicationStatus.ACCEPTED.value
            for other in self._applications.values():
                if other.errand_id == errand_id and other.id != application_id and other.is_pending:
                    other.status = ApplicationStatus.REJECTED.value
            return errand

    def cancel_errand(self, errand_id: str, expected: ErrandStatus) -> Optional[Errand]:
        """Cancel an errand and reject its pending applications."""
        with self._lock:
            errand = self._errands.get(errand_id)
            if errand is None or errand.status != ErrandStatus(expected).value:
                return None
            errand.status = ErrandStatus.CANCELLED.value
            errand.assigned_helper_id = None
            errand.updated_at = self._utc_now()
            self.reject_pending_applications(errand_id)
            return errand

    def mark_payment_released(self, errand_id: str, released_at: datetime) -> bool:
        """Claim the payout of a completed errand."""
        with self._lock:
            errand = self._errands.get(errand_id)
            if (
                errand is None
                or errand.status != ErrandStatus.COMPLETED.value
                or errand.payment_released
            ):
                return False
            errand.payment_released = True
            errand.payment_released_at = released_at
            errand.updated_at = self._utc_now()
            return True

    def clear_payment_released(self, errand_id: str) -> bool:
        """Release the payout claim."""
        with self._lock:
            errand = self._errands.get(errand_id)
            if errand is None or not errand.payment_released:
                return False
            errand.payment_released = False
            errand.payment_released_at = None
            errand.updated_at = self._utc_now()
            return True

    # === Applications ===

    def save_application(self, application: ErrandApplication) -> str:
        """Save an application."""
        with self._lock:
            self._applications[application.id] = application
        return application.id

    def get_application(self, application_id: str) -> Optional[ErrandApplication]:
        """Get an application by ID."""
        return self._applications.get(application_id)

    def list_applications(
        self,
        errand_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
        limit: int = 1000,
    ) -> List[ErrandApplication]:
        """List applications with optional filters."""
        with self._lock:
            apps = list(self._applications.values())

        if errand_id is not None:
            apps = [a for a in apps if a.errand_id == errand_id]
        if helper_id is not None:
            apps = [a for a in apps if a.helper_id == helper_id]
        if status is not None:
            status_val = ApplicationStatus(status).value
            apps = [a for a in apps if a.status == status_val]

        apps.sort(key=lambda a: a.created_at or self._utc_now())
        return apps[:limit]

    def accept_application(self, application_id: str) -> bool:
        """Accept an application if it is still pending."""
        with self._lock:
            app = self._applications.get(application_id)
            if app is None or not app.is_pending:
                return False
            app.status = ApplicationStatus.ACCEPTED.value
            return True

    def reject_pending_applications(self, errand_id: str) -> int:
        """Reject pending applications of an errand."""
        rejected = 0
        with self._lock:
            for app in self._applications.values():
                if app.errand_id == errand_id and app.is_pending:
                    app.status = ApplicationStatus.REJECTED.value
                    rejected += 1
        return rejected

    # === Ratings ===

    def upsert_rating(self, rating: ErrandRating) -> ErrandRating:
        """Insert or update a rating."""
        key = (rating.errand_id, rating.rater_id)
        with self._lock:
            existing = self._ratings.get(key)
            if existing is None:
                self._ratings[key] = rating
                return rating
            existing.rating = rating.rating
            existing.comment = rating.comment
            existing.updated_at = self._utc_now()
            return existing

    def get_rating(self, errand_id: str, rater_id: str) -> Optional[ErrandRating]:
        """Get a rating."""
        return self._ratings.get((errand_id, rater_id))

    def list_ratings(self, rated_id: str) -> List[ErrandRating]:
        """List ratings received by a user."""
        with self._lock:
            ratings = [r for r in self._ratings.values() if r.rated_id == rated_id]
        return sorted(ratings, key=lambda r: r.created_at, reverse=True)

    # === Transitions ===

    def save_errand_transition(self, transition: ErrandStateTransition) -> str:
        """Save a state transition record."""
        with self._lock:
            self._transitions.setdefault(transition.errand_id, []).append(transition)
        return transition.id

    def get_errand_transitions(self, errand_id: str) -> List[ErrandStateTransition]:
        """Get all state transitions for an errand."""
        transitions = self._transitions.get(errand_id, [])
        # Sort by created_at asc
        return sorted(transitions, key=lambda t: t.created_at or self._utc_now())
