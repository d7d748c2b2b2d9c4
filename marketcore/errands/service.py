"""
Errand service.

Manages the errand lifecycle:

    OPEN --apply--> OPEN (application added)
    OPEN --accept--> ASSIGNED (siblings rejected)
    ASSIGNED --confirm(one party)--> AWAITING_CONFIRMATION
    ASSIGNED | AWAITING_CONFIRMATION --confirm(both)--> COMPLETED -> payout
    any non-terminal --cancel--> CANCELLED

The helper's payout is issued as credit, at most once per errand.
"""

import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime
from typing import List, Optional

from marketcore.config import SettlementConfig
from marketcore.credits.models import CreditSource
from marketcore.credits.service import CreditsLedger
from marketcore.errands.models import (
    ACTIVE_ERRAND_STATUSES,
    ApplicationStatus,
    Errand,
    ErrandApplication,
    ErrandRating,
    ErrandStateTransition,
    ErrandStatus,
)
from marketcore.errands.storage import ErrandStorage, StatusFilter
from marketcore.notifications import NotificationType, Notifier
from marketcore.protocols import (
    EntitySuspendedError,
    InvalidTransitionError,
    MarketcoreError,
    NeverSuspended,
    SuspensionChecker,
    UnauthorizedError,
)
from marketcore.retry import RetryConfig, SideEffectKind, SideEffectQueue, call_with_retry
from marketcore.types import utc_now

logger = logging.getLogger(__name__)


class ErrandError(MarketcoreError):
    """Base exception for errand operations."""

    pass


class ErrandNotFoundError(ErrandError):
    """Errand does not exist."""

    pass


class ApplicationNotFoundError(ErrandError):
    """Application does not exist."""

    pass


class AlreadyAppliedError(ErrandError):
    """Helper already has a live application for this errand."""

    pass


class NotAcceptingApplicationsError(ErrandError):
    """Errand is no longer OPEN, or already has a helper."""

    pass


class ActiveErrandLimitExceededError(ErrandError):
    """Helper is at the maximum number of active errands."""

    def __init__(self, helper_id: str, limit: int):
        self.helper_id = helper_id
        self.limit = limit
        super().__init__(f"Helper {helper_id} already has {limit} active errands")


class ErrandService:
    """Service for errand lifecycle operations."""

    def __init__(
        self,
        storage: ErrandStorage,
        credits: CreditsLedger,
        notifier: Optional[Notifier] = None,
        suspensions: Optional[SuspensionChecker] = None,
        config: Optional[SettlementConfig] = None,
        side_effects: Optional[SideEffectQueue] = None,
    ):
        """Initialize errand service.

        Args:
            storage: Errand storage backend
            credits: Credits ledger that receives helper payouts
            notifier: Notification wrapper
            suspensions: Moderation lookup consulted before applications
            config: Engine configuration
            side_effects: Queue for payouts that exhausted their retries
        """
        self.storage = storage
        self.credits = credits
        self.notifier = notifier or Notifier()
        self.suspensions = suspensions or NeverSuspended()
        self.config = config or credits.config
        self.retry = RetryConfig.from_settings(self.config)
        self.side_effects = side_effects if side_effects is not None else SideEffectQueue()
        # Per-errand locks so two applications by one helper cannot both land
        self._errand_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _errand_lock(self, errand_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._errand_locks[errand_id]

    # === Creation & lookup ===

    def create_errand(
        self,
        requester_id: str,
        title: str,
        description: str,
        budget,
        deadline: Optional[datetime] = None,
    ) -> Errand:
        """Post a new OPEN errand."""
        now = utc_now()
        if deadline is not None and deadline <= now:
            raise ErrandError("Deadline must be in the future")
        try:
            errand = Errand(
                id=str(uuid.uuid4()),
                requester_id=requester_id,
                title=title,
                description=description,
                budget=budget,
                deadline=deadline,
                created_at=now,
                updated_at=now,
            )
        except ValueError as e:
            raise ErrandError(str(e)) from e

        self.storage.save_errand(errand)
        self._record_transition(errand.id, None, ErrandStatus.OPEN, requester_id)
        logger.info(f"Created errand {errand.id} for {requester_id}")
        return errand

    def get_errand(self, errand_id: str) -> Errand:
        errand = self.storage.get_errand(errand_id)
        if errand is None:
            raise ErrandNotFoundError(f"Errand {errand_id} not found")
        return errand

    def list_errands(
        self,
        status: StatusFilter = None,
        requester_id: Optional[str] = None,
        helper_id: Optional[str] = None,
    ) -> List[Errand]:
        return self.storage.list_errands(status=status, requester_id=requester_id, helper_id=helper_id)

    def applications_for(self, errand_id: str) -> List[ErrandApplication]:
        return self.storage.list_applications(errand_id=errand_id)

    def transitions(self, errand_id: str) -> List[ErrandStateTransition]:
        return self.storage.get_errand_transitions(errand_id)

    def active_errand_count(self, helper_id: str) -> int:
        """Number of the helper's errands that are ASSIGNED or AWAITING_CONFIRMATION."""
        return self.storage.count_active_errands(helper_id)

    def _check_active_limit(self, helper_id: str) -> None:
        limit = self.config.max_active_errands_per_helper
        if self.active_errand_count(helper_id) >= limit:
            raise ActiveErrandLimitExceededError(helper_id, limit)

    # === Applications ===

    def apply(
        self,
        errand_id: str,
        helper_id: str,
        offer_amount=None,
        message: Optional[str] = None,
    ) -> ErrandApplication:
        """Apply to an OPEN errand as a helper.

        Raises:
            AlreadyAppliedError: Helper already has a non-rejected application
            NotAcceptingApplicationsError: Errand not OPEN or already assigned
            ActiveErrandLimitExceededError: Helper is at the active-errand limit
            EntitySuspendedError: Errand is suspended
        """
        with self._errand_lock(errand_id):
            errand = self.get_errand(errand_id)
            if errand.requester_id == helper_id:
                raise ErrandError("Cannot apply to your own errand")
            if self.suspensions.is_suspended("errand", errand_id):
                raise EntitySuspendedError("errand", errand_id)

            existing = self.storage.list_applications(errand_id=errand_id, helper_id=helper_id)
            if any(a.status != ApplicationStatus.REJECTED.value for a in existing):
                raise AlreadyAppliedError(f"Helper {helper_id} already applied to errand {errand_id}")
            if not errand.is_open:
                raise NotAcceptingApplicationsError(f"Errand {errand_id} is not accepting applications")
            self._check_active_limit(helper_id)

            try:
                application = ErrandApplication(
                    id=str(uuid.uuid4()),
                    errand_id=errand_id,
                    helper_id=helper_id,
                    offer_amount=offer_amount,
                    message=message,
                    created_at=utc_now(),
                )
            except ValueError as e:
                raise ErrandError(str(e)) from e
            self.storage.save_application(application)

        logger.info(f"Helper {helper_id} applied to errand {errand_id}")
        self.notifier.send(
            errand.requester_id,
            NotificationType.ERRAND_APPLICATION,
            "New Errand Application",
            f"Someone applied to help with \"{errand.title}\".",
            {"errand_id": errand_id, "application_id": application.id},
        )
        return application

    def accept(self, errand_id: str, application_id: str, requester_id: str) -> Errand:
        """Accept one application: assign its helper and reject the rest.

        Raises:
            UnauthorizedError: Caller is not the requester
            InvalidTransitionError: Errand is not OPEN
            ApplicationNotFoundError: Application missing or for another errand
            ActiveErrandLimitExceededError: Helper reached the limit meanwhile
        """
        errand = self.get_errand(errand_id)
        if errand.requester_id != requester_id:
            raise UnauthorizedError("Only the requester can accept applications")
        if not errand.is_open:
            raise InvalidTransitionError("errand", errand_id, errand.status, ErrandStatus.ASSIGNED.value)

        application = self.storage.get_application(application_id)
        if application is None or application.errand_id != errand_id:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        if not application.is_pending:
            raise ErrandError(f"Application {application_id} is {application.status}")

        # The helper may have been assigned elsewhere since applying
        self._check_active_limit(application.helper_id)

        assigned = self.storage.assign_errand(errand_id, application_id)
        if assigned is None:
            current = self.get_errand(errand_id)
            raise InvalidTransitionError("errand", errand_id, current.status, ErrandStatus.ASSIGNED.value)

        self._record_transition(errand_id, ErrandStatus.OPEN, ErrandStatus.ASSIGNED, requester_id)
        logger.info(f"Errand {errand_id} assigned to {application.helper_id}")
        self.notifier.send(
            application.helper_id,
            NotificationType.ERRAND_ACCEPTED,
            "Application Accepted",
            f"You have been chosen for \"{assigned.title}\".",
            {"errand_id": errand_id},
        )
        return assigned

    def reconcile_applications(self, errand_id: str) -> int:
        """Finish an assignment that stopped after the errand row was written.

        The assigned helper's application is accepted if it is still
        PENDING, then the remaining PENDING applications are rejected.
        Returns the number of applications rejected.
        """
        errand = self.storage.get_errand(errand_id)
        if errand is None or errand.is_open:
            return 0
        pending = [a for a in self.storage.list_applications(errand_id=errand_id) if a.is_pending]
        if not pending:
            return 0

        helper_id = errand.assigned_helper_id
        for application in pending:
            if application.helper_id != helper_id:
                continue
            if self.storage.accept_application(application.id):
                logger.warning(
                    f"Accepted application {application.id} of assigned helper "
                    f"{helper_id} on errand {errand_id}"
                )
            break

        rejected = self.storage.reject_pending_applications(errand_id)
        if rejected:
            logger.warning(f"Rejected {rejected} stray application(s) on errand {errand_id}")
        return rejected

    # === Completion ===

    def confirm_completion(
        self,
        errand_id: str,
        user_id: str,
        is_requester: Optional[bool] = None,
    ) -> Errand:
        """Record one party's confirmation that the errand is done.

        The first confirmation moves the errand to AWAITING_CONFIRMATION,
        the second to COMPLETED, which releases the helper's payout.
        Confirming twice as the same party is a no-op.

        Raises:
            UnauthorizedError: User is not the requester or assigned helper
            InvalidTransitionError: Errand is not ASSIGNED or AWAITING_CONFIRMATION
        """
        errand = self.get_errand(errand_id)
        if is_requester is None:
            is_requester = user_id == errand.requester_id
        party = errand.requester_id if is_requester else errand.assigned_helper_id
        if party is None or party != user_id:
            raise UnauthorizedError("Only the requester or assigned helper can confirm completion")
        flag = "requester_confirmed" if is_requester else "helper_confirmed"

        while True:
            if getattr(errand, flag):
                return errand
            status = errand.errand_status
            if status not in ACTIVE_ERRAND_STATUSES:
                raise InvalidTransitionError(
                    "errand", errand_id, errand.status, ErrandStatus.COMPLETED.value
                )

            other_confirmed = errand.helper_confirmed if is_requester else errand.requester_confirmed
            now = utc_now()
            updates = {flag: True}
            if other_confirmed:
                target = ErrandStatus.COMPLETED
                updates["completed_at"] = now
            else:
                target = ErrandStatus.AWAITING_CONFIRMATION

            updated = self.storage.transition_errand(errand_id, status, target, updates)
            if updated is not None:
                break
            # The other party confirmed at the same time; look again
            errand = self.get_errand(errand_id)

        if target != status:
            self._record_transition(errand_id, status, target, user_id)
        logger.info(f"Errand {errand_id} confirmed by {user_id}, now {target.value}")

        if target == ErrandStatus.COMPLETED:
            self.notifier.send_many(
                [updated.requester_id, updated.assigned_helper_id],
                NotificationType.ERRAND_COMPLETED,
                "Errand Completed",
                f"\"{updated.title}\" has been completed by both parties.",
                {"errand_id": errand_id},
            )
            self.release_payment(errand_id)
        return self.get_errand(errand_id)

    def release_payment(self, errand_id: str) -> bool:
        """Issue the helper's payout as credit, once.

        Returns True only for the call that actually issued it. The payout
        is claimed first; if issuing the credit keeps failing the claim is
        dropped and the errand is queued for the reconciliation sweep. The
        credit itself is keyed on the errand, so a retry after a write that
        landed but reported an error finds it instead of paying twice.
        """
        errand = self.get_errand(errand_id)
        if errand.errand_status != ErrandStatus.COMPLETED or errand.payment_released:
            return False
        if not self.storage.mark_payment_released(errand_id, utc_now()):
            return False

        if not self._issue_payout(errand):
            self.storage.clear_payment_released(errand_id)
            return False
        logger.info(f"Released {errand.budget} payout for errand {errand_id} to {errand.assigned_helper_id}")
        return True

    def repair_payment(self, errand_id: str) -> bool:
        """Issue the payout of an errand marked paid whose credit never landed.

        Covers a process that died between claiming the payout and issuing
        it. Returns True if a missing payout was issued.
        """
        errand = self.get_errand(errand_id)
        if errand.errand_status != ErrandStatus.COMPLETED or not errand.payment_released:
            return False
        if errand.assigned_helper_id is None:
            return False
        if self.credits.issued_entry(
            errand.assigned_helper_id, CreditSource.ERRAND_COMPLETION, errand_id
        ):
            return False

        if not self._issue_payout(errand):
            return False
        logger.warning(f"Repaired missing payout for errand {errand_id} to {errand.assigned_helper_id}")
        return True

    def _issue_payout(self, errand: Errand) -> bool:
        outcome = call_with_retry(
            lambda: self.credits.issue_once(
                errand.assigned_helper_id,
                errand.budget,
                CreditSource.ERRAND_COMPLETION,
                key=errand.id,
            ),
            self.retry,
            operation=f"payout for errand {errand.id}",
        )
        if not outcome.ok:
            self.side_effects.record(
                SideEffectKind.ERRAND_PAYMENT, errand.id, outcome.error, attempts=outcome.attempts
            )
            return False
        self.side_effects.resolve(SideEffectKind.ERRAND_PAYMENT, errand.id)
        return True

    def rate_helper(
        self,
        errand_id: str,
        rater_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> ErrandRating:
        """Rate the helper of a completed errand. Rating again updates the rating.

        Raises:
            UnauthorizedError: Rater is not the requester
            ErrandError: Errand is not COMPLETED, or the rating is out of range
        """
        errand = self.get_errand(errand_id)
        if errand.requester_id != rater_id:
            raise UnauthorizedError("Only the requester can rate the helper")
        if errand.errand_status != ErrandStatus.COMPLETED:
            raise ErrandError(f"Errand {errand_id} is {errand.status}; only completed errands can be rated")
        try:
            record = ErrandRating(
                errand_id=errand_id,
                rater_id=rater_id,
                rated_id=errand.assigned_helper_id,
                rating=rating,
                comment=comment,
            )
        except ValueError as e:
            raise ErrandError(str(e)) from e
        return self.storage.upsert_rating(record)

    # === Cancellation ===

    def cancel(self, errand_id: str, actor_id: str) -> Errand:
        """Cancel a non-terminal errand.

        Clears the helper and rejects pending applications.

        Raises:
            UnauthorizedError: Actor is not the requester
            InvalidTransitionError: Errand already COMPLETED or CANCELLED
        """
        errand = self.get_errand(errand_id)
        if errand.requester_id != actor_id:
            raise UnauthorizedError("Only the requester can cancel this errand")

        while True:
            if errand.is_terminal:
                raise InvalidTransitionError(
                    "errand", errand_id, errand.status, ErrandStatus.CANCELLED.value
                )
            previous = errand.errand_status
            helper_id = errand.assigned_helper_id
            cancelled = self.storage.cancel_errand(errand_id, previous)
            if cancelled is not None:
                break
            errand = self.get_errand(errand_id)

        self._record_transition(errand_id, previous, ErrandStatus.CANCELLED, actor_id)
        logger.info(f"Errand {errand_id} cancelled by {actor_id}")
        if helper_id:
            self.notifier.send(
                helper_id,
                NotificationType.ERRAND_CANCELLED,
                "Errand Cancelled",
                f"\"{errand.title}\" was cancelled by the requester.",
                {"errand_id": errand_id},
            )
        return cancelled

    def _record_transition(
        self,
        errand_id: str,
        from_status: Optional[ErrandStatus],
        to_status: ErrandStatus,
        actor_id: Optional[str],
    ) -> None:
        self.storage.save_errand_transition(
            ErrandStateTransition(
                errand_id=errand_id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                actor_id=actor_id,
            )
        )
