"""
Reconciliation sweep.

Brings the stores back to a consistent state after crashes, lost races and
side effects that exhausted their retries. Every step is idempotent, so the
sweep can run on a timer alongside user traffic:

1. evaluate ACTIVE batches that are due
2. re-settle terminal batches that still have HELD orders
3. recount terminal batches whose quantity drifted from their orders
4. re-issue payouts for COMPLETED errands that were never paid, or were
   marked paid without the credit landing
5. finish interrupted assignments: accept the assigned helper's
   application and reject the stray PENDING ones
6. issue referral rewards that failed or were cut off
7. drop queued side effects whose entity has since settled
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from marketcore.batches.models import TERMINAL_BATCH_STATUSES
from marketcore.credits.models import CreditSource
from marketcore.credits.referrals import ReferralStatus
from marketcore.errands.models import ASSIGNED_ERRAND_STATUSES, ErrandStatus
from marketcore.escrow.models import EscrowStatus
from marketcore.protocols import MarketcoreError
from marketcore.retry import SideEffectKind
from marketcore.types import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts of what one sweep did."""

    batches_evaluated: int = 0
    batches_closed: int = 0
    batches_resettled: int = 0
    batches_recounted: int = 0
    orders_settled: int = 0
    orders_still_failing: int = 0
    payouts_released: int = 0
    applications_rejected: int = 0
    referral_rewards_issued: int = 0
    side_effects_resolved: int = 0
    side_effects_pending: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationSweeper:
    """Runs the reconciliation steps against one engine."""

    def __init__(self, engine):
        self.engine = engine

    def run(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        report = SweepReport()
        self._evaluate_due_batches(report, now)
        self._resettle_batches(report)
        self._recount_batches(report)
        self._release_payouts(report)
        self._reconcile_applications(report)
        self._reward_referrals(report)
        self._drain_side_effects(report)
        logger.info(f"Sweep finished: {report.to_dict()}")
        return report

    def _evaluate_due_batches(self, report: SweepReport, now: datetime) -> None:
        for batch in self.engine.batches.due_batches(now):
            report.batches_evaluated += 1
            try:
                result = self.engine.batches.evaluate(batch.id, now=now)
            except MarketcoreError as e:
                report.errors += 1
                logger.error(f"Evaluating batch {batch.id} failed: {e}")
                continue
            if result.transitioned:
                report.batches_closed += 1

    def _resettle_batches(self, report: SweepReport) -> None:
        escrow = self.engine.escrow
        for status in sorted(TERMINAL_BATCH_STATUSES):
            for batch in self.engine.batches.list_batches(status=status):
                if not escrow.held_orders(batch.id):
                    continue
                report.batches_resettled += 1
                result = self.engine.batches.settle(batch.id)
                if result is None:
                    report.errors += 1
                    continue
                report.orders_settled += len(result.succeeded)
                report.orders_still_failing += len(result.failed)

    def _recount_batches(self, report: SweepReport) -> None:
        batches = self.engine.batches
        for status in sorted(TERMINAL_BATCH_STATUSES):
            for batch in batches.list_batches(status=status):
                try:
                    if batches.recount_quantity(batch.id):
                        report.batches_recounted += 1
                except MarketcoreError as e:
                    report.errors += 1
                    logger.error(f"Recounting batch {batch.id} failed: {e}")

    def _release_payouts(self, report: SweepReport) -> None:
        errands = self.engine.errands
        unpaid = errands.storage.list_errands(status=ErrandStatus.COMPLETED, payment_released=False)
        for errand in unpaid:
            if errands.release_payment(errand.id):
                report.payouts_released += 1
        claimed = errands.storage.list_errands(status=ErrandStatus.COMPLETED, payment_released=True)
        for errand in claimed:
            if errands.repair_payment(errand.id):
                report.payouts_released += 1

    def _reconcile_applications(self, report: SweepReport) -> None:
        errands = self.engine.errands
        for errand in errands.storage.list_errands(status=ASSIGNED_ERRAND_STATUSES):
            report.applications_rejected += errands.reconcile_applications(errand.id)

    def _reward_referrals(self, report: SweepReport) -> None:
        referrals = self.engine.referrals
        for referral in referrals.storage.list_referrals(status=ReferralStatus.REWARDED):
            if referrals.rewards_missing(referral) and referrals.repair_rewards(referral.id):
                report.referral_rewards_issued += 1
        for referral in referrals.storage.list_referrals(status=ReferralStatus.JOINED):
            orders = self._orders_of(referral.referred_id)
            if not orders:
                continue
            rewarded = referrals.process_first_order(referral.referred_id, orders[0].id)
            if rewarded is not None and not referrals.rewards_missing(rewarded):
                report.referral_rewards_issued += 1

    def _orders_of(self, user_id: str):
        return self.engine.escrow.storage.list_orders(buyer_id=user_id, limit=1)

    def _drain_side_effects(self, report: SweepReport) -> None:
        queue = self.engine.side_effects
        for entry in queue.pending():
            if self._is_settled(entry.kind, entry.entity_id):
                queue.resolve(entry.kind, entry.entity_id)
                report.side_effects_resolved += 1
        report.side_effects_pending = len(queue)

    def _is_settled(self, kind: str, entity_id: str) -> bool:
        if kind == SideEffectKind.ERRAND_PAYMENT.value:
            errand = self.engine.errands.storage.get_errand(entity_id)
            if errand is None:
                return True
            return errand.payment_released and (
                self.engine.credits.issued_entry(
                    errand.assigned_helper_id, CreditSource.ERRAND_COMPLETION, entity_id
                )
                is not None
            )
        if kind == SideEffectKind.REFERRAL_REWARD.value:
            return self._referral_settled(entity_id)
        orders = self.engine.escrow.orders_for(entity_id)
        return not any(o.escrow_status == EscrowStatus.HELD.value for o in orders)

    def _referral_settled(self, user_id: str) -> bool:
        referrals = self.engine.referrals
        for referral in referrals.storage.list_referrals(referred_id=user_id):
            if referrals.rewards_missing(referral):
                return False
            if referral.status == ReferralStatus.JOINED.value and self._orders_of(user_id):
                return False
        return True
