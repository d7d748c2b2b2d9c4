"""Supabase storage backend for marketcore.

Uses the Supabase (PostgREST) client. Every conditional update is an
``.update(...).eq("id", ...).eq("status", expected)`` whose returned rows
tell whether the write landed.

PostgREST has no multi-statement transactions, so multi-record units are
applied in sequence with the guarded row written first:

- batch joins bump ``current_quantity`` with a compare-and-set on the
  observed quantity, then insert the order
- errand assignment claims the errand row first, then accepts the
  application and rejects its siblings; a sweep finishes both
  (ErrandService.reconcile_applications) if the process dies in between
- refunds move the order first, then give back the batch quantity; a
  sweep recounts terminal batches (BatchService.recount_quantity)
- consuming a credit marks the entry used, then inserts its remainder;
  a failure in between is returned to the user by CreditsLedger
"""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client

from marketcore.batches.models import BatchStateTransition, BatchStatus, RegionalBatch
from marketcore.config import SettlementConfig
from marketcore.credits.models import CreditEntry, CreditSource
from marketcore.credits.referrals import Referral, ReferralStatus
from marketcore.errands.models import (
    ACTIVE_ERRAND_STATUSES,
    ApplicationStatus,
    Errand,
    ErrandApplication,
    ErrandRating,
    ErrandStateTransition,
    ErrandStatus,
)
from marketcore.errands.storage import StatusFilter, status_values
from marketcore.escrow.models import EscrowStatus, Order
from marketcore.storage.schema import validate_columns
from marketcore.types import utc_now
from marketcore.wallet.models import VendorWallet, WithdrawalRequest, WithdrawalStatus

logger = logging.getLogger(__name__)

# =============================================================================
# Table Names
# =============================================================================

ORDERS_TABLE = "orders"
BATCHES_TABLE = "batches"
BATCH_TRANSITIONS_TABLE = "batch_transitions"
ERRANDS_TABLE = "errands"
APPLICATIONS_TABLE = "errand_applications"
RATINGS_TABLE = "errand_ratings"
ERRAND_TRANSITIONS_TABLE = "errand_transitions"
CREDIT_ENTRIES_TABLE = "credit_entries"
REFERRALS_TABLE = "referrals"
WALLETS_TABLE = "vendor_wallets"
WITHDRAWALS_TABLE = "withdrawal_requests"

# Compare-and-set attempts on counters before giving up
MAX_COUNTER_ATTEMPTS = 10


def _to_json(value: Any) -> Any:
    """Convert a Python value to something PostgREST accepts."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _payload(updates: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: _to_json(v) for k, v in (updates or {}).items()}


def get_supabase_client(config: SettlementConfig) -> Client:
    """Create a Supabase client from engine settings."""
    if not config.supabase_url or not config.supabase_secret_key:
        raise ValueError("MARKETCORE_SUPABASE_URL and MARKETCORE_SUPABASE_SECRET_KEY must be set")
    return create_client(config.supabase_url, config.supabase_secret_key)


class SupabaseStore:
    """Supabase-backed storage for every marketcore subsystem."""

    def __init__(self, db: Client):
        self.db = db

    @classmethod
    def from_config(cls, config: SettlementConfig) -> "SupabaseStore":
        return cls(get_supabase_client(config))

    # === Generic helpers ===

    def _first(self, table: str, column: str, value: Any) -> Optional[Dict[str, Any]]:
        result = self.db.table(table).select("*").eq(column, value).limit(1).execute()
        return result.data[0] if result.data else None

    def _conditional_update(
        self,
        table: str,
        record_id: str,
        status_column: str,
        expected: Enum,
        data: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        result = (
            self.db.table(table)
            .update(data)
            .eq("id", record_id)
            .eq(status_column, expected.value)
            .execute()
        )
        return result.data[0] if result.data else None

    def _status_update(
        self,
        table: str,
        status_column: str,
        new_status: Enum,
        updates: Optional[Dict[str, Any]],
        touch: bool = True,
    ) -> Dict[str, Any]:
        validate_columns(table, (updates or {}).keys())
        data = _payload(updates)
        data[status_column] = new_status.value
        if touch:
            data["updated_at"] = utc_now().isoformat()
        return data

    def _adjust_quantity(self, batch_id: str, delta: int, require_active: bool) -> Optional[Dict[str, Any]]:
        """Add ``delta`` to a batch's quantity with compare-and-set on the observed value."""
        for _ in range(MAX_COUNTER_ATTEMPTS):
            row = self._first(BATCHES_TABLE, "id", batch_id)
            if row is None:
                return None
            if require_active and row["status"] != BatchStatus.ACTIVE.value:
                return None
            observed = int(row.get("current_quantity") or 0)
            query = (
                self.db.table(BATCHES_TABLE)
                .update(
                    {
                        "current_quantity": max(0, observed + delta),
                        "updated_at": utc_now().isoformat(),
                    }
                )
                .eq("id", batch_id)
                .eq("current_quantity", observed)
            )
            if require_active:
                query = query.eq("status", BatchStatus.ACTIVE.value)
            result = query.execute()
            if result.data:
                return result.data[0]
        logger.error(f"Could not adjust quantity of batch {batch_id} after {MAX_COUNTER_ATTEMPTS} attempts")
        return None

    # =========================================================================
    # ORDERS
    # =========================================================================

    def save_order(self, order: Order) -> str:
        self.db.table(ORDERS_TABLE).upsert(order.to_dict()).execute()
        return order.id

    def get_order(self, order_id: str) -> Optional[Order]:
        row = self._first(ORDERS_TABLE, "id", order_id)
        return Order.from_dict(row) if row else None

    def list_orders(
        self,
        batch_id: Optional[str] = None,
        batch_ids: Optional[Iterable[str]] = None,
        buyer_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        limit: int = 10000,
    ) -> List[Order]:
        query = self.db.table(ORDERS_TABLE).select("*")
        if batch_id is not None:
            query = query.eq("batch_id", batch_id)
        if batch_ids is not None:
            ids = list(batch_ids)
            if not ids:
                return []
            query = query.in_("batch_id", ids)
        if buyer_id is not None:
            query = query.eq("buyer_id", buyer_id)
        if status is not None:
            query = query.eq("escrow_status", EscrowStatus(status).value)
        result = query.order("created_at").limit(limit).execute()
        return [Order.from_dict(r) for r in result.data or []]

    def transition_order(
        self,
        order_id: str,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        new_status = EscrowStatus(new_status)
        data = self._status_update(ORDERS_TABLE, "escrow_status", new_status, updates)
        row = self._conditional_update(
            ORDERS_TABLE, order_id, "escrow_status", EscrowStatus(expected), data
        )
        if row is None:
            return None
        order = Order.from_dict(row)
        if new_status == EscrowStatus.REFUNDED:
            if self._adjust_quantity(order.batch_id, -order.quantity, require_active=False) is None:
                # The sweep recounts terminal batches (BatchService.recount_quantity)
                logger.error(
                    f"Refunded order {order_id} but could not give back its quantity "
                    f"on batch {order.batch_id}"
                )
        return order

    def record_order_error(self, order_id: str, error: Optional[str]) -> bool:
        result = (
            self.db.table(ORDERS_TABLE)
            .update({"last_error": error, "updated_at": utc_now().isoformat()})
            .eq("id", order_id)
            .execute()
        )
        return bool(result.data)

    # =========================================================================
    # BATCHES
    # =========================================================================

    def save_batch(self, batch: RegionalBatch) -> str:
        self.db.table(BATCHES_TABLE).upsert(batch.to_dict()).execute()
        return batch.id

    def get_batch(self, batch_id: str) -> Optional[RegionalBatch]:
        row = self._first(BATCHES_TABLE, "id", batch_id)
        return RegionalBatch.from_dict(row) if row else None

    def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        vendor_id: Optional[str] = None,
        listing_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[RegionalBatch]:
        query = self.db.table(BATCHES_TABLE).select("*")
        if status is not None:
            query = query.eq("status", BatchStatus(status).value)
        if vendor_id is not None:
            query = query.eq("vendor_id", vendor_id)
        if listing_id is not None:
            query = query.eq("listing_id", listing_id)
        result = query.order("created_at").limit(limit).execute()
        return [RegionalBatch.from_dict(r) for r in result.data or []]

    def transition_batch(
        self,
        batch_id: str,
        expected: BatchStatus,
        new_status: BatchStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[RegionalBatch]:
        data = self._status_update(BATCHES_TABLE, "status", BatchStatus(new_status), updates)
        row = self._conditional_update(BATCHES_TABLE, batch_id, "status", BatchStatus(expected), data)
        return RegionalBatch.from_dict(row) if row else None

    def add_order(self, order: Order) -> Optional[RegionalBatch]:
        row = self._adjust_quantity(order.batch_id, order.quantity, require_active=True)
        if row is None:
            return None
        try:
            self.db.table(ORDERS_TABLE).insert(order.to_dict()).execute()
        except Exception:
            # Give the quantity back before surfacing the failure
            self._adjust_quantity(order.batch_id, -order.quantity, require_active=False)
            raise
        return RegionalBatch.from_dict(row)

    def reset_quantity(self, batch_id: str, observed: int, quantity: int) -> bool:
        result = (
            self.db.table(BATCHES_TABLE)
            .update({"current_quantity": quantity, "updated_at": utc_now().isoformat()})
            .eq("id", batch_id)
            .eq("current_quantity", observed)
            .execute()
        )
        return bool(result.data)

    def save_batch_transition(self, transition: BatchStateTransition) -> str:
        self.db.table(BATCH_TRANSITIONS_TABLE).insert(transition.to_dict()).execute()
        return transition.id

    def get_batch_transitions(self, batch_id: str) -> List[BatchStateTransition]:
        result = (
            self.db.table(BATCH_TRANSITIONS_TABLE)
            .select("*")
            .eq("batch_id", batch_id)
            .order("created_at")
            .execute()
        )
        return [BatchStateTransition.from_dict(r) for r in result.data or []]

    # =========================================================================
    # ERRANDS
    # =========================================================================

    def save_errand(self, errand: Errand) -> str:
        self.db.table(ERRANDS_TABLE).upsert(errand.to_dict()).execute()
        return errand.id

    def get_errand(self, errand_id: str) -> Optional[Errand]:
        row = self._first(ERRANDS_TABLE, "id", errand_id)
        return Errand.from_dict(row) if row else None

    def list_errands(
        self,
        status: StatusFilter = None,
        requester_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        payment_released: Optional[bool] = None,
        limit: int = 1000,
    ) -> List[Errand]:
        query = self.db.table(ERRANDS_TABLE).select("*")
        wanted = status_values(status)
        if wanted is not None:
            query = query.in_("status", sorted(wanted))
        if requester_id is not None:
            query = query.eq("requester_id", requester_id)
        if helper_id is not None:
            query = query.eq("assigned_helper_id", helper_id)
        if payment_released is not None:
            query = query.eq("payment_released", payment_released)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [Errand.from_dict(r) for r in result.data or []]

    def count_active_errands(self, helper_id: str) -> int:
        result = (
            self.db.table(ERRANDS_TABLE)
            .select("id", count="exact")
            .eq("assigned_helper_id", helper_id)
            .in_("status", sorted(s.value for s in ACTIVE_ERRAND_STATUSES))
            .execute()
        )
        if result.count is not None:
            return int(result.count)
        return len(result.data or [])

    def transition_errand(
        self,
        errand_id: str,
        expected: ErrandStatus,
        new_status: ErrandStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Errand]:
        data = self._status_update(ERRANDS_TABLE, "status", ErrandStatus(new_status), updates)
        row = self._conditional_update(ERRANDS_TABLE, errand_id, "status", ErrandStatus(expected), data)
        return Errand.from_dict(row) if row else None

    def assign_errand(self, errand_id: str, application_id: str) -> Optional[Errand]:
        app_row = self._first(APPLICATIONS_TABLE, "id", application_id)
        if (
            app_row is None
            or app_row["errand_id"] != errand_id
            or app_row["status"] != ApplicationStatus.PENDING.value
        ):
            return None

        now = utc_now().isoformat()
        result = (
            self.db.table(ERRANDS_TABLE)
            .update(
                {
                    "status": ErrandStatus.ASSIGNED.value,
                    "assigned_helper_id": app_row["helper_id"],
                    "assigned_at": now,
                    "updated_at": now,
                }
            )
            .eq("id", errand_id)
            .eq("status", ErrandStatus.OPEN.value)
            .is_("assigned_helper_id", "null")
            .execute()
        )
        if not result.data:
            return None

        self.db.table(APPLICATIONS_TABLE).update({"status": ApplicationStatus.ACCEPTED.value}).eq(
            "id", application_id
        ).execute()
        self.db.table(APPLICATIONS_TABLE).update({"status": ApplicationStatus.REJECTED.value}).eq(
            "errand_id", errand_id
        ).eq("status", ApplicationStatus.PENDING.value).neq("id", application_id).execute()
        return Errand.from_dict(result.data[0])

    def cancel_errand(self, errand_id: str, expected: ErrandStatus) -> Optional[Errand]:
        data = {
            "status": ErrandStatus.CANCELLED.value,
            "assigned_helper_id": None,
            "updated_at": utc_now().isoformat(),
        }
        row = self._conditional_update(ERRANDS_TABLE, errand_id, "status", ErrandStatus(expected), data)
        if row is None:
            return None
        self.reject_pending_applications(errand_id)
        return Errand.from_dict(row)

    def mark_payment_released(self, errand_id: str, released_at: datetime) -> bool:
        result = (
            self.db.table(ERRANDS_TABLE)
            .update(
                {
                    "payment_released": True,
                    "payment_released_at": released_at.isoformat(),
                    "updated_at": utc_now().isoformat(),
                }
            )
            .eq("id", errand_id)
            .eq("status", ErrandStatus.COMPLETED.value)
            .eq("payment_released", False)
            .execute()
        )
        return bool(result.data)

    def clear_payment_released(self, errand_id: str) -> bool:
        result = (
            self.db.table(ERRANDS_TABLE)
            .update(
                {
                    "payment_released": False,
                    "payment_released_at": None,
                    "updated_at": utc_now().isoformat(),
                }
            )
            .eq("id", errand_id)
            .eq("payment_released", True)
            .execute()
        )
        return bool(result.data)

    # === Applications ===

    def save_application(self, application: ErrandApplication) -> str:
        self.db.table(APPLICATIONS_TABLE).upsert(application.to_dict()).execute()
        return application.id

    def get_application(self, application_id: str) -> Optional[ErrandApplication]:
        row = self._first(APPLICATIONS_TABLE, "id", application_id)
        return ErrandApplication.from_dict(row) if row else None

    def list_applications(
        self,
        errand_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
        limit: int = 1000,
    ) -> List[ErrandApplication]:
        query = self.db.table(APPLICATIONS_TABLE).select("*")
        if errand_id is not None:
            query = query.eq("errand_id", errand_id)
        if helper_id is not None:
            query = query.eq("helper_id", helper_id)
        if status is not None:
            query = query.eq("status", ApplicationStatus(status).value)
        result = query.order("created_at").limit(limit).execute()
        return [ErrandApplication.from_dict(r) for r in result.data or []]

    def accept_application(self, application_id: str) -> bool:
        result = (
            self.db.table(APPLICATIONS_TABLE)
            .update({"status": ApplicationStatus.ACCEPTED.value})
            .eq("id", application_id)
            .eq("status", ApplicationStatus.PENDING.value)
            .execute()
        )
        return bool(result.data)

    def reject_pending_applications(self, errand_id: str) -> int:
        result = (
            self.db.table(APPLICATIONS_TABLE)
            .update({"status": ApplicationStatus.REJECTED.value})
            .eq("errand_id", errand_id)
            .eq("status", ApplicationStatus.PENDING.value)
            .execute()
        )
        return len(result.data or [])

    # === Ratings ===

    def upsert_rating(self, rating: ErrandRating) -> ErrandRating:
        # The (errand_id, rater_id) unique key decides; a concurrent second
        # insert becomes an update of the same row
        result = (
            self.db.table(RATINGS_TABLE)
            .upsert(rating.to_dict(), on_conflict="errand_id,rater_id", ignore_duplicates=True)
            .execute()
        )
        if not result.data:
            result = (
                self.db.table(RATINGS_TABLE)
                .update(
                    {
                        "rating": rating.rating,
                        "comment": rating.comment,
                        "updated_at": utc_now().isoformat(),
                    }
                )
                .eq("errand_id", rating.errand_id)
                .eq("rater_id", rating.rater_id)
                .execute()
            )
        return ErrandRating.from_dict(result.data[0]) if result.data else rating

    def get_rating(self, errand_id: str, rater_id: str) -> Optional[ErrandRating]:
        result = (
            self.db.table(RATINGS_TABLE)
            .select("*")
            .eq("errand_id", errand_id)
            .eq("rater_id", rater_id)
            .limit(1)
            .execute()
        )
        return ErrandRating.from_dict(result.data[0]) if result.data else None

    def list_ratings(self, rated_id: str) -> List[ErrandRating]:
        result = (
            self.db.table(RATINGS_TABLE)
            .select("*")
            .eq("rated_id", rated_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [ErrandRating.from_dict(r) for r in result.data or []]

    # === Transitions ===

    def save_errand_transition(self, transition: ErrandStateTransition) -> str:
        self.db.table(ERRAND_TRANSITIONS_TABLE).insert(transition.to_dict()).execute()
        return transition.id

    def get_errand_transitions(self, errand_id: str) -> List[ErrandStateTransition]:
        result = (
            self.db.table(ERRAND_TRANSITIONS_TABLE)
            .select("*")
            .eq("errand_id", errand_id)
            .order("created_at")
            .execute()
        )
        return [ErrandStateTransition.from_dict(r) for r in result.data or []]

    # =========================================================================
    # CREDITS
    # =========================================================================

    def save_entry(self, entry: CreditEntry) -> str:
        self.db.table(CREDIT_ENTRIES_TABLE).insert(entry.to_dict()).execute()
        return entry.id

    def get_entry(self, entry_id: str) -> Optional[CreditEntry]:
        row = self._first(CREDIT_ENTRIES_TABLE, "id", entry_id)
        return CreditEntry.from_dict(row) if row else None

    def list_entries(
        self,
        user_id: Optional[str] = None,
        unused_only: bool = False,
        source: Optional[CreditSource] = None,
        referral_id: Optional[str] = None,
        limit: int = 10000,
    ) -> List[CreditEntry]:
        query = self.db.table(CREDIT_ENTRIES_TABLE).select("*")
        if user_id is not None:
            query = query.eq("user_id", user_id)
        if unused_only:
            query = query.is_("used_at", "null")
        if source is not None:
            query = query.eq("source", CreditSource(source).value)
        if referral_id is not None:
            query = query.eq("referral_id", referral_id)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [CreditEntry.from_dict(r) for r in result.data or []]

    def save_entry_if_absent(self, entry: CreditEntry) -> bool:
        result = (
            self.db.table(CREDIT_ENTRIES_TABLE)
            .upsert(entry.to_dict(), on_conflict="id", ignore_duplicates=True)
            .execute()
        )
        return bool(result.data)

    def consume_entry(
        self,
        entry_id: str,
        order_id: str,
        used_at: datetime,
        remainder: Optional[CreditEntry] = None,
    ) -> bool:
        result = (
            self.db.table(CREDIT_ENTRIES_TABLE)
            .update({"used_at": used_at.isoformat(), "order_id": order_id})
            .eq("id", entry_id)
            .is_("used_at", "null")
            .execute()
        )
        if not result.data:
            return False
        if remainder is not None:
            self.save_entry_if_absent(remainder)
        return True

    # === Referrals ===

    def save_referral(self, referral: Referral) -> str:
        self.db.table(REFERRALS_TABLE).upsert(referral.to_dict()).execute()
        return referral.id

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        row = self._first(REFERRALS_TABLE, "id", referral_id)
        return Referral.from_dict(row) if row else None

    def get_referral_by_code(self, code: str) -> Optional[Referral]:
        row = self._first(REFERRALS_TABLE, "referral_code", code)
        return Referral.from_dict(row) if row else None

    def list_referrals(
        self,
        referrer_id: Optional[str] = None,
        referred_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
    ) -> List[Referral]:
        query = self.db.table(REFERRALS_TABLE).select("*")
        if referrer_id is not None:
            query = query.eq("referrer_id", referrer_id)
        if referred_id is not None:
            query = query.eq("referred_id", referred_id)
        if status is not None:
            query = query.eq("status", ReferralStatus(status).value)
        result = query.order("created_at", desc=True).execute()
        return [Referral.from_dict(r) for r in result.data or []]

    def transition_referral(
        self,
        referral_id: str,
        expected: ReferralStatus,
        new_status: ReferralStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Referral]:
        data = self._status_update(
            REFERRALS_TABLE, "status", ReferralStatus(new_status), updates, touch=False
        )
        row = self._conditional_update(
            REFERRALS_TABLE, referral_id, "status", ReferralStatus(expected), data
        )
        return Referral.from_dict(row) if row else None

    # =========================================================================
    # WALLET
    # =========================================================================

    def get_wallet_snapshot(self, vendor_id: str) -> Optional[VendorWallet]:
        row = self._first(WALLETS_TABLE, "vendor_id", vendor_id)
        return VendorWallet.from_dict(row) if row else None

    def save_wallet_snapshot(self, wallet: VendorWallet) -> None:
        self.db.table(WALLETS_TABLE).upsert(wallet.to_dict(), on_conflict="vendor_id").execute()

    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> str:
        self.db.table(WITHDRAWALS_TABLE).insert(withdrawal.to_dict()).execute()
        return withdrawal.id

    def get_withdrawal(self, withdrawal_id: str) -> Optional[WithdrawalRequest]:
        row = self._first(WITHDRAWALS_TABLE, "id", withdrawal_id)
        return WithdrawalRequest.from_dict(row) if row else None

    def list_withdrawals(
        self,
        vendor_id: str,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 1000,
    ) -> List[WithdrawalRequest]:
        query = self.db.table(WITHDRAWALS_TABLE).select("*").eq("vendor_id", vendor_id)
        if status is not None:
            query = query.eq("status", WithdrawalStatus(status).value)
        result = query.order("requested_at", desc=True).limit(limit).execute()
        return [WithdrawalRequest.from_dict(r) for r in result.data or []]
