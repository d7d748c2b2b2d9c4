"""SQLite storage backend for marketcore.

One database file holds every subsystem's records, so multi-record units
(joining a batch, refunding an order, assigning an errand) run in one
transaction. Conditional updates are ``UPDATE ... WHERE id = ? AND
status = ?`` checked through ``rowcount``: the write lands only if the
record is still in the status the caller observed.

Implements OrderStorage, BatchStorage, ErrandStorage, CreditStorage,
ReferralStorage and WalletStorage.
"""

import contextlib
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from marketcore.batches.models import BatchStateTransition, BatchStatus, RegionalBatch
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
from marketcore.storage.schema import init_db, validate_columns
from marketcore.types import utc_now
from marketcore.wallet.models import VendorWallet, WithdrawalRequest, WithdrawalStatus

logger = logging.getLogger(__name__)


def _to_db(value: Any) -> Any:
    """Convert a Python value to its SQLite representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _where(clauses: List[Tuple[str, Any]]) -> Tuple[str, List[Any]]:
    """Build a WHERE clause from (sql, param) pairs. A None param means no placeholder."""
    if not clauses:
        return "", []
    sql = " WHERE " + " AND ".join(c for c, _ in clauses)
    params = [_to_db(p) for _, p in clauses if p is not None]
    return sql, params


class SQLiteStore:
    """SQLite-backed storage for every marketcore subsystem."""

    def __init__(self, db_path: str):
        self.db_path = self._validate_db_path(db_path)
        with self._connect() as conn:
            init_db(conn)

    def _validate_db_path(self, db_path: str) -> str:
        if db_path == ":memory:":
            raise ValueError("SQLiteStore needs a file path; use the in-memory storages instead")
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection.

        Prefer the _connect() context manager, which also commits or rolls
        back and closes the connection.
        """
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles the transaction and closes the connection."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; nothing to close."""
        pass

    # === Generic helpers ===

    def _upsert(self, conn: sqlite3.Connection, table: str, data: Dict[str, Any]) -> None:
        columns = list(data.keys())
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [_to_db(data[c]) for c in columns],
        )

    def _set_clause(
        self, table: str, status_column: str, new_status: Enum, updates: Optional[Dict[str, Any]]
    ) -> Tuple[str, List[Any]]:
        updates = dict(updates or {})
        validate_columns(table, updates.keys())
        assignments = [f"{status_column} = ?"]
        params: List[Any] = [new_status.value]
        if table != "referrals":
            assignments.append("updated_at = ?")
            params.append(utc_now().isoformat())
        for column, value in updates.items():
            assignments.append(f"{column} = ?")
            params.append(_to_db(value))
        return ", ".join(assignments), params

    def _fetch_one(self, conn: sqlite3.Connection, sql: str, params: Iterable[Any]):
        return conn.execute(sql, list(params)).fetchone()

    # =========================================================================
    # ORDERS
    # =========================================================================

    def save_order(self, order: Order) -> str:
        with self._connect() as conn:
            self._upsert(conn, "orders", order.to_dict())
        return order.id

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._connect() as conn:
            row = self._fetch_one(conn, "SELECT * FROM orders WHERE id = ?", [order_id])
        return Order.from_dict(dict(row)) if row else None

    def list_orders(
        self,
        batch_id: Optional[str] = None,
        batch_ids: Optional[Iterable[str]] = None,
        buyer_id: Optional[str] = None,
        status: Optional[EscrowStatus] = None,
        limit: int = 10000,
    ) -> List[Order]:
        clauses: List[Tuple[str, Any]] = []
        extra: List[Any] = []
        if batch_id is not None:
            clauses.append(("batch_id = ?", batch_id))
        if buyer_id is not None:
            clauses.append(("buyer_id = ?", buyer_id))
        if status is not None:
            clauses.append(("escrow_status = ?", EscrowStatus(status).value))
        where, params = _where(clauses)
        if batch_ids is not None:
            ids = list(batch_ids)
            if not ids:
                return []
            in_clause = f"batch_id IN ({', '.join('?' for _ in ids)})"
            where = f"{where} AND {in_clause}" if where else f" WHERE {in_clause}"
            extra = ids
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM orders{where} ORDER BY created_at ASC LIMIT ?",
                params + extra + [limit],
            ).fetchall()
        return [Order.from_dict(dict(r)) for r in rows]

    def transition_order(
        self,
        order_id: str,
        expected: EscrowStatus,
        new_status: EscrowStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        new_status = EscrowStatus(new_status)
        assignments, params = self._set_clause("orders", "escrow_status", new_status, updates)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE orders SET {assignments} WHERE id = ? AND escrow_status = ?",
                params + [order_id, EscrowStatus(expected).value],
            )
            if cursor.rowcount == 0:
                return None
            if new_status == EscrowStatus.REFUNDED:
                conn.execute(
                    """UPDATE batches
                       SET current_quantity = MAX(0, current_quantity -
                           (SELECT quantity FROM orders WHERE id = ?)),
                           updated_at = ?
                       WHERE id = (SELECT batch_id FROM orders WHERE id = ?)""",
                    [order_id, utc_now().isoformat(), order_id],
                )
            row = self._fetch_one(conn, "SELECT * FROM orders WHERE id = ?", [order_id])
        return Order.from_dict(dict(row))

    def record_order_error(self, order_id: str, error: Optional[str]) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE orders SET last_error = ?, updated_at = ? WHERE id = ?",
                [error, utc_now().isoformat(), order_id],
            )
        return cursor.rowcount > 0

    # =========================================================================
    # BATCHES
    # =========================================================================

    def save_batch(self, batch: RegionalBatch) -> str:
        with self._connect() as conn:
            self._upsert(conn, "batches", batch.to_dict())
        return batch.id

    def get_batch(self, batch_id: str) -> Optional[RegionalBatch]:
        with self._connect() as conn:
            row = self._fetch_one(conn, "SELECT * FROM batches WHERE id = ?", [batch_id])
        return RegionalBatch.from_dict(dict(row)) if row else None

    def list_batches(
        self,
        status: Optional[BatchStatus] = None,
        vendor_id: Optional[str] = None,
        listing_id: Optional[str] = None,
        limit: int = 1000,
    ) -> List[RegionalBatch]:
        clauses: List[Tuple[str, Any]] = []
        if status is not None:
            clauses.append(("status = ?", BatchStatus(status).value))
        if vendor_id is not None:
            clauses.append(("vendor_id = ?", vendor_id))
        if listing_id is not None:
            clauses.append(("listing_id = ?", listing_id))
        where, params = _where(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM batches{where} ORDER BY created_at ASC LIMIT ?", params + [limit]
            ).fetchall()
        return [RegionalBatch.from_dict(dict(r)) for r in rows]

    def transition_batch(
        self,
        batch_id: str,
        expected: BatchStatus,
        new_status: BatchStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[RegionalBatch]:
        assignments, params = self._set_clause(
            "batches", "status", BatchStatus(new_status), updates
        )
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE batches SET {assignments} WHERE id = ? AND status = ?",
                params + [batch_id, BatchStatus(expected).value],
            )
            if cursor.rowcount == 0:
                return None
            row = self._fetch_one(conn, "SELECT * FROM batches WHERE id = ?", [batch_id])
        return RegionalBatch.from_dict(dict(row))

    def add_order(self, order: Order) -> Optional[RegionalBatch]:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE batches
                   SET current_quantity = current_quantity + ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                [order.quantity, utc_now().isoformat(), order.batch_id, BatchStatus.ACTIVE.value],
            )
            if cursor.rowcount == 0:
                return None
            self._upsert(conn, "orders", order.to_dict())
            row = self._fetch_one(conn, "SELECT * FROM batches WHERE id = ?", [order.batch_id])
        return RegionalBatch.from_dict(dict(row))

    def reset_quantity(self, batch_id: str, observed: int, quantity: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE batches SET current_quantity = ?, updated_at = ? "
                "WHERE id = ? AND current_quantity = ?",
                [quantity, utc_now().isoformat(), batch_id, observed],
            )
        return cursor.rowcount > 0

    def save_batch_transition(self, transition: BatchStateTransition) -> str:
        with self._connect() as conn:
            self._upsert(conn, "batch_transitions", transition.to_dict())
        return transition.id

    def get_batch_transitions(self, batch_id: str) -> List[BatchStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM batch_transitions WHERE batch_id = ? ORDER BY created_at ASC",
                [batch_id],
            ).fetchall()
        return [BatchStateTransition.from_dict(dict(r)) for r in rows]

    # =========================================================================
    # ERRANDS
    # =========================================================================

    def save_errand(self, errand: Errand) -> str:
        with self._connect() as conn:
            self._upsert(conn, "errands", errand.to_dict())
        return errand.id

    def get_errand(self, errand_id: str) -> Optional[Errand]:
        with self._connect() as conn:
            row = self._fetch_one(conn, "SELECT * FROM errands WHERE id = ?", [errand_id])
        return Errand.from_dict(dict(row)) if row else None

    def list_errands(
        self,
        status: StatusFilter = None,
        requester_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        payment_released: Optional[bool] = None,
        limit: int = 1000,
    ) -> List[Errand]:
        clauses: List[Tuple[str, Any]] = []
        wanted = status_values(status)
        if requester_id is not None:
            clauses.append(("requester_id = ?", requester_id))
        if helper_id is not None:
            clauses.append(("assigned_helper_id = ?", helper_id))
        if payment_released is not None:
            clauses.append(("payment_released = ?", payment_released))
        where, params = _where(clauses)
        if wanted is not None:
            values = sorted(wanted)
            in_clause = f"status IN ({', '.join('?' for _ in values)})"
            where = f"{where} AND {in_clause}" if where else f" WHERE {in_clause}"
            params += values
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM errands{where} ORDER BY created_at DESC LIMIT ?", params + [limit]
            ).fetchall()
        return [Errand.from_dict(dict(r)) for r in rows]

    def count_active_errands(self, helper_id: str) -> int:
        values = sorted(s.value for s in ACTIVE_ERRAND_STATUSES)
        with self._connect() as conn:
            row = self._fetch_one(
                conn,
                f"SELECT COUNT(*) FROM errands WHERE assigned_helper_id = ? "
                f"AND status IN ({', '.join('?' for _ in values)})",
                [helper_id] + values,
            )
        return int(row[0])

    def transition_errand(
        self,
        errand_id: str,
        expected: ErrandStatus,
        new_status: ErrandStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Errand]:
        assignments, params = self._set_clause(
            "errands", "status", ErrandStatus(new_status), updates
        )
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE errands SET {assignments} WHERE id = ? AND status = ?",
                params + [errand_id, ErrandStatus(expected).value],
            )
            if cursor.rowcount == 0:
                return None
            row = self._fetch_one(conn, "SELECT * FROM errands WHERE id = ?", [errand_id])
        return Errand.from_dict(dict(row))

    def assign_errand(self, errand_id: str, application_id: str) -> Optional[Errand]:
        now = utc_now().isoformat()
        pending = ApplicationStatus.PENDING.value
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE errands
                   SET status = ?, assigned_at = ?, updated_at = ?,
                       assigned_helper_id = (
                           SELECT helper_id FROM errand_applications
                           WHERE id = ? AND errand_id = ? AND status = ?)
                   WHERE id = ? AND status = ? AND assigned_helper_id IS NULL
                     AND EXISTS (
                           SELECT 1 FROM errand_applications
                           WHERE id = ? AND errand_id = ? AND status = ?)""",
                [
                    ErrandStatus.ASSIGNED.value,
                    now,
                    now,
                    application_id,
                    errand_id,
                    pending,
                    errand_id,
                    ErrandStatus.OPEN.value,
                    application_id,
                    errand_id,
                    pending,
                ],
            )
            if cursor.rowcount == 0:
                return None
            conn.execute(
                "UPDATE errand_applications SET status = ? WHERE id = ?",
                [ApplicationStatus.ACCEPTED.value, application_id],
            )
            conn.execute(
                "UPDATE errand_applications SET status = ? "
                "WHERE errand_id = ? AND id != ? AND status = ?",
                [ApplicationStatus.REJECTED.value, errand_id, application_id, pending],
            )
            row = self._fetch_one(conn, "SELECT * FROM errands WHERE id = ?", [errand_id])
        return Errand.from_dict(dict(row))

    def cancel_errand(self, errand_id: str, expected: ErrandStatus) -> Optional[Errand]:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE errands
                   SET status = ?, assigned_helper_id = NULL, updated_at = ?
                   WHERE id = ? AND status = ?""",
                [
                    ErrandStatus.CANCELLED.value,
                    utc_now().isoformat(),
                    errand_id,
                    ErrandStatus(expected).value,
                ],
            )
            if cursor.rowcount == 0:
                return None
            conn.execute(
                "UPDATE errand_applications SET status = ? WHERE errand_id = ? AND status = ?",
                [ApplicationStatus.REJECTED.value, errand_id, ApplicationStatus.PENDING.value],
            )
            row = self._fetch_one(conn, "SELECT * FROM errands WHERE id = ?", [errand_id])
        return Errand.from_dict(dict(row))

    def mark_payment_released(self, errand_id: str, released_at: datetime) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE errands
                   SET payment_released = 1, payment_released_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND payment_released = 0""",
                [
                    released_at.isoformat(),
                    utc_now().isoformat(),
                    errand_id,
                    ErrandStatus.COMPLETED.value,
                ],
            )
        return cursor.rowcount > 0

    def clear_payment_released(self, errand_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE errands
                   SET payment_released = 0, payment_released_at = NULL, updated_at = ?
                   WHERE id = ? AND payment_released = 1""",
                [utc_now().isoformat(), errand_id],
            )
        return cursor.rowcount > 0

    # === Applications ===

    def save_application(self, application: ErrandApplication) -> str:
        with self._connect() as conn:
            self._upsert(conn, "errand_applications", application.to_dict())
        return application.id

    def get_application(self, application_id: str) -> Optional[ErrandApplication]:
        with self._connect() as conn:
            row = self._fetch_one(
                conn, "SELECT * FROM errand_applications WHERE id = ?", [application_id]
            )
        return ErrandApplication.from_dict(dict(row)) if row else None

    def list_applications(
        self,
        errand_id: Optional[str] = None,
        helper_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
        limit: int = 1000,
    ) -> List[ErrandApplication]:
        clauses: List[Tuple[str, Any]] = []
        if errand_id is not None:
            clauses.append(("errand_id = ?", errand_id))
        if helper_id is not None:
            clauses.append(("helper_id = ?", helper_id))
        if status is not None:
            clauses.append(("status = ?", ApplicationStatus(status).value))
        where, params = _where(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM errand_applications{where} ORDER BY created_at ASC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [ErrandApplication.from_dict(dict(r)) for r in rows]

    def accept_application(self, application_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE errand_applications SET status = ? WHERE id = ? AND status = ?",
                [ApplicationStatus.ACCEPTED.value, application_id, ApplicationStatus.PENDING.value],
            )
        return cursor.rowcount > 0

    def reject_pending_applications(self, errand_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE errand_applications SET status = ? WHERE errand_id = ? AND status = ?",
                [ApplicationStatus.REJECTED.value, errand_id, ApplicationStatus.PENDING.value],
            )
        return cursor.rowcount

    # === Ratings ===

    def upsert_rating(self, rating: ErrandRating) -> ErrandRating:
        data = rating.to_dict()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO errand_ratings
                       (id, errand_id, rater_id, rated_id, rating, comment, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (errand_id, rater_id) DO UPDATE SET
                       rating = excluded.rating,
                       comment = excluded.comment,
                       updated_at = excluded.updated_at""",
                [
                    data["id"],
                    data["errand_id"],
                    data["rater_id"],
                    data["rated_id"],
                    data["rating"],
                    data["comment"],
                    data["created_at"],
                    data["updated_at"],
                ],
            )
            row = self._fetch_one(
                conn,
                "SELECT * FROM errand_ratings WHERE errand_id = ? AND rater_id = ?",
                [rating.errand_id, rating.rater_id],
            )
        return ErrandRating.from_dict(dict(row))

    def get_rating(self, errand_id: str, rater_id: str) -> Optional[ErrandRating]:
        with self._connect() as conn:
            row = self._fetch_one(
                conn,
                "SELECT * FROM errand_ratings WHERE errand_id = ? AND rater_id = ?",
                [errand_id, rater_id],
            )
        return ErrandRating.from_dict(dict(row)) if row else None

    def list_ratings(self, rated_id: str) -> List[ErrandRating]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM errand_ratings WHERE rated_id = ? ORDER BY created_at DESC",
                [rated_id],
            ).fetchall()
        return [ErrandRating.from_dict(dict(r)) for r in rows]

    # === Transitions ===

    def save_errand_transition(self, transition: ErrandStateTransition) -> str:
        with self._connect() as conn:
            self._upsert(conn, "errand_transitions", transition.to_dict())
        return transition.id

    def get_errand_transitions(self, errand_id: str) -> List[ErrandStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM errand_transitions WHERE errand_id = ? ORDER BY created_at ASC",
                [errand_id],
            ).fetchall()
        return [ErrandStateTransition.from_dict(dict(r)) for r in rows]

    # =========================================================================
    # CREDITS
    # =========================================================================

    def save_entry(self, entry: CreditEntry) -> str:
        with self._connect() as conn:
            self._upsert(conn, "credit_entries", entry.to_dict())
        return entry.id

    def get_entry(self, entry_id: str) -> Optional[CreditEntry]:
        with self._connect() as conn:
            row = self._fetch_one(conn, "SELECT * FROM credit_entries WHERE id = ?", [entry_id])
        return CreditEntry.from_dict(dict(row)) if row else None

    def list_entries(
        self,
        user_id: Optional[str] = None,
        unused_only: bool = False,
        source: Optional[CreditSource] = None,
        referral_id: Optional[str] = None,
        limit: int = 10000,
    ) -> List[CreditEntry]:
        clauses: List[Tuple[str, Any]] = []
        if user_id is not None:
            clauses.append(("user_id = ?", user_id))
        if unused_only:
            clauses.append(("used_at IS NULL", None))
        if source is not None:
            clauses.append(("source = ?", CreditSource(source).value))
        if referral_id is not None:
            clauses.append(("referral_id = ?", referral_id))
        where, params = _where(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM credit_entries{where} ORDER BY created_at DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [CreditEntry.from_dict(dict(r)) for r in rows]

    def save_entry_if_absent(self, entry: CreditEntry) -> bool:
        data = entry.to_dict()
        columns = list(data.keys())
        placeholders = ", ".join("?" for _ in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO credit_entries ({', '.join(columns)}) "
                f"VALUES ({placeholders})",
                [_to_db(data[c]) for c in columns],
            )
        return cursor.rowcount > 0

    def consume_entry(
        self,
        entry_id: str,
        order_id: str,
        used_at: datetime,
        remainder: Optional[CreditEntry] = None,
    ) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE credit_entries SET used_at = ?, order_id = ? WHERE id = ? AND used_at IS NULL",
                [used_at.isoformat(), order_id, entry_id],
            )
            if cursor.rowcount == 0:
                return False
            if remainder is not None:
                self._upsert(conn, "credit_entries", remainder.to_dict())
        return True

    # === Referrals ===

    def save_referral(self, referral: Referral) -> str:
        with self._connect() as conn:
            self._upsert(conn, "referrals", referral.to_dict())
        return referral.id

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        with self._connect() as conn:
            row = self._fetch_one(conn, "SELECT * FROM referrals WHERE id = ?", [referral_id])
        return Referral.from_dict(dict(row)) if row else None

    def get_referral_by_code(self, code: str) -> Optional[Referral]:
        with self._connect() as conn:
            row = self._fetch_one(conn, "SELECT * FROM referrals WHERE referral_code = ?", [code])
        return Referral.from_dict(dict(row)) if row else None

    def list_referrals(
        self,
        referrer_id: Optional[str] = None,
        referred_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
    ) -> List[Referral]:
        clauses: List[Tuple[str, Any]] = []
        if referrer_id is not None:
            clauses.append(("referrer_id = ?", referrer_id))
        if referred_id is not None:
            clauses.append(("referred_id = ?", referred_id))
        if status is not None:
            clauses.append(("status = ?", ReferralStatus(status).value))
        where, params = _where(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM referrals{where} ORDER BY created_at DESC", params
            ).fetchall()
        return [Referral.from_dict(dict(r)) for r in rows]

    def transition_referral(
        self,
        referral_id: str,
        expected: ReferralStatus,
        new_status: ReferralStatus,
        updates: Optional[Dict[str, Any]] = None,
    ) -> Optional[Referral]:
        assignments, params = self._set_clause(
            "referrals", "status", ReferralStatus(new_status), updates
        )
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE referrals SET {assignments} WHERE id = ? AND status = ?",
                params + [referral_id, ReferralStatus(expected).value],
            )
            if cursor.rowcount == 0:
                return None
            row = self._fetch_one(conn, "SELECT * FROM referrals WHERE id = ?", [referral_id])
        return Referral.from_dict(dict(row))

    # =========================================================================
    # WALLET
    # =========================================================================

    def get_wallet_snapshot(self, vendor_id: str) -> Optional[VendorWallet]:
        with self._connect() as conn:
            row = self._fetch_one(
                conn, "SELECT * FROM vendor_wallets WHERE vendor_id = ?", [vendor_id]
            )
        return VendorWallet.from_dict(dict(row)) if row else None

    def save_wallet_snapshot(self, wallet: VendorWallet) -> None:
        with self._connect() as conn:
            self._upsert(conn, "vendor_wallets", wallet.to_dict())

    def save_withdrawal(self, withdrawal: WithdrawalRequest) -> str:
        with self._connect() as conn:
            self._upsert(conn, "withdrawal_requests", withdrawal.to_dict())
        return withdrawal.id

    def get_withdrawal(self, withdrawal_id: str) -> Optional[WithdrawalRequest]:
        with self._connect() as conn:
            row = self._fetch_one(
                conn, "SELECT * FROM withdrawal_requests WHERE id = ?", [withdrawal_id]
            )
        return WithdrawalRequest.from_dict(dict(row)) if row else None

    def list_withdrawals(
        self,
        vendor_id: str,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 1000,
    ) -> List[WithdrawalRequest]:
        clauses: List[Tuple[str, Any]] = [("vendor_id = ?", vendor_id)]
        if status is not None:
            clauses.append(("status = ?", WithdrawalStatus(status).value))
        where, params = _where(clauses)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM withdrawal_requests{where} ORDER BY requested_at DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [WithdrawalRequest.from_dict(dict(r)) for r in rows]
