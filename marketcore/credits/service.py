"""
Credits ledger.

Issues expiring credit entries and consumes them against orders.

Consumption is use-it-or-lose-it: entries that expire soonest are used
first, then the oldest. An entry is never split in place; when only part
of it is needed it is marked fully used and the rest is minted as a new
entry that keeps the original source, lineage and expiry.
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from marketcore.config import SettlementConfig
from marketcore.credits.models import CreditEntry, CreditSource, keyed_entry_id
from marketcore.credits.storage import CreditStorage
from marketcore.protocols import MarketcoreError
from marketcore.types import ZERO, to_money, utc_now

logger = logging.getLogger(__name__)

# Expiry sort key for entries that never expire
_NEVER = datetime.max.replace(tzinfo=timezone.utc)


class CreditsError(MarketcoreError):
    """Base exception for credit ledger operations."""

    pass


class InsufficientCreditsError(CreditsError):
    """Available credits do not cover the requested amount."""

    def __init__(self, user_id: str, requested: Decimal, available: Decimal):
        self.user_id = user_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credits for {user_id}: requested {requested}, available {available}"
        )


def _consumption_order(entry: CreditEntry):
    return (entry.expires_at or _NEVER, entry.created_at)


class CreditsLedger:
    """Issuance, balance and consumption of user credits."""

    def __init__(self, storage: CreditStorage, config: Optional[SettlementConfig] = None):
        self.storage = storage
        self.config = config or SettlementConfig()
        # Applications for one user run one at a time in this process
        self._user_locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks[user_id]

    def issue(
        self,
        user_id: str,
        amount,
        source: CreditSource,
        referral_id: Optional[str] = None,
    ) -> CreditEntry:
        """Issue a new credit entry that expires after the configured window.

        Raises:
            CreditsError: Amount is not positive or source is unknown
        """
        expires_at = utc_now() + timedelta(days=self.config.credit_expiration_days)
        entry = self._mint(user_id, amount, source, referral_id, expires_at)
        logger.info(f"Issued {entry.amount} credit ({entry.source}) to {user_id}")
        return entry

    def issue_once(
        self,
        user_id: str,
        amount,
        source: CreditSource,
        key: str,
    ) -> CreditEntry:
        """Issue a credit at most once per ``key`` (an errand or referral id).

        The entry id is derived from the source, key and user, so calling
        again, including after a write that landed but reported an error,
        returns the entry already issued instead of minting another.

        Raises:
            CreditsError: Amount is not positive or source is unknown
        """
        entry_id = keyed_entry_id(source, key, user_id)
        existing = self.storage.get_entry(entry_id)
        if existing is not None:
            return existing

        expires_at = utc_now() + timedelta(days=self.config.credit_expiration_days)
        entry = self._new_entry(user_id, amount, source, key, expires_at, id=entry_id)
        if not self.storage.save_entry_if_absent(entry):
            return self.storage.get_entry(entry_id) or entry
        logger.info(f"Issued {entry.amount} credit ({entry.source}) to {user_id} for {key}")
        return entry

    def issued_entry(self, user_id: str, source: CreditSource, key: str) -> Optional[CreditEntry]:
        """The entry ``issue_once`` created for ``key``, if any."""
        return self.storage.get_entry(keyed_entry_id(source, key, user_id))

    def _new_entry(
        self,
        user_id: str,
        amount,
        source,
        referral_id: Optional[str],
        expires_at: Optional[datetime],
        **fields,
    ) -> CreditEntry:
        try:
            return CreditEntry(
                user_id=user_id,
                amount=amount,
                source=source,
                referral_id=referral_id,
                expires_at=expires_at,
                **fields,
            )
        except ValueError as e:
            raise CreditsError(str(e)) from e

    def _mint(
        self,
        user_id: str,
        amount,
        source,
        referral_id: Optional[str],
        expires_at: Optional[datetime],
        **fields,
    ) -> CreditEntry:
        entry = self._new_entry(user_id, amount, source, referral_id, expires_at, **fields)
        self.storage.save_entry(entry)
        return entry

    # === Queries ===

    def available_entries(self, user_id: str, now: Optional[datetime] = None) -> List[CreditEntry]:
        """Unused, unexpired entries in the order they would be consumed."""
        now = now or utc_now()
        entries = [
            e
            for e in self.storage.list_entries(user_id=user_id, unused_only=True)
            if e.is_available(now)
        ]
        return sorted(entries, key=_consumption_order)

    def balance(self, user_id: str, now: Optional[datetime] = None) -> Decimal:
        """Sum of the user's unused, unexpired entries."""
        total = ZERO
        for entry in self.available_entries(user_id, now):
            total += entry.amount
        return total

    def history(self, user_id: str, limit: int = 50) -> List[CreditEntry]:
        """All of a user's entries, newest first, expired and used included."""
        return self.storage.list_entries(user_id=user_id, limit=limit)

    # === Consumption ===

    def apply_to_order(
        self,
        user_id: str,
        order_id: str,
        amount,
        now: Optional[datetime] = None,
    ) -> Decimal:
        """Consume exactly ``amount`` of the user's credits against an order.

        Returns the amount consumed.

        Raises:
            InsufficientCreditsError: Available credits are short; nothing is consumed
            CreditsError: Amount is not positive
        """
        amount = to_money(amount)
        if amount <= 0:
            raise CreditsError("Amount to apply must be positive")
        now = now or utc_now()

        with self._user_lock(user_id):
            consumed = ZERO
            while consumed < amount:
                entries = self.available_entries(user_id, now)
                available = sum((e.amount for e in entries), ZERO)
                needed = amount - consumed
                if available < needed:
                    if consumed > 0:
                        self._refund_consumed(user_id, order_id, consumed)
                    raise InsufficientCreditsError(user_id, amount, available + consumed)

                lost_race = False
                for entry in entries:
                    if consumed >= amount:
                        break
                    take = min(entry.amount, amount - consumed)
                    remainder = None
                    if take < entry.amount:
                        remainder = self._new_entry(
                            user_id,
                            entry.amount - take,
                            entry.source,
                            entry.referral_id,
                            entry.expires_at,
                            parent_id=entry.id,
                        )
                    try:
                        won = self.storage.consume_entry(entry.id, order_id, now, remainder)
                    except Exception:
                        self._return_after_failure(user_id, order_id, consumed, entry, remainder)
                        raise
                    if not won:
                        # Used by another process since we listed; re-plan
                        lost_race = True
                        break
                    consumed += take
                if not lost_race:
                    break

        logger.info(f"Applied {consumed} credit to order {order_id} for {user_id}")
        return consumed

    def _refund_consumed(self, user_id: str, order_id: str, consumed: Decimal) -> None:
        logger.warning(
            f"Credit application for order {order_id} interrupted after {consumed}; returning it"
        )
        self._mint(
            user_id,
            consumed,
            CreditSource.PARTIAL_REFUND,
            referral_id=None,
            expires_at=utc_now() + timedelta(days=self.config.credit_expiration_days),
            refund_order_id=order_id,
        )

    def _return_after_failure(
        self,
        user_id: str,
        order_id: str,
        consumed: Decimal,
        entry: CreditEntry,
        remainder: Optional[CreditEntry],
    ) -> None:
        """Give back what an application that raised mid-way already took.

        The failed consume may or may not have landed, so the entry is read
        back to find out how much of it was taken.
        """
        try:
            taken = consumed
            current = self.storage.get_entry(entry.id)
            if current is not None and current.order_id == order_id:
                if remainder is not None and self.storage.get_entry(remainder.id) is not None:
                    taken += entry.amount - remainder.amount
                else:
                    taken += entry.amount
            if taken > 0:
                self._refund_consumed(user_id, order_id, taken)
        except Exception as e:
            logger.error(
                f"Could not return credit taken for order {order_id} from {user_id} "
                f"(at least {consumed}): {e}"
            )
