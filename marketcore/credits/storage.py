"""
Credit ledger storage layer.

Entries are inserted once and consumed once. ``consume_entry`` is the only
update, and it is conditional on the entry still being unused. Credits
that must be issued at most once (payouts, referral rewards) carry a
derived ID and go through ``save_entry_if_absent``.
"""

import logging
import threading
from datetime import datetime
from typing import List, Optional, Protocol

from marketcore.credits.models import CreditEntry, CreditSource

logger = logging.getLogger(__name__)


class CreditStorage(Protocol):
    """Protocol for credit entry persistence backends."""

    def save_entry(self, entry: CreditEntry) -> str:
        """Insert a credit entry. Returns the entry ID."""
        ...

    def get_entry(self, entry_id: str) -> Optional[CreditEntry]:
        """Get an entry by ID."""
        ...

    def list_entries(
        self,
        user_id: Optional[str] = None,
        unused_only: bool = False,
        source: Optional[CreditSource] = None,
        referral_id: Optional[str] = None,
        limit: int = 10000,
    ) -> List[CreditEntry]:
        """List entries with optional filters, newest first."""
        ...

    def save_entry_if_absent(self, entry: CreditEntry) -> bool:
        """Insert a credit entry unless one with the same ID exists.

        Returns True if this call inserted it.
        """
        ...

    def consume_entry(
        self,
        entry_id: str,
        order_id: str,
        used_at: datetime,
        remainder: Optional[CreditEntry] = None,
    ) -> bool:
        """Mark an unused entry as used by ``order_id``.

        ``remainder`` (the unspent part of a partially used entry) is
        inserted in the same unit. Returns False, writing nothing, if the
        entry was already used (someone else won).
        """
        ...


class InMemoryCreditStorage:
    """In-memory credit storage for testing and local development."""

    def __init__(self):
        """Initialize empty storage."""
        self._entries: dict[str, CreditEntry] = {}
        self._lock = threading.Lock()

    def save_entry(self, entry: CreditEntry) -> str:
        """Insert a credit entry."""
        with self._lock:
            self._entries[entry.id] = entry
        return entry.id

    def get_entry(self, entry_id: str) -> Optional[CreditEntry]:
        """Get an entry by ID."""
        return self._entries.get(entry_id)

    def list_entries(
        self,
        user_id: Optional[str] = None,
        unused_only: bool = False,
        source: Optional[CreditSource] = None,
        referral_id: Optional[str] = None,
        limit: int = 10000,
    ) -> List[CreditEntry]:
        """List entries with optional filters."""
        with self._lock:
            entries = list(self._entries.values())

        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        if unused_only:
            entries = [e for e in entries if e.used_at is None]
        if source is not None:
            source_val = CreditSource(source).value
            entries = [e for e in entries if e.source == source_val]
        if referral_id is not None:
            entries = [e for e in entries if e.referral_id == referral_id]

        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def save_entry_if_absent(self, entry: CreditEntry) -> bool:
        """Insert an entry if its ID is new."""
        with self._lock:
            if entry.id in self._entries:
                return False
            self._entries[entry.id] = entry
        return True

    def consume_entry(
        self,
        entry_id: str,
        order_id: str,
        used_at: datetime,
        remainder: Optional[CreditEntry] = None,
    ) -> bool:
        """Mark an entry used if it is still unused, inserting its remainder."""
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.used_at is not None:
                return False
            entry.used_at = used_at
            entry.order_id = order_id
            if remainder is not None:
                self._entries[remainder.id] = remainder
            return True
