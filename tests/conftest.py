"""
Pytest fixtures and test configuration for marketcore tests.
"""

import copy
import itertools
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import pytest

from marketcore.config import SettlementConfig
from marketcore.engine import SettlementEngine
from marketcore.protocols import PaymentResult


class FakePaymentProcessor:
    """Payment processor double that records every call.

    ``fail_capture``/``fail_refund`` hold payment refs whose calls fail;
    ``capture_failures`` counts down failures before a ref starts working.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.authorized: Dict[str, Decimal] = {}
        self.captured: List[str] = []
        self.refunded: List[str] = []
        self.fail_capture: Set[str] = set()
        self.fail_refund: Set[str] = set()
        self.capture_failures: Dict[str, int] = {}
        self.decline_authorization = False

    def authorize(self, amount: Decimal, customer: str) -> str:
        if self.decline_authorization:
            return ""
        with self._lock:
            ref = f"pi_{next(self._counter)}"
            self.authorized[ref] = amount
        return ref

    def capture(self, payment_ref: str) -> PaymentResult:
        with self._lock:
            remaining = self.capture_failures.get(payment_ref, 0)
            if remaining:
                self.capture_failures[payment_ref] = remaining - 1
                return PaymentResult.failure("card_declined")
            if payment_ref in self.fail_capture:
                return PaymentResult.failure("card_declined")
            self.captured.append(payment_ref)
        return PaymentResult.success()

    def refund(self, payment_ref: str) -> PaymentResult:
        with self._lock:
            if payment_ref in self.fail_refund:
                raise ConnectionError("processor unavailable")
            self.refunded.append(payment_ref)
        return PaymentResult.success()


class RecordingDispatcher:
    """Notification dispatcher that remembers what it was asked to send."""

    def __init__(self, fail_for: Optional[Set[str]] = None):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for = fail_for or set()

    def notify(self, user_id, type, title, message, data=None):
        if user_id in self.fail_for:
            raise RuntimeError("push service down")
        self.sent.append({"user_id": user_id, "type": type, "title": title, "data": data or {}})

    def to(self, user_id: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["user_id"] == user_id]


class SetSuspensions:
    """Suspension checker backed by a set of (entity_type, entity_id)."""

    def __init__(self):
        self.suspended: Set[tuple] = set()

    def is_suspended(self, entity_type: str, entity_id: str) -> bool:
        return (entity_type, entity_id) in self.suspended


# =============================================================================
# Fake Supabase client
# =============================================================================


class FakeResult:
    def __init__(self, data: List[Dict[str, Any]], count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    """Chainable query builder over in-memory rows, mimicking postgrest-py."""

    def __init__(self, client: "FakeSupabaseClient", table: str):
        self.client = client
        self.table_name = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List = []
        self.order_by: Optional[tuple] = None
        self.max_rows: Optional[int] = None
        self.count_mode: Optional[str] = None
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False

    # Operations
    def select(self, columns: str = "*", count: Optional[str] = None):
        self.op = "select"
        self.count_mode = count
        return self

    def insert(self, data):
        self.op, self.payload = "insert", data
        return self

    def upsert(self, data, on_conflict: Optional[str] = None, ignore_duplicates: bool = False):
        self.op, self.payload, self.on_conflict = "upsert", data, on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def update(self, data):
        self.op, self.payload = "update", data
        return self

    # Filters
    def eq(self, column, value):
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda r: r.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda r: r.get(column) in values)
        return self

    def is_(self, column, value):
        assert value == "null"
        self.filters.append(lambda r: r.get(column) is None)
        return self

    def order(self, column, desc: bool = False):
        self.order_by = (column, desc)
        return self

    def limit(self, n: int):
        self.max_rows = n
        return self

    def _matches(self, row) -> bool:
        return all(f(row) for f in self.filters)

    def execute(self) -> FakeResult:
        with self.client.lock:
            rows = self.client.tables.setdefault(self.table_name, [])
            if self.op == "select":
                found = [copy.deepcopy(r) for r in rows if self._matches(r)]
                if self.order_by:
                    column, desc = self.order_by
                    found.sort(key=lambda r: r.get(column) or "", reverse=desc)
                if self.max_rows is not None:
                    found = found[: self.max_rows]
                count = len(found) if self.count_mode == "exact" else None
                return FakeResult(found, count)

            if self.op == "insert":
                row = copy.deepcopy(self.payload)
                if any(r["id"] == row.get("id") for r in rows if "id" in row):
                    raise RuntimeError("duplicate key value violates unique constraint")
                rows.append(row)
                return FakeResult([copy.deepcopy(row)])

            if self.op == "upsert":
                row = copy.deepcopy(self.payload)
                key = (self.on_conflict or "id").split(",")
                for existing in rows:
                    if all(existing.get(k) == row.get(k) for k in key):
                        if self.ignore_duplicates:
                            return FakeResult([])
                        existing.update(row)
                        return FakeResult([copy.deepcopy(existing)])
                rows.append(row)
                return FakeResult([copy.deepcopy(row)])

            if self.table_name in self.client.fail_updates:
                raise ConnectionError(f"update on {self.table_name} timed out")
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
            return FakeResult(updated)


class FakeSupabaseClient:
    """Minimal stand-in for ``supabase.Client``: ``table(name)`` returns a query builder.

    Tables named in ``fail_updates`` raise on every update.
    """

    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.lock = threading.RLock()
        self.fail_updates: Set[str] = set()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def config():
    """Create test configuration (no retry backoff)."""
    return SettlementConfig(
        retry_max_attempts=3,
        retry_delay_seconds=0,
        max_active_errands_per_helper=3,
        credit_expiration_days=90,
        minimum_withdrawal=Decimal("50.00"),
    )


@pytest.fixture
def payments():
    return FakePaymentProcessor()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def suspensions():
    return SetSuspensions()


@pytest.fixture
def engine(payments, dispatcher, suspensions, config):
    """Create an in-memory engine with recording collaborators."""
    return SettlementEngine.in_memory(
        payments, dispatcher=dispatcher, suspensions=suspensions, config=config
    )


@pytest.fixture
def supabase_client():
    return FakeSupabaseClient()


@pytest.fixture
def make_batch(engine):
    """Factory for ACTIVE batches on the engine fixture."""

    def _make(vendor_id="vendor-1", minimum_quantity=3, unit_price="10.00", **kwargs):
        batch = engine.batches.create_batch(
            vendor_id=vendor_id,
            listing_id=kwargs.pop("listing_id", "listing-1"),
            region=kwargs.pop("region", "Lagos"),
            unit_price=unit_price,
            minimum_quantity=minimum_quantity,
            deadline=kwargs.pop("deadline", datetime.now(timezone.utc) + timedelta(days=7)),
            **kwargs,
        )
        return engine.batches.activate(batch.id, vendor_id)

    return _make
