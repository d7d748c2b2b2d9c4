"""Tests for the escrow ledger."""

import concurrent.futures
from decimal import Decimal

import pytest

from marketcore.escrow.models import EscrowStatus
from marketcore.escrow.service import (
    AuthorizationRequiredError,
    EscrowError,
    OrderNotFoundError,
)
from marketcore.protocols import InvalidTransitionError
from marketcore.retry import SideEffectKind


@pytest.fixture
def escrow(engine):
    return engine.escrow


def held_order(escrow, payments, batch_id="batch-1", buyer_id="buyer-1", amount="25.00"):
    """Create an order and hold it against a fresh authorization."""
    order = escrow.create_order(batch_id, buyer_id, amount)
    ref = payments.authorize(Decimal(amount), buyer_id)
    return escrow.hold(order.id, amount, ref)


class TestHold:
    """Tests for moving orders into escrow."""

    def test_hold_requires_payment_ref(self, escrow):
        """Test that an order cannot be held without an authorization."""
        order = escrow.create_order("batch-1", "buyer-1", "10.00")

        with pytest.raises(AuthorizationRequiredError):
            escrow.hold(order.id, "10.00", None)
        with pytest.raises(AuthorizationRequiredError):
            escrow.hold(order.id, "10.00", "   ")

        assert escrow.status_of(order.id) == EscrowStatus.PENDING

    def test_hold_moves_pending_to_held(self, escrow, payments):
        """Test holding an authorized order."""
        order = held_order(escrow, payments)

        assert order.status == EscrowStatus.HELD
        assert order.payment_ref == "pi_1"
        assert order.held_at is not None
        assert escrow.total_held("batch-1") == Decimal("25.00")

    def test_hold_same_ref_twice_is_noop(self, escrow, payments):
        """Test that repeating a hold with the same reference is harmless."""
        order = held_order(escrow, payments)
        again = escrow.hold(order.id, "25.00", order.payment_ref)

        assert again.status == EscrowStatus.HELD
        assert escrow.total_held("batch-1") == Decimal("25.00")

    def test_hold_settled_order_fails(self, escrow, payments):
        """Test that a settled order cannot go back to HELD."""
        order = held_order(escrow, payments)
        escrow.release("batch-1")

        with pytest.raises(InvalidTransitionError):
            escrow.hold(order.id, "25.00", "pi_other")

    def test_hold_non_positive_amount_fails(self, escrow):
        order = escrow.create_order("batch-1", "buyer-1", "10.00")
        with pytest.raises(EscrowError, match="positive"):
            escrow.hold(order.id, "0", "pi_1")

    def test_unknown_order(self, escrow):
        with pytest.raises(OrderNotFoundError, match="not found"):
            escrow.status_of("missing")


class TestSettlement:
    """Tests for batch-wide release and refund."""

    def test_release_captures_every_held_order(self, escrow, payments):
        """Test that release captures all HELD orders of the batch."""
        a = held_order(escrow, payments, buyer_id="buyer-a")
        b = held_order(escrow, payments, buyer_id="buyer-b")
        other = held_order(escrow, payments, batch_id="batch-2")

        result = escrow.release("batch-1")

        assert sorted(result.succeeded) == sorted([a.id, b.id])
        assert result.success
        assert escrow.status_of(a.id) == EscrowStatus.RELEASED
        assert escrow.get_order(a.id).captured_at is not None
        assert escrow.status_of(other.id) == EscrowStatus.HELD
        assert sorted(payments.captured) == sorted([a.payment_ref, b.payment_ref])

    def test_refund_returns_every_held_order(self, escrow, payments):
        """Test the symmetric refund path."""
        a = held_order(escrow, payments)

        result = escrow.refund("batch-1")

        assert result.succeeded == [a.id]
        assert escrow.status_of(a.id) == EscrowStatus.REFUNDED
        assert payments.refunded == [a.payment_ref]

    def test_release_twice_is_noop(self, escrow, payments):
        """Test that re-invoking release does not capture again."""
        a = held_order(escrow, payments)
        escrow.release("batch-1")

        second = escrow.release("batch-1")

        assert second.succeeded == []
        assert second.skipped == [a.id]
        assert payments.captured == [a.payment_ref]

    def test_partial_failure_leaves_failed_orders_held(self, escrow, payments, engine):
        """Test that one failed capture does not roll back the others."""
        good = held_order(escrow, payments, buyer_id="buyer-a")
        bad = held_order(escrow, payments, buyer_id="buyer-b")
        payments.fail_capture.add(bad.payment_ref)

        result = escrow.release("batch-1")

        assert result.is_partial_failure
        assert result.succeeded == [good.id]
        assert result.failed_order_ids == [bad.id]
        assert result.failed[0].error == "card_declined"
        assert escrow.status_of(good.id) == EscrowStatus.RELEASED
        assert escrow.status_of(bad.id) == EscrowStatus.HELD
        assert escrow.get_order(bad.id).last_error == "card_declined"

        pending = engine.side_effects.pending(SideEffectKind.ESCROW_RELEASE)
        assert [p.entity_id for p in pending] == ["batch-1"]
        assert pending[0].detail["order_ids"] == [bad.id]

    def test_failed_order_retried_individually(self, escrow, payments):
        """Test per-order retry after a partial failure."""
        bad = held_order(escrow, payments)
        payments.fail_capture.add(bad.payment_ref)
        escrow.release("batch-1")

        payments.fail_capture.clear()
        assert escrow.release_order(bad.id) is True
        assert escrow.status_of(bad.id) == EscrowStatus.RELEASED
        assert escrow.get_order(bad.id).last_error is None

        # Already released: still True, no second capture
        assert escrow.release_order(bad.id) is True
        assert payments.captured == [bad.payment_ref]

    def test_transient_capture_failure_is_retried(self, escrow, payments):
        """Test that bounded retries absorb a transient decline."""
        order = held_order(escrow, payments)
        payments.capture_failures[order.payment_ref] = 2

        result = escrow.release("batch-1")

        assert result.succeeded == [order.id]
        assert payments.captured == [order.payment_ref]

    def test_refund_exception_is_recorded(self, escrow, payments, engine):
        """Test that a raising processor is treated as a failed refund."""
        order = held_order(escrow, payments)
        payments.fail_refund.add(order.payment_ref)

        result = escrow.refund("batch-1")

        assert result.failed_order_ids == [order.id]
        assert "ConnectionError" in result.failed[0].error
        assert not result.is_partial_failure
        assert len(engine.side_effects.pending(SideEffectKind.ESCROW_REFUND)) == 1

    def test_refund_settled_order_fails(self, escrow, payments):
        """Test that a released order cannot be refunded."""
        order = held_order(escrow, payments)
        escrow.release("batch-1")

        with pytest.raises(InvalidTransitionError):
            escrow.refund_order(order.id)


class TestConcurrentSettlement:
    """Tests for at-most-once capture under concurrent triggers."""

    def test_concurrent_release_captures_each_order_once(self, escrow, payments):
        """Test that racing release calls never capture an order twice."""
        orders = [held_order(escrow, payments, buyer_id=f"buyer-{i}") for i in range(5)]

        with concurrent.futures.ThreadPoolExecutor(max_workers=10) as executor:
            futures = [executor.submit(escrow.release, "batch-1") for _ in range(10)]
            results = [f.result() for f in futures]

        assert sum(len(r.succeeded) for r in results) == 5
        assert sorted(payments.captured) == sorted(o.payment_ref for o in orders)
        assert all(escrow.status_of(o.id) == EscrowStatus.RELEASED for o in orders)
