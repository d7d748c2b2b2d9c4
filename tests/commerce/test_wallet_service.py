"""Tests for wallet service."""

import concurrent.futures
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketcore.config import SettlementConfig
from marketcore.engine import SettlementEngine
from marketcore.wallet.models import VendorWallet, WithdrawalStatus
from marketcore.wallet.service import (
    BelowMinimumError,
    InsufficientBalanceError,
    WalletError,
    WithdrawalNotFoundError,
)


@pytest.fixture
def wallet(engine):
    return engine.wallet


def settled_batch(engine, make_batch, vendor_id="vendor-1", buyers=3, unit_price="25.00"):
    """A SUCCESSFUL batch whose orders have all been captured."""
    batch = make_batch(vendor_id=vendor_id, minimum_quantity=buyers, unit_price=unit_price)
    for i in range(buyers):
        engine.batches.join_batch(batch.id, f"buyer-{i}")
    engine.batches.evaluate(batch.id)
    return batch


class TestComputeWallet:
    """Tests for balances derived from escrow."""

    def test_empty_wallet(self, wallet):
        result = wallet.compute_wallet("vendor-1")

        assert result.available_balance == Decimal("0")
        assert result.pending_balance == Decimal("0")
        assert result.total_earned == Decimal("0")

    def test_released_and_held_orders(self, wallet, engine, make_batch):
        """Test that released orders are earned and held orders are pending."""
        settled_batch(engine, make_batch)
        open_batch = make_batch()
        engine.batches.join_batch(open_batch.id, "buyer-9", quantity=2)

        result = wallet.compute_wallet("vendor-1")

        assert result.total_earned == Decimal("75.00")
        assert result.available_balance == Decimal("75.00")
        assert result.pending_balance == Decimal("20.00")
        assert result.total_withdrawn == Decimal("0")

    def test_other_vendors_excluded(self, wallet, engine, make_batch):
        settled_batch(engine, make_batch, vendor_id="vendor-2")
        assert wallet.compute_wallet("vendor-1").total_earned == Decimal("0")

    def test_refunded_orders_not_earned(self, wallet, engine, make_batch):
        batch = make_batch()
        engine.batches.join_batch(batch.id, "buyer-1")
        engine.batches.cancel(batch.id, "vendor-1")

        result = wallet.compute_wallet("vendor-1")

        assert result.total_earned == Decimal("0")
        assert result.pending_balance == Decimal("0")

    def test_compute_stores_nothing(self, wallet, engine, make_batch):
        settled_batch(engine, make_batch)
        wallet.compute_wallet("vendor-1")
        assert wallet.storage.get_wallet_snapshot("vendor-1") is None

        wallet.get_wallet("vendor-1")
        assert wallet.storage.get_wallet_snapshot("vendor-1").total_earned == Decimal("75.00")


class TestReconcile:
    """Tests for snapshot reconciliation."""

    def test_reconcile_reports_drift(self, wallet, engine, make_batch):
        """Test that a stale snapshot is corrected and its drift reported."""
        wallet.storage.save_wallet_snapshot(
            VendorWallet(vendor_id="vendor-1", available_balance="100.00", total_earned="100.00")
        )
        settled_batch(engine, make_batch)

        report = wallet.reconcile_wallet("vendor-1")

        assert report.has_drift
        assert report.drift["total_earned"] == Decimal("-25.00")
        assert report.previous.total_earned == Decimal("100.00")
        assert wallet.storage.get_wallet_snapshot("vendor-1").total_earned == Decimal("75.00")

    def test_reconcile_without_snapshot(self, wallet):
        report = wallet.reconcile_wallet("vendor-1")

        assert report.previous is None
        assert not report.has_drift

    def test_reconcile_twice_has_no_drift(self, wallet, engine, make_batch):
        settled_batch(engine, make_batch)
        wallet.reconcile_wallet("vendor-1")
        assert wallet.reconcile_wallet("vendor-1").drift == {}


class TestWithdrawals:
    """Tests for withdrawal requests."""

    def test_create_withdrawal(self, wallet, engine, make_batch, dispatcher):
        settled_batch(engine, make_batch)

        withdrawal = wallet.create_withdrawal("vendor-1", "60.00", "bank-1")

        assert withdrawal.status == WithdrawalStatus.PENDING.value
        assert withdrawal.net_amount == Decimal("60.00")
        assert withdrawal.minimum_threshold == Decimal("50.00")
        assert wallet.compute_wallet("vendor-1").available_balance == Decimal("15.00")
        assert wallet.get_withdrawal(withdrawal.id).amount == Decimal("60.00")
        assert dispatcher.to("vendor-1")[-1]["type"] == "withdrawal_requested"

    def test_below_minimum_fails(self, wallet, engine, make_batch):
        settled_batch(engine, make_batch)
        with pytest.raises(BelowMinimumError) as exc:
            wallet.create_withdrawal("vendor-1", "49.99", "bank-1")
        assert exc.value.minimum == Decimal("50.00")

    def test_insufficient_balance_fails(self, wallet, engine, make_batch):
        """Test that pending escrow does not count as available."""
        batch = make_batch(minimum_quantity=10, unit_price="100.00")
        engine.batches.join_batch(batch.id, "buyer-1")

        with pytest.raises(InsufficientBalanceError) as exc:
            wallet.create_withdrawal("vendor-1", "50.00", "bank-1")
        assert exc.value.available == Decimal("0")

    def test_missing_method_fails(self, wallet, engine, make_batch):
        settled_batch(engine, make_batch)
        with pytest.raises(WalletError, match="method"):
            wallet.create_withdrawal("vendor-1", "60.00", "")

    def test_fee_reduces_net_amount(self, payments):
        config = SettlementConfig(retry_delay_seconds=0, withdrawal_fee=Decimal("1.50"))
        engine = SettlementEngine.in_memory(payments, config=config)
        batch = engine.batches.activate(
            engine.batches.create_batch(
                vendor_id="vendor-1",
                listing_id="listing-1",
                region="Lagos",
                unit_price="60.00",
                minimum_quantity=1,
                deadline=datetime.now(timezone.utc) + timedelta(days=7),
            ).id
        )
        engine.batches.join_batch(batch.id, "buyer-1")
        engine.batches.evaluate(batch.id)

        withdrawal = engine.wallet.create_withdrawal("vendor-1", "60.00", "bank-1")

        assert withdrawal.fee == Decimal("1.50")
        assert withdrawal.net_amount == Decimal("58.50")

    def test_failed_withdrawal_frees_balance(self, wallet, engine, make_batch):
        """Test that FAILED and REJECTED requests stop counting against the balance."""
        settled_batch(engine, make_batch)
        withdrawal = wallet.create_withdrawal("vendor-1", "75.00", "bank-1")
        assert wallet.compute_wallet("vendor-1").available_balance == Decimal("0")

        withdrawal.status = WithdrawalStatus.REJECTED.value
        wallet.storage.save_withdrawal(withdrawal)

        assert wallet.compute_wallet("vendor-1").available_balance == Decimal("75.00")
        assert wallet.compute_wallet("vendor-1").total_withdrawn == Decimal("0")

    def test_list_withdrawals_by_status(self, wallet, engine, make_batch):
        settled_batch(engine, make_batch)
        wallet.create_withdrawal("vendor-1", "50.00", "bank-1")

        assert len(wallet.list_withdrawals("vendor-1")) == 1
        assert wallet.list_withdrawals("vendor-1", status=WithdrawalStatus.COMPLETED) == []

    def test_unknown_withdrawal(self, wallet):
        with pytest.raises(WithdrawalNotFoundError):
            wallet.get_withdrawal("missing")

    def test_concurrent_withdrawals_never_overdraw(self, wallet, engine, make_batch):
        """Test that racing requests cannot take more than the available balance."""
        settled_batch(engine, make_batch)

        def withdraw(_):
            try:
                return wallet.create_withdrawal("vendor-1", "50.00", "bank-1")
            except InsufficientBalanceError:
                return None

        with concurrent.futures.ThreadPoolExecutor(max_workers=5) as executor:
            results = list(executor.map(withdraw, range(5)))

        assert sum(1 for r in results if r is not None) == 1
        assert wallet.compute_wallet("vendor-1").available_balance == Decimal("25.00")
