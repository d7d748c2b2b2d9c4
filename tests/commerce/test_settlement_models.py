"""Tests for settlement data models."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketcore.batches.models import BatchStatus, RegionalBatch
from marketcore.credits.models import CreditEntry
from marketcore.credits.referrals import Referral
from marketcore.errands.models import Errand, ErrandApplication, ErrandRating, ErrandStatus
from marketcore.escrow.models import EscrowStatus, Order
from marketcore.wallet.models import VendorWallet, WithdrawalRequest, WithdrawalStatus


def future_deadline(days=7):
    return datetime.now(timezone.utc) + timedelta(days=days)


def make_batch(**kwargs):
    defaults = dict(
        id="batch-1",
        vendor_id="vendor-1",
        listing_id="listing-1",
        region="Lagos",
        unit_price="10.00",
        minimum_quantity=10,
        deadline=future_deadline(),
    )
    defaults.update(kwargs)
    return RegionalBatch(**defaults)


class TestOrder:
    """Tests for the Order model."""

    def test_amount_is_quantised(self):
        order = Order(id="o-1", batch_id="b-1", buyer_id="u-1", amount=0.1)
        assert order.amount == Decimal("0.10")

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="positive"):
            Order(id="o-1", batch_id="b-1", buyer_id="u-1", amount="0")
        with pytest.raises(ValueError, match="quantity"):
            Order(id="o-1", batch_id="b-1", buyer_id="u-1", amount="5", quantity=0)
        with pytest.raises(ValueError, match="Invalid status"):
            Order(id="o-1", batch_id="b-1", buyer_id="u-1", amount="5", escrow_status="lost")

    def test_transitions_only_move_forward(self):
        order = Order(id="o-1", batch_id="b-1", buyer_id="u-1", amount="5")
        assert order.can_transition_to(EscrowStatus.HELD)
        assert not order.can_transition_to(EscrowStatus.RELEASED)

        order.escrow_status = EscrowStatus.REFUNDED.value
        assert order.is_terminal
        assert not order.can_transition_to(EscrowStatus.HELD)

    def test_dict_round_trip(self):
        order = Order(
            id="o-1",
            batch_id="b-1",
            buyer_id="u-1",
            amount="12.50",
            quantity=2,
            escrow_status=EscrowStatus.HELD,
            payment_ref="pi_1",
            held_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
        )
        data = order.to_dict()

        assert data["amount"] == "12.50"
        assert data["escrow_status"] == "held"
        assert Order.from_dict(data) == order


class TestRegionalBatch:
    """Tests for the RegionalBatch model."""

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="Unit price"):
            make_batch(unit_price="-1")
        with pytest.raises(ValueError, match="Minimum quantity"):
            make_batch(minimum_quantity=0)
        with pytest.raises(ValueError, match="Region"):
            make_batch(region="")
        with pytest.raises(ValueError, match="Region"):
            make_batch(region="x" * 101)

    def test_progress_and_minimum(self):
        batch = make_batch(current_quantity=12)
        assert batch.has_reached_minimum
        assert batch.progress == 100.0

        assert make_batch(current_quantity=3).progress == 30.0

    def test_deadline(self):
        batch = make_batch()
        assert not batch.is_past_deadline()
        assert batch.is_past_deadline(batch.deadline)

    def test_terminal_statuses_have_no_exits(self):
        for status in (BatchStatus.SUCCESSFUL, BatchStatus.FAILED, BatchStatus.CANCELLED):
            batch = make_batch(status=status)
            assert batch.is_terminal
            assert not any(batch.can_transition_to(s) for s in BatchStatus)

    def test_dict_round_trip(self):
        batch = make_batch(status=BatchStatus.ACTIVE, current_quantity=4, delivery_method="pickup")
        assert RegionalBatch.from_dict(batch.to_dict()) == batch


class TestErrandModels:
    """Tests for errands, applications and ratings."""

    def test_errand_validation(self):
        with pytest.raises(ValueError, match="Title"):
            Errand(id="e-1", requester_id="r-1", title="x" * 201, description="", budget="5")
        with pytest.raises(ValueError, match="Budget"):
            Errand(id="e-1", requester_id="r-1", title="Walk dog", description="", budget="0")

    def test_errand_open_needs_no_helper(self):
        errand = Errand(id="e-1", requester_id="r-1", title="Walk dog", description="", budget="5")
        assert errand.is_open
        errand.assigned_helper_id = "h-1"
        assert not errand.is_open

    def test_errand_transitions(self):
        errand = Errand(
            id="e-1",
            requester_id="r-1",
            title="Walk dog",
            description="",
            budget="5",
            status=ErrandStatus.ASSIGNED,
        )
        assert errand.is_active
        assert errand.can_transition_to(ErrandStatus.COMPLETED)
        assert not errand.can_transition_to(ErrandStatus.OPEN)

    def test_errand_dict_round_trip(self):
        errand = Errand(
            id="e-1",
            requester_id="r-1",
            title="Walk dog",
            description="Twice around the block",
            budget="7.25",
            status=ErrandStatus.COMPLETED,
            assigned_helper_id="h-1",
            requester_confirmed=True,
            helper_confirmed=True,
            deadline=future_deadline(),
        )
        assert Errand.from_dict(errand.to_dict()) == errand

    def test_application_offer_must_be_positive(self):
        with pytest.raises(ValueError, match="Offer"):
            ErrandApplication(id="a-1", errand_id="e-1", helper_id="h-1", offer_amount="-2")

    def test_rating_range(self):
        with pytest.raises(ValueError, match="between 1 and 5"):
            ErrandRating(errand_id="e-1", rater_id="r-1", rated_id="h-1", rating=0)
        rating = ErrandRating(errand_id="e-1", rater_id="r-1", rated_id="h-1", rating=5)
        assert ErrandRating.from_dict(rating.to_dict()) == rating


class TestCreditModels:
    """Tests for credit entries and referrals."""

    def test_entry_availability(self):
        now = datetime.now(timezone.utc)
        entry = CreditEntry(user_id="u-1", amount="5", source="bonus", expires_at=now + timedelta(days=1))

        assert entry.is_available(now)
        assert not entry.is_available(now + timedelta(days=2))
        entry.used_at = now
        assert not entry.is_available(now)

    def test_entry_dict_round_trip(self):
        entry = CreditEntry(
            user_id="u-1",
            amount="5",
            source="referral_referee",
            expires_at=future_deadline(90),
            referral_id="ref-1",
            parent_id="c-0",
        )
        assert CreditEntry.from_dict(entry.to_dict()) == entry

    def test_referral_dict_round_trip(self):
        referral = Referral(
            referrer_id="alice",
            referral_code="ALI123456",
            referred_id="bob",
            status="rewarded",
            referrer_credits=Decimal("5.00"),
            referee_credits=Decimal("3.00"),
        )
        assert Referral.from_dict(referral.to_dict()) == referral


class TestWalletModels:
    """Tests for wallet and withdrawal models."""

    def test_withdrawal_net_amount(self):
        withdrawal = WithdrawalRequest(
            vendor_id="v-1", method_id="bank-1", amount="100", fee="2.50", minimum_threshold="50"
        )
        assert withdrawal.net_amount == Decimal("97.50")
        assert withdrawal.counts_against_balance

    def test_withdrawal_validation(self):
        with pytest.raises(ValueError, match="method"):
            WithdrawalRequest(vendor_id="v-1", method_id="", amount="100", minimum_threshold="50")
        with pytest.raises(ValueError, match="negative"):
            WithdrawalRequest(
                vendor_id="v-1", method_id="bank-1", amount="100", fee="-1", minimum_threshold="50"
            )

    def test_withdrawal_transitions(self):
        withdrawal = WithdrawalRequest(
            vendor_id="v-1", method_id="bank-1", amount="100", minimum_threshold="50"
        )
        assert withdrawal.can_transition_to(WithdrawalStatus.PROCESSING)
        assert not withdrawal.can_transition_to(WithdrawalStatus.COMPLETED)

        withdrawal.status = WithdrawalStatus.FAILED.value
        assert not withdrawal.counts_against_balance

    def test_wallet_drift(self):
        stored = VendorWallet(vendor_id="v-1", available_balance="10", total_earned="10")
        actual = VendorWallet(vendor_id="v-1", available_balance="25", total_earned="25")

        assert actual.drift_from(stored) == {
            "available_balance": Decimal("15.00"),
            "total_earned": Decimal("15.00"),
        }
        assert VendorWallet.from_dict(actual.to_dict()) == actual
