"""Tests for the errand service."""

import concurrent.futures
from decimal import Decimal

import pytest

from marketcore.credits.models import CreditSource
from marketcore.errands.models import ASSIGNED_ERRAND_STATUSES, ErrandApplication, ErrandStatus
from marketcore.errands.service import (
    ActiveErrandLimitExceededError,
    AlreadyAppliedError,
    ApplicationNotFoundError,
    ErrandError,
    ErrandNotFoundError,
    NotAcceptingApplicationsError,
)
from marketcore.protocols import EntitySuspendedError, InvalidTransitionError, UnauthorizedError
from marketcore.retry import SideEffectKind
from marketcore.types import utc_now


@pytest.fixture
def errands(engine):
    return engine.errands


def create_errand(errands, requester_id="requester-1", budget="20.00", title="Pick up groceries"):
    return errands.create_errand(requester_id, title, "Two bags from the market", budget)


def assigned_errand(errands, helper_id="helper-1", requester_id="requester-1", budget="20.00"):
    """Create an errand and assign it to ``helper_id``."""
    errand = create_errand(errands, requester_id=requester_id, budget=budget)
    application = errands.apply(errand.id, helper_id)
    return errands.accept(errand.id, application.id, requester_id)


def assert_helper_invariant(errand):
    """assigned_helper_id is set exactly in the assigned statuses."""
    if errand.errand_status in ASSIGNED_ERRAND_STATUSES:
        assert errand.assigned_helper_id is not None
    else:
        assert errand.assigned_helper_id is None


class TestErrandCreation:
    """Tests for posting errands."""

    def test_create_errand(self, errands):
        errand = create_errand(errands)

        assert errand.status == "open"
        assert errand.budget == Decimal("20.00")
        assert errand.assigned_helper_id is None
        assert [t.to_status for t in errands.transitions(errand.id)] == ["open"]

    def test_create_errand_zero_budget_fails(self, errands):
        with pytest.raises(ErrandError, match="positive"):
            create_errand(errands, budget="0")

    def test_create_errand_empty_title_fails(self, errands):
        with pytest.raises(ErrandError, match="Title"):
            create_errand(errands, title="")

    def test_get_errand_not_found(self, errands):
        with pytest.raises(ErrandNotFoundError, match="not found"):
            errands.get_errand("missing")


class TestApply:
    """Tests for helper applications."""

    def test_apply_notifies_requester(self, errands, dispatcher):
        errand = create_errand(errands)

        application = errands.apply(errand.id, "helper-1", offer_amount="18.00", message="On my way")

        assert application.status == "pending"
        assert application.offer_amount == Decimal("18.00")
        assert [n["type"] for n in dispatcher.to("requester-1")] == ["errand_application"]

    def test_apply_twice_fails(self, errands):
        """Test that a helper cannot hold two live applications."""
        errand = create_errand(errands)
        errands.apply(errand.id, "helper-1")

        with pytest.raises(AlreadyAppliedError):
            errands.apply(errand.id, "helper-1")

    def test_apply_own_errand_fails(self, errands):
        errand = create_errand(errands)
        with pytest.raises(ErrandError, match="own errand"):
            errands.apply(errand.id, "requester-1")

    def test_apply_suspended_errand_fails(self, errands, suspensions):
        errand = create_errand(errands)
        suspensions.suspended.add(("errand", errand.id))

        with pytest.raises(EntitySuspendedError):
            errands.apply(errand.id, "helper-1")

    def test_apply_assigned_errand_fails(self, errands):
        errand = assigned_errand(errands)
        with pytest.raises(NotAcceptingApplicationsError):
            errands.apply(errand.id, "helper-2")

    def test_fourth_active_errand_fails(self, errands):
        """Test that a helper with three active errands cannot apply to a fourth."""
        for _ in range(3):
            assigned_errand(errands, helper_id="helper-1")
        assert errands.active_errand_count("helper-1") == 3

        fourth = create_errand(errands)
        with pytest.raises(ActiveErrandLimitExceededError) as exc:
            errands.apply(fourth.id, "helper-1")
        assert exc.value.limit == 3

    def test_concurrent_duplicate_applications(self, errands):
        """Test that racing applications by one helper land once."""
        errand = create_errand(errands)

        def apply():
            try:
                return errands.apply(errand.id, "helper-1")
            except AlreadyAppliedError:
                return None

        with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda _: apply(), range(8)))

        assert sum(1 for r in results if r is not None) == 1
        assert len(errands.applications_for(errand.id)) == 1


class TestAccept:
    """Tests for accepting an application."""

    def test_accept_assigns_and_rejects_siblings(self, errands, dispatcher):
        """Test that accepting leaves exactly one ACCEPTED and the rest REJECTED."""
        errand = create_errand(errands)
        chosen = errands.apply(errand.id, "helper-1")
        errands.apply(errand.id, "helper-2")
        errands.apply(errand.id, "helper-3")

        assigned = errands.accept(errand.id, chosen.id, "requester-1")

        assert assigned.status == "assigned"
        assert assigned.assigned_helper_id == "helper-1"
        assert assigned.assigned_at is not None
        statuses = {a.helper_id: a.status for a in errands.applications_for(errand.id)}
        assert statuses == {"helper-1": "accepted", "helper-2": "rejected", "helper-3": "rejected"}
        assert [n["type"] for n in dispatcher.to("helper-1")] == ["errand_accepted"]
        assert_helper_invariant(assigned)

    def test_accept_by_other_user_fails(self, errands):
        errand = create_errand(errands)
        application = errands.apply(errand.id, "helper-1")

        with pytest.raises(UnauthorizedError):
            errands.accept(errand.id, application.id, "helper-1")

    def test_accept_unknown_application_fails(self, errands):
        errand = create_errand(errands)
        with pytest.raises(ApplicationNotFoundError):
            errands.accept(errand.id, "missing", "requester-1")

    def test_accept_rechecks_active_limit(self, errands):
        """Test that the limit is checked again at accept time."""
        errand = create_errand(errands)
        late = errands.apply(errand.id, "helper-1")
        for _ in range(3):
            assigned_errand(errands, helper_id="helper-1")

        with pytest.raises(ActiveErrandLimitExceededError):
            errands.accept(errand.id, late.id, "requester-1")
        assert errands.get_errand(errand.id).status == "open"

    def test_concurrent_accepts_assign_once(self, errands):
        """Test that two racing accepts on one errand assign exactly one helper."""
        errand = create_errand(errands)
        first = errands.apply(errand.id, "helper-1")
        second = errands.apply(errand.id, "helper-2")
        results, errors = [], []

        def accept(app_id):
            try:
                errands.accept(errand.id, app_id, "requester-1")
                results.append(app_id)
            except (InvalidTransitionError, ErrandError) as e:
                errors.append((app_id, e))

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            futures = [executor.submit(accept, first.id), executor.submit(accept, second.id)]
            concurrent.futures.wait(futures)

        assert len(results) == 1
        assert len(errors) == 1
        statuses = sorted(a.status for a in errands.applications_for(errand.id))
        assert statuses == ["accepted", "rejected"]

    def test_reconcile_rejects_stray_pending(self, errands):
        """Test the convergence pass for a sibling left PENDING."""
        errand = assigned_errand(errands)
        stray = ErrandApplication(
            id="stray-1", errand_id=errand.id, helper_id="helper-9", created_at=utc_now()
        )
        errands.storage.save_application(stray)

        assert errands.reconcile_applications(errand.id) == 1
        assert errands.storage.get_application("stray-1").status == "rejected"
        assert errands.reconcile_applications(errand.id) == 0

    def test_reconcile_accepts_assigned_helper(self, errands):
        """Test an assignment cut off after the errand row was written."""
        errand = create_errand(errands)
        chosen = errands.apply(errand.id, "helper-1")
        other = errands.apply(errand.id, "helper-2")
        errands.accept(errand.id, chosen.id, "requester-1")
        for application in (chosen, other):
            errands.storage.get_application(application.id).status = "pending"

        assert errands.reconcile_applications(errand.id) == 1

        assert errands.storage.get_application(chosen.id).status == "accepted"
        assert errands.storage.get_application(other.id).status == "rejected"

    def test_reconcile_leaves_open_errands(self, errands):
        errand = create_errand(errands)
        application = errands.apply(errand.id, "helper-1")

        assert errands.reconcile_applications(errand.id) == 0
        assert errands.storage.get_application(application.id).status == "pending"


class TestCompletion:
    """Tests for two-party confirmation and payout."""

    def test_requester_then_helper_completes(self, errands, engine, dispatcher):
        """Test that the second confirmation completes and pays the helper once."""
        errand = assigned_errand(errands, budget="20.00")

        after_first = errands.confirm_completion(errand.id, "requester-1")
        assert after_first.status == "awaiting_confirmation"
        assert after_first.requester_confirmed

        done = errands.confirm_completion(errand.id, "helper-1")

        assert done.status == "completed"
        assert done.completed_at is not None
        assert done.payment_released
        payouts = engine.credits.storage.list_entries(
            user_id="helper-1", source=CreditSource.ERRAND_COMPLETION
        )
        assert len(payouts) == 1
        assert payouts[0].amount == Decimal("20.00")
        assert payouts[0].referral_id == errand.id
        assert engine.credits.balance("helper-1") == Decimal("20.00")
        assert [n["type"] for n in dispatcher.to("requester-1")][-1] == "errand_completed"
        assert_helper_invariant(done)

    def test_confirm_twice_is_noop(self, errands):
        errand = assigned_errand(errands)
        errands.confirm_completion(errand.id, "helper-1")

        again = errands.confirm_completion(errand.id, "helper-1")

        assert again.status == "awaiting_confirmation"
        statuses = [t.to_status for t in errands.transitions(errand.id)]
        assert statuses.count("awaiting_confirmation") == 1

    def test_confirm_by_stranger_fails(self, errands):
        errand = assigned_errand(errands)
        with pytest.raises(UnauthorizedError):
            errands.confirm_completion(errand.id, "stranger")

    def test_confirm_open_errand_fails(self, errands):
        errand = create_errand(errands)
        with pytest.raises(UnauthorizedError):
            errands.confirm_completion(errand.id, "helper-1", is_requester=False)
        with pytest.raises(InvalidTransitionError):
            errands.confirm_completion(errand.id, "requester-1")

    def test_concurrent_confirmations_complete_once(self, errands, engine):
        errand = assigned_errand(errands)

        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as executor:
            futures = [
                executor.submit(errands.confirm_completion, errand.id, "requester-1"),
                executor.submit(errands.confirm_completion, errand.id, "helper-1"),
            ]
            concurrent.futures.wait(futures)

        assert errands.get_errand(errand.id).status == "completed"
        assert len(engine.credits.history("helper-1")) == 1

    def test_failed_payout_is_queued(self, errands, engine, monkeypatch):
        """Test that a payout failure drops the claim and queues the errand."""
        errand = assigned_errand(errands)

        def broken_issue(*args, **kwargs):
            raise ConnectionError("credits store unavailable")

        monkeypatch.setattr(engine.credits, "issue_once", broken_issue)
        errands.confirm_completion(errand.id, "requester-1")
        done = errands.confirm_completion(errand.id, "helper-1")

        assert done.status == "completed"
        assert not done.payment_released
        pending = engine.side_effects.pending(SideEffectKind.ERRAND_PAYMENT)
        assert [p.entity_id for p in pending] == [errand.id]

    def test_concurrent_release_pays_once(self, errands, engine, monkeypatch):
        """Test that racing payout retries issue credit at most once."""
        errand = assigned_errand(errands, budget="15.00")
        real_issue = engine.credits.issue_once

        def broken_issue(*args, **kwargs):
            raise ConnectionError("credits store unavailable")

        monkeypatch.setattr(engine.credits, "issue_once", broken_issue)
        errands.confirm_completion(errand.id, "requester-1")
        errands.confirm_completion(errand.id, "helper-1")
        monkeypatch.setattr(engine.credits, "issue_once", real_issue)

        with concurrent.futures.ThreadPoolExecutor(max_workers=10) as executor:
            results = list(executor.map(lambda _: errands.release_payment(errand.id), range(10)))

        assert results.count(True) == 1
        assert len(engine.credits.history("helper-1")) == 1
        assert engine.credits.balance("helper-1") == Decimal("15.00")
        assert engine.side_effects.pending(SideEffectKind.ERRAND_PAYMENT) == []

    def test_release_payment_not_completed(self, errands):
        errand = assigned_errand(errands)
        assert errands.release_payment(errand.id) is False

    def test_payout_write_that_raised_is_not_repeated(self, errands, engine, monkeypatch):
        """Test that a payout which landed but reported a timeout is not paid again."""
        errand = assigned_errand(errands, budget="25.00")
        storage = engine.credits.storage
        real_insert = storage.save_entry_if_absent
        calls = []

        def insert_then_time_out(entry):
            calls.append(entry.id)
            inserted = real_insert(entry)
            if len(calls) == 1:
                raise TimeoutError("read timed out")
            return inserted

        monkeypatch.setattr(storage, "save_entry_if_absent", insert_then_time_out)
        errands.confirm_completion(errand.id, "requester-1")
        done = errands.confirm_completion(errand.id, "helper-1")

        assert done.payment_released
        assert len(engine.credits.history("helper-1")) == 1
        assert engine.credits.balance("helper-1") == Decimal("25.00")
        assert engine.side_effects.pending(SideEffectKind.ERRAND_PAYMENT) == []

    def test_repair_payment_issues_missing_credit(self, errands, engine, monkeypatch):
        """Test an errand marked paid whose credit never landed."""
        errand = assigned_errand(errands, budget="12.00")
        with monkeypatch.context() as m:
            m.setattr(errands, "release_payment", lambda errand_id: False)
            errands.confirm_completion(errand.id, "requester-1")
            errands.confirm_completion(errand.id, "helper-1")
        assert errands.storage.mark_payment_released(errand.id, utc_now())
        assert engine.credits.balance("helper-1") == Decimal("0")

        assert errands.repair_payment(errand.id) is True
        assert engine.credits.balance("helper-1") == Decimal("12.00")
        assert errands.repair_payment(errand.id) is False
        assert len(engine.credits.history("helper-1")) == 1

    def test_repair_payment_skips_unclaimed(self, errands):
        errand = assigned_errand(errands)
        assert errands.repair_payment(errand.id) is False


class TestRatings:
    """Tests for rating the helper."""

    def completed_errand(self, errands):
        errand = assigned_errand(errands)
        errands.confirm_completion(errand.id, "requester-1")
        errands.confirm_completion(errand.id, "helper-1")
        return errand

    def test_rate_helper_upserts(self, errands):
        """Test that rating twice updates the single rating."""
        errand = self.completed_errand(errands)

        errands.rate_helper(errand.id, "requester-1", 4, "Quick")
        updated = errands.rate_helper(errand.id, "requester-1", 5, "Quick and kind")

        assert updated.rating == 5
        ratings = errands.storage.list_ratings("helper-1")
        assert len(ratings) == 1
        assert ratings[0].comment == "Quick and kind"

    def test_rate_before_completion_fails(self, errands):
        errand = assigned_errand(errands)
        with pytest.raises(ErrandError, match="completed"):
            errands.rate_helper(errand.id, "requester-1", 5)

    def test_rate_by_helper_fails(self, errands):
        errand = self.completed_errand(errands)
        with pytest.raises(UnauthorizedError):
            errands.rate_helper(errand.id, "helper-1", 5)

    def test_rating_out_of_range_fails(self, errands):
        errand = self.completed_errand(errands)
        with pytest.raises(ErrandError, match="between 1 and 5"):
            errands.rate_helper(errand.id, "requester-1", 6)


class TestCancel:
    """Tests for requester cancellation."""

    def test_cancel_assigned_errand(self, errands, dispatcher):
        """Test that cancelling clears the helper and notifies them."""
        errand = assigned_errand(errands)

        cancelled = errands.cancel(errand.id, "requester-1")

        assert cancelled.status == "cancelled"
        assert cancelled.assigned_helper_id is None
        assert errands.active_errand_count("helper-1") == 0
        assert dispatcher.to("helper-1")[-1]["type"] == "errand_cancelled"
        assert_helper_invariant(cancelled)
        assert errands.transitions(errand.id)[-1].from_status == "assigned"

    def test_cancel_open_errand_rejects_applications(self, errands):
        errand = create_errand(errands)
        errands.apply(errand.id, "helper-1")
        errands.apply(errand.id, "helper-2")

        errands.cancel(errand.id, "requester-1")

        assert {a.status for a in errands.applications_for(errand.id)} == {"rejected"}

    def test_cancel_completed_fails(self, errands):
        errand = assigned_errand(errands)
        errands.confirm_completion(errand.id, "requester-1")
        errands.confirm_completion(errand.id, "helper-1")

        with pytest.raises(InvalidTransitionError):
            errands.cancel(errand.id, "requester-1")

    def test_cancel_by_helper_fails(self, errands):
        errand = assigned_errand(errands)
        with pytest.raises(UnauthorizedError):
            errands.cancel(errand.id, "helper-1")

    def test_list_errands_by_status(self, errands):
        open_one = create_errand(errands)
        assigned_errand(errands)

        listed = errands.list_errands(status=ErrandStatus.OPEN)

        assert [e.id for e in listed] == [open_one.id]
