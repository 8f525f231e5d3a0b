"""Tests for CirculationCoordinator."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from circulation.coordinator import BorrowStatus, CirculationCoordinator, ItemLockRegistry
from circulation.errors import (
    ConcurrencyConflict,
    DuplicateActiveLoan,
    DuplicateActiveReservation,
    InvalidStateTransition,
    NotAuthorized,
    NotFound,
)
from circulation.fines import FineCalculator
from circulation.loans import LoanStatus
from circulation.reservations import ReservationStatus


@pytest.fixture
def single_copy(coordinator):
    """Register an item with one copy."""
    coordinator.register_item("book-1", 1)
    return "book-1"


class TestScenarios:
    """End-to-end lending scenarios."""

    def test_borrow_then_queue(self, coordinator, single_copy):
        """Test the second borrower of a single copy is queued."""
        first = coordinator.borrow_item(single_copy, "alice")

        assert first.status == BorrowStatus.BORROWED
        assert first.loan.status == LoanStatus.BORROWED
        assert coordinator.get_availability(single_copy).available_copies == 0

        second = coordinator.borrow_item(single_copy, "bob")

        assert second.status == BorrowStatus.QUEUED
        assert second.loan is None
        assert second.reservation.queue_position == 1
        assert second.reservation.status == ReservationStatus.ACTIVE

    def test_return_offers_and_waiter_claims(self, coordinator, single_copy, clock, notifier):
        """Test a returned copy is offered and then claimed by the waiter."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        queued = coordinator.borrow_item(single_copy, "bob").reservation

        coordinator.return_item(loan.id)

        offer = coordinator.queue.get_reservation(queued.id)
        assert offer.status == ReservationStatus.OFFERED
        assert offer.expires_datetime == clock.now + timedelta(days=7)
        assert notifier.for_user("bob") == [
            ("bob", single_copy, clock.now + timedelta(days=7))
        ]

        clock.advance(days=2)
        claimed = coordinator.borrow_item(single_copy, "bob")

        assert claimed.status == BorrowStatus.BORROWED
        assert claimed.loan.user_id == "bob"
        assert claimed.reservation.status == ReservationStatus.FULFILLED
        assert coordinator.get_availability(single_copy).available_copies == 0
        assert coordinator.check_invariants(single_copy) == []

    def test_unclaimed_offer_expires(self, coordinator, single_copy, clock):
        """Test an unclaimed offer expires and frees the copy."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        queued = coordinator.borrow_item(single_copy, "bob").reservation
        coordinator.return_item(loan.id)

        clock.advance(days=7, seconds=1)
        result = coordinator.tick()

        assert result.expired_reservations == 1
        assert coordinator.queue.get_reservation(queued.id).status == ReservationStatus.EXPIRED
        assert coordinator.get_availability(single_copy).available_copies == 1

    def test_late_return_fine(self, db, clock, notifier):
        """Test five days late at ten per day is fined fifty."""
        coordinator = CirculationCoordinator(
            db=db,
            notifier=notifier,
            clock=clock,
            fines=FineCalculator(per_day_rate=10, clock=clock),
        )
        coordinator.register_item("book-1", 1)
        loan = coordinator.borrow_item("book-1", "alice").loan

        clock.advance(days=19)
        result = coordinator.return_item(loan.id)

        assert result.fine_assessed == 50
        assert result.loan.fine_amount == 50
        assert result.loan.fine_paid is False

    def test_lost_sole_copy(self, coordinator, single_copy):
        """Test losing the only copy leaves nothing to lend."""
        loan = coordinator.borrow_item(single_copy, "alice").loan

        lost = coordinator.mark_lost(loan.id)

        assert lost.status == LoanStatus.LOST
        availability = coordinator.get_availability(single_copy)
        assert availability.total_copies == 0
        assert availability.available_copies == 0
        assert coordinator.borrow_item(single_copy, "bob").status == BorrowStatus.QUEUED


class TestBorrowRules:
    """Tests for borrow policy."""

    def test_duplicate_loan(self, coordinator):
        """Test a user cannot borrow an item they already hold."""
        coordinator.register_item("book-1", 2)
        coordinator.borrow_item("book-1", "alice")

        with pytest.raises(DuplicateActiveLoan):
            coordinator.borrow_item("book-1", "alice")
        assert coordinator.get_availability("book-1").available_copies == 1

    def test_duplicate_reservation(self, coordinator, single_copy):
        """Test a waiting user cannot queue twice."""
        coordinator.borrow_item(single_copy, "alice")
        coordinator.borrow_item(single_copy, "bob")

        with pytest.raises(DuplicateActiveReservation):
            coordinator.borrow_item(single_copy, "bob")

    def test_unknown_item(self, coordinator):
        """Test borrowing an untracked item."""
        with pytest.raises(NotFound):
            coordinator.borrow_item("missing", "alice")

    def test_offer_cannot_be_taken_by_others(self, coordinator, single_copy):
        """Test a held copy is not lent to someone else."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.borrow_item(single_copy, "bob")
        coordinator.return_item(loan.id)

        result = coordinator.borrow_item(single_copy, "carol")

        assert result.status == BorrowStatus.QUEUED
        assert result.reservation.queue_position == 2

    def test_free_copy_not_taken_past_waiters(self, coordinator):
        """Test a spare copy is not lent over the heads of waiting users."""
        coordinator.register_item("book-1", 2)
        first = coordinator.borrow_item("book-1", "a").loan
        second = coordinator.borrow_item("book-1", "b").loan
        coordinator.borrow_item("book-1", "c")
        coordinator.borrow_item("book-1", "d")
        coordinator.return_item(first.id)
        coordinator.return_item(second.id)

        assert coordinator.get_availability("book-1").available_copies == 1
        result = coordinator.borrow_item("book-1", "e")

        assert result.status == BorrowStatus.QUEUED
        assert result.reservation.queue_position == 3
        assert coordinator.check_invariants("book-1") == []

    def test_claiming_offer_passes_spare_copy_on(self, coordinator):
        """Test the next waiter is offered the spare copy once an offer is claimed."""
        coordinator.register_item("book-1", 2)
        first = coordinator.borrow_item("book-1", "a").loan
        second = coordinator.borrow_item("book-1", "b").loan
        coordinator.borrow_item("book-1", "c")
        waiting = coordinator.borrow_item("book-1", "d").reservation
        coordinator.return_item(first.id)
        coordinator.return_item(second.id)

        coordinator.borrow_item("book-1", "c")

        assert coordinator.queue.get_reservation(waiting.id).status == ReservationStatus.OFFERED
        assert coordinator.get_availability("book-1").available_copies == 0

    def test_lapsed_offer_holder_requeued(self, coordinator, single_copy, clock):
        """Test a user whose offer lapsed goes to the back of the queue."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.borrow_item(single_copy, "bob")
        carol = coordinator.borrow_item(single_copy, "carol").reservation
        coordinator.return_item(loan.id)
        clock.advance(days=8)

        result = coordinator.borrow_item(single_copy, "bob")

        assert result.status == BorrowStatus.QUEUED
        assert result.reservation.queue_position == 3
        assert coordinator.queue.get_reservation(carol.id).status == ReservationStatus.OFFERED

    def test_lapsed_offer_holder_borrows_free_copy(self, coordinator, single_copy, clock):
        """Test a lapsed offer holder may borrow the copy when nobody else waits."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.borrow_item(single_copy, "bob")
        coordinator.return_item(loan.id)
        clock.advance(days=8)

        result = coordinator.borrow_item(single_copy, "bob")

        assert result.status == BorrowStatus.BORROWED
        assert result.reservation is None
        assert coordinator.check_invariants(single_copy) == []

    def test_borrow_return_round_trip(self, coordinator):
        """Test borrowing then returning restores availability."""
        coordinator.register_item("book-1", 3)
        loan = coordinator.borrow_item("book-1", "alice").loan
        coordinator.return_item(loan.id)

        assert coordinator.get_availability("book-1").available_copies == 3

    def test_custom_loan_period(self, coordinator, single_copy, clock):
        """Test a per-borrow loan period overrides the default due date."""
        loan = coordinator.borrow_item(
            single_copy, "alice", loan_period=timedelta(days=3)
        ).loan

        assert loan.due_date == clock.now + timedelta(days=3)

        clock.advance(days=4)
        assert coordinator.tick().overdue_transitioned == 1

    def test_custom_loan_period_on_claimed_offer(self, coordinator, single_copy, clock):
        """Test claiming an offer honours a per-borrow loan period."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.borrow_item(single_copy, "bob")
        coordinator.return_item(loan.id)

        claimed = coordinator.borrow_item(
            single_copy, "bob", loan_period=timedelta(days=21)
        )

        assert claimed.status == BorrowStatus.BORROWED
        assert claimed.loan.due_date == clock.now + timedelta(days=21)

    def test_default_loan_period(self, coordinator, single_copy, clock):
        """Test the configured loan period applies without an override."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        assert loan.due_date == clock.now + timedelta(days=14)

    def test_return_twice(self, coordinator, single_copy):
        """Test a returned loan cannot be returned again."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.return_item(loan.id)

        with pytest.raises(InvalidStateTransition):
            coordinator.return_item(loan.id)
        assert coordinator.check_invariants(single_copy) == []


class TestCancel:
    """Tests for cancelling through the coordinator."""

    def test_cancel_offer_cascades(self, coordinator, single_copy, notifier):
        """Test cancelling an offer moves it to the next waiter."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        bob = coordinator.borrow_item(single_copy, "bob").reservation
        carol = coordinator.borrow_item(single_copy, "carol").reservation
        coordinator.return_item(loan.id)

        result = coordinator.cancel_reservation(bob.id, "bob")

        assert result.reservation.status == ReservationStatus.CANCELLED
        assert coordinator.queue.get_reservation(carol.id).status == ReservationStatus.OFFERED
        assert notifier.for_user("carol")
        assert coordinator.check_invariants(single_copy) == []

    def test_cancel_not_owner(self, coordinator, single_copy):
        """Test users cannot cancel each other's reservations."""
        coordinator.borrow_item(single_copy, "alice")
        bob = coordinator.borrow_item(single_copy, "bob").reservation

        with pytest.raises(NotAuthorized):
            coordinator.cancel_reservation(bob.id, "alice")

    def test_cancel_unknown(self, coordinator):
        """Test cancelling an unknown reservation."""
        with pytest.raises(NotFound):
            coordinator.cancel_reservation("missing", "alice")


class TestFines:
    """Tests for fine payment."""

    def test_pay_fine(self, coordinator, single_copy, clock):
        """Test only a payment covering the whole fine settles it."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        clock.advance(days=17)
        coordinator.return_item(loan.id)

        first = coordinator.pay_fine(loan.id, 2.0)
        second = coordinator.pay_fine(loan.id, 2.0)
        assert first.fully_paid is False
        assert second.fully_paid is False
        assert second.loan.outstanding_fine == 3.0
        assert second.loan.fine_paid_amount == 4.0

        paid = coordinator.pay_fine(loan.id, 3.0)
        assert paid.fully_paid is True
        assert paid.loan.fine_paid is True

    def test_pay_without_fine(self, coordinator, single_copy):
        """Test a loan returned on time is already fully paid."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.return_item(loan.id)

        result = coordinator.pay_fine(loan.id, 1.0)

        assert result.fully_paid is True
        assert result.loan.fine_amount == 0.0

    def test_non_positive_payment(self, coordinator, single_copy, clock):
        """Test zero payments are rejected."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        clock.advance(days=16)
        coordinator.return_item(loan.id)

        with pytest.raises(ValueError):
            coordinator.pay_fine(loan.id, 0)


class TestTick:
    """Tests for the periodic sweep."""

    def test_tick_marks_overdue(self, coordinator, single_copy, clock):
        """Test loans past due are marked overdue."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        clock.advance(days=15)

        result = coordinator.tick()

        assert result.overdue_transitioned == 1
        assert coordinator.ledger.get_loan(loan.id).status == LoanStatus.OVERDUE

    def test_tick_idempotent(self, coordinator, single_copy, clock):
        """Test a second tick without changes does nothing."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.borrow_item(single_copy, "bob")
        coordinator.return_item(loan.id)
        coordinator.borrow_item(single_copy, "carol")
        clock.advance(days=8)

        first = coordinator.tick()
        before = coordinator.get_library_stats()
        second = coordinator.tick()

        assert first.expired_reservations == 1
        assert second.overdue_transitioned == 0
        assert second.expired_reservations == 0
        assert coordinator.get_library_stats() == before

    def test_tick_with_nothing_to_do(self, coordinator):
        """Test an empty library ticks quietly."""
        result = coordinator.tick()
        assert result.overdue_transitioned == 0
        assert result.expired_reservations == 0

    def test_failed_item_does_not_stop_sweep(
        self, coordinator, clock, monkeypatch, caplog
    ):
        """Test an overdue sweep failure on one item leaves offer expiry running."""
        coordinator.register_item("book-1", 1)
        coordinator.register_item("book-2", 1)
        coordinator.borrow_item("book-1", "alice")
        loan = coordinator.borrow_item("book-2", "bob").loan
        coordinator.borrow_item("book-2", "carol")
        coordinator.return_item(loan.id)
        clock.advance(days=15)

        def broken_sweep(item_id=None, session=None):
            raise InvalidStateTransition(f"cannot sweep {item_id}")

        monkeypatch.setattr(coordinator.ledger, "sweep_overdue", broken_sweep)
        result = coordinator.tick()

        assert result.overdue_transitioned == 0
        assert result.expired_reservations == 1
        assert "Overdue sweep failed for item book-1" in caplog.text
        assert coordinator.get_availability("book-2").available_copies == 1


class TestNotifications:
    """Tests for offer delivery."""

    def test_notifier_failure_does_not_roll_back(self, db, clock, caplog):
        """Test a failing notifier is logged and the offer persists."""

        class BrokenNotifier:
            def notify(self, user_id, item_id, expires_at):
                raise ConnectionError("mail server down")

        coordinator = CirculationCoordinator(db=db, notifier=BrokenNotifier(), clock=clock)
        coordinator.register_item("book-1", 1)
        loan = coordinator.borrow_item("book-1", "alice").loan
        bob = coordinator.borrow_item("book-1", "bob").reservation

        coordinator.return_item(loan.id)

        assert coordinator.queue.get_reservation(bob.id).status == ReservationStatus.OFFERED
        assert "Failed to notify bob" in caplog.text

    def test_no_notice_when_operation_fails(self, coordinator, single_copy, notifier):
        """Test nothing is sent for a transaction that rolled back."""
        loan = coordinator.borrow_item(single_copy, "alice").loan
        coordinator.borrow_item(single_copy, "bob")
        coordinator.return_item(loan.id)
        notifier.sent.clear()

        with pytest.raises(InvalidStateTransition):
            coordinator.return_item(loan.id)
        assert notifier.sent == []


class TestCatalogChanges:
    """Tests for acquisitions and withdrawals."""

    def test_acquisition_offers_waiter(self, coordinator, single_copy, notifier):
        """Test a new copy goes to the head of the queue."""
        coordinator.borrow_item(single_copy, "alice")
        bob = coordinator.borrow_item(single_copy, "bob").reservation

        availability = coordinator.on_catalog_copy_count_changed(single_copy, 2)

        assert availability.total_copies == 2
        assert availability.available_copies == 0
        assert coordinator.queue.get_reservation(bob.id).status == ReservationStatus.OFFERED
        assert notifier.for_user("bob")

    def test_withdrawal_of_free_copies(self, coordinator):
        """Test free copies can be withdrawn."""
        coordinator.register_item("book-1", 3)
        coordinator.borrow_item("book-1", "alice")

        availability = coordinator.on_catalog_copy_count_changed("book-1", 1)

        assert availability.total_copies == 1
        assert availability.available_copies == 0
        assert coordinator.check_invariants("book-1") == []

    def test_withdrawal_below_in_use(self, coordinator, single_copy):
        """Test copies out on loan cannot be withdrawn."""
        coordinator.borrow_item(single_copy, "alice")

        with pytest.raises(InvalidStateTransition):
            coordinator.on_catalog_copy_count_changed(single_copy, 0)

    def test_register_duplicate(self, coordinator, single_copy):
        """Test an item is registered only once."""
        with pytest.raises(ValueError):
            coordinator.register_item(single_copy, 1)


class TestStats:
    """Tests for statistics and invariant checks."""

    def test_library_stats(self, coordinator, clock):
        """Test library-wide statistics."""
        coordinator.register_item("book-1", 1)
        coordinator.register_item("book-2", 2)
        loan = coordinator.borrow_item("book-1", "alice").loan
        coordinator.borrow_item("book-1", "bob")
        coordinator.borrow_item("book-2", "bob")
        clock.advance(days=15)
        coordinator.return_item(loan.id)

        stats = coordinator.get_library_stats()

        assert stats.total_items == 2
        assert stats.total_copies == 3
        assert stats.available_copies == 1
        assert stats.loans.total_loans == 2
        assert stats.loans.returned_loans == 1
        assert stats.loans.total_fines == 1.0
        assert stats.reservations.offered_reservations == 1

    def test_user_stats(self, coordinator, single_copy):
        """Test per-user statistics leave out library totals."""
        coordinator.borrow_item(single_copy, "alice")
        coordinator.borrow_item(single_copy, "bob")

        stats = coordinator.get_library_stats("bob")

        assert stats.total_items is None
        assert stats.loans.total_loans == 0
        assert stats.reservations.active_reservations == 1

    def test_invariants_hold_through_busy_day(self, coordinator, clock):
        """Test the accounting stays consistent across many operations."""
        coordinator.register_item("book-1", 2)
        users = ["u1", "u2", "u3", "u4", "u5"]
        results = {user: coordinator.borrow_item("book-1", user) for user in users}
        coordinator.return_item(results["u1"].loan.id)
        coordinator.cancel_reservation(results["u4"].reservation.id, "u4")
        coordinator.borrow_item("book-1", "u3")
        clock.advance(days=20)
        coordinator.tick()
        coordinator.mark_lost(results["u2"].loan.id)

        assert coordinator.check_invariants("book-1") == []


class TestRetry:
    """Tests for retrying busy database operations."""

    def test_retry_then_succeed(self, coordinator):
        """Test a locked database is retried."""
        coordinator.initial_backoff = 0
        calls = []

        def operation():
            calls.append(1)
            if len(calls) < 2:
                raise OperationalError("UPDATE items", {}, Exception("database is locked"))
            return "done"

        assert coordinator._with_retry("book-1", operation) == "done"
        assert len(calls) == 2

    def test_retry_exhausted(self, coordinator):
        """Test a persistently busy database surfaces as a conflict."""
        coordinator.initial_backoff = 0

        def operation():
            raise OperationalError("UPDATE items", {}, Exception("database is locked"))

        with pytest.raises(ConcurrencyConflict) as exc_info:
            coordinator._with_retry("book-1", operation)
        assert exc_info.value.retryable is True

    def test_other_errors_not_retried(self, coordinator):
        """Test unrelated database errors propagate at once."""
        calls = []

        def operation():
            calls.append(1)
            raise OperationalError("SELECT", {}, Exception("no such table: items"))

        with pytest.raises(OperationalError):
            coordinator._with_retry("book-1", operation)
        assert len(calls) == 1

    def test_lock_timeout(self, coordinator, single_copy):
        """Test a held item lock surfaces as a conflict."""
        coordinator.locks = ItemLockRegistry(max_attempts=2, initial_backoff=0.01)
        with coordinator.locks.hold(single_copy):
            with pytest.raises(ConcurrencyConflict):
                coordinator.borrow_item(single_copy, "alice")
