"""Circulation coordinator - the public face of the engine.

Sequences the tracker, ledger and queue into atomic per-item operations:
every mutation runs inside the item's lock and a single database
transaction, and offer notices go out only after that transaction commits.
"""

import logging
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..availability.tracker import AvailabilityTracker
from ..config import Config, get_config
from ..db.models import Item
from ..db.schemas import ItemAvailability
from ..db.sqlite import Database, get_db
from ..errors import (
    CirculationError,
    ConcurrencyConflict,
    DuplicateActiveLoan,
    DuplicateActiveReservation,
    NoCopiesAvailable,
)
from ..fines.calculator import FineCalculator
from ..loans.ledger import LoanLedger
from ..loans.models import Loan
from ..loans.schemas import ACTIVE_LOAN_STATUSES, LoanResponse
from ..notifications import Notifier, drain_notices
from ..reservations.models import Reservation
from ..reservations.queue import ReservationQueue
from ..reservations.schemas import (
    OPEN_RESERVATION_STATUSES,
    ReservationResponse,
    ReservationStatus,
)
from ..utils import Clock, utc_now
from .locks import ItemLockRegistry
from .schemas import (
    BorrowResult,
    BorrowStatus,
    CancelResult,
    CirculationStats,
    PaymentResult,
    ReturnResult,
    TickResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CirculationCoordinator:
    """Atomic borrow, return and cancel operations over lendable items."""

    def __init__(
        self,
        db: Optional[Database] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
        loan_period: timedelta = timedelta(days=14),
        hold_window: timedelta = timedelta(days=7),
        fines: Optional[FineCalculator] = None,
        locks: Optional[ItemLockRegistry] = None,
        max_retries: int = 3,
        initial_backoff: float = 0.05,
    ):
        """Initialize circulation coordinator.

        Args:
            db: Database instance
            notifier: Receives offer notices
            clock: Source of the current time
            loan_period: Time between borrowing and due date
            hold_window: How long an offered copy stays claimable
            fines: Fine calculator
            locks: Per-item lock registry
            max_retries: Attempts when the database reports it is busy
            initial_backoff: First retry delay in seconds, doubled each retry
        """
        self.db = db or get_db()
        self.clock = clock
        self.locks = locks or ItemLockRegistry()
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff

        self.tracker = AvailabilityTracker(self.db)
        self.queue = ReservationQueue(
            self.db,
            self.tracker,
            notifier=notifier,
            clock=clock,
            hold_window=hold_window,
        )
        self.fines = fines or FineCalculator(clock=clock)
        self.ledger = LoanLedger(
            self.db,
            self.tracker,
            self.queue,
            self.fines,
            clock=clock,
            loan_period=loan_period,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        db: Optional[Database] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
    ) -> "CirculationCoordinator":
        """Build a coordinator from application configuration."""
        config = config or get_config()
        return cls(
            db=db or get_db(str(config.db_path)),
            notifier=notifier,
            clock=clock,
            loan_period=config.loan_period,
            hold_window=config.hold_window,
            fines=FineCalculator.from_config(config, clock=clock),
            locks=ItemLockRegistry(config.lock_max_attempts, config.lock_initial_backoff),
        )

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def _item_transaction(self, item_id: str) -> Generator[Session, None, None]:
        """Lock an item and open a transaction; notify after commit."""
        with self.locks.hold(item_id):
            with self.db.get_session() as session:
                yield session
                notices = drain_notices(session)
        self.queue.dispatch(notices)

    def _with_retry(self, item_id: str, operation: Callable[[], T]) -> T:
        """Run an operation, retrying while the database is busy.

        Args:
            item_id: Item the operation locks
            operation: Callable to execute

        Returns:
            Result of operation
        """
        backoff = self.initial_backoff

        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except OperationalError as e:
                message = str(e.orig).lower()
                if "locked" not in message and "busy" not in message:
                    raise
                if attempt == self.max_retries:
                    raise ConcurrencyConflict(item_id, attempt) from e
                logger.warning("Database busy on item %s, retrying in %.2fs", item_id, backoff)
                time.sleep(backoff)
                backoff *= 2

    def _item_of_loan(self, loan_id: str) -> str:
        return self.ledger.get_loan(loan_id).item_id

    def _item_of_reservation(self, reservation_id: str) -> str:
        return self.queue.get_reservation(reservation_id).item_id

    # -------------------------------------------------------------------------
    # Catalog Hooks
    # -------------------------------------------------------------------------

    def register_item(
        self,
        item_id: str,
        total_copies: int,
        replacement_cost: Optional[float] = None,
    ) -> ItemAvailability:
        """Start circulating an item supplied by the catalog."""
        item = self.tracker.register_item(item_id, total_copies, replacement_cost)
        return ItemAvailability.model_validate(item)

    def get_availability(self, item_id: str) -> ItemAvailability:
        """Get the copy counts of an item."""
        return self.tracker.get_availability(item_id)

    def on_catalog_copy_count_changed(self, item_id: str, new_total: int) -> ItemAvailability:
        """Reconcile an acquisition or withdrawal reported by the catalog.

        Newly added copies are offered to waiting users.

        Raises:
            InvalidStateTransition: If fewer copies would remain than are in use
        """

        def _reconcile() -> ItemAvailability:
            with self._item_transaction(item_id) as session:
                item, added = self.tracker.reconcile_total(item_id, new_total, session)
                if added:
                    self.queue.on_copy_available(item_id, session)
                return ItemAvailability.model_validate(
                    self.tracker.get_item(item_id, session)
                )

        return self._with_retry(item_id, _reconcile)

    # -------------------------------------------------------------------------
    # Public Operations
    # -------------------------------------------------------------------------

    def borrow_item(
        self,
        item_id: str,
        user_id: str,
        loan_period: Optional[timedelta] = None,
    ) -> BorrowResult:
        """Lend a copy to a user, or put the user in the waitlist.

        A user holding a live offer claims the held copy. Otherwise a free
        copy is lent only when nobody is waiting; everyone else is queued.

        Args:
            item_id: Item ID
            user_id: User ID
            loan_period: Override of the default loan period for this loan

        Returns:
            BorrowResult with either a loan or a reservation

        Raises:
            DuplicateActiveLoan: If the user already has the item on loan
            DuplicateActiveReservation: If the user is already waiting
            NotFound: If the item is not tracked
            ConcurrencyConflict: If the item stayed busy
        """
        return self._with_retry(
            item_id, lambda: self._borrow(item_id, user_id, loan_period)
        )

    def _borrow(
        self, item_id: str, user_id: str, loan_period: Optional[timedelta]
    ) -> BorrowResult:
        with self._item_transaction(item_id) as session:
            self.tracker.lock_item(item_id, session)
            # A lapsed offer must never be claimed
            self.queue.expire_sweep(item_id=item_id, session=session)

            if self.ledger.get_active_loan(item_id, user_id, session) is not None:
                raise DuplicateActiveLoan(item_id, user_id)

            reservation = self.queue.get_open_reservation(item_id, user_id, session)
            if reservation is not None:
                if reservation.status != ReservationStatus.OFFERED:
                    raise DuplicateActiveReservation(item_id, user_id)
                loan = self.ledger.create_loan(
                    item_id, user_id, loan_period=loan_period, session=session
                )
                reservation = self.queue.fulfill(reservation.id, session=session)
                return BorrowResult(
                    status=BorrowStatus.BORROWED,
                    loan=LoanResponse.model_validate(loan),
                    reservation=ReservationResponse.model_validate(reservation),
                )

            waiting = any(
                r.status == ReservationStatus.ACTIVE
                for r in self.queue.list_queue(item_id, session)
            )
            if not waiting:
                try:
                    self.tracker.try_reserve_copy(item_id, session)
                except NoCopiesAvailable:
                    pass
                else:
                    loan = self.ledger.create_loan(
                        item_id, user_id, loan_period=loan_period, session=session
                    )
                    return BorrowResult(
                        status=BorrowStatus.BORROWED,
                        loan=LoanResponse.model_validate(loan),
                    )

            reservation = self.queue.enqueue(item_id, user_id, session=session)
            return BorrowResult(
                status=BorrowStatus.QUEUED,
                reservation=ReservationResponse.model_validate(reservation),
            )

    def return_item(self, loan_id: str) -> ReturnResult:
        """Take a copy back and offer it to the next waiting user.

        Args:
            loan_id: Loan ID

        Returns:
            ReturnResult with the closed loan and the fine assessed

        Raises:
            InvalidStateTransition: If the loan is already closed
            NotFound: If the loan does not exist
        """
        item_id = self._item_of_loan(loan_id)

        def _return() -> ReturnResult:
            with self._item_transaction(item_id) as session:
                self.tracker.lock_item(item_id, session)
                loan = self.ledger.return_loan(loan_id, session=session)
                return ReturnResult(
                    loan=LoanResponse.model_validate(loan),
                    fine_assessed=loan.fine_amount or 0.0,
                )

        return self._with_retry(item_id, _return)

    def cancel_reservation(self, reservation_id: str, user_id: str) -> CancelResult:
        """Cancel a reservation on behalf of its owner.

        Raises:
            NotAuthorized: If the user does not own the reservation
            InvalidStateTransition: If the reservation is already closed
            NotFound: If the reservation does not exist
        """
        item_id = self._item_of_reservation(reservation_id)

        def _cancel() -> CancelResult:
            with self._item_transaction(item_id) as session:
                self.tracker.lock_item(item_id, session)
                reservation = self.queue.cancel(
                    reservation_id, by_user=user_id, session=session
                )
                return CancelResult(
                    reservation=ReservationResponse.model_validate(reservation)
                )

        return self._with_retry(item_id, _cancel)

    def mark_lost(self, loan_id: str) -> LoanResponse:
        """Write off the copy of a loan and charge its replacement cost."""
        item_id = self._item_of_loan(loan_id)

        def _lost() -> LoanResponse:
            with self._item_transaction(item_id) as session:
                self.tracker.lock_item(item_id, session)
                loan = self.ledger.mark_lost(loan_id, session=session)
                return LoanResponse.model_validate(loan)

        return self._with_retry(item_id, _lost)

    def pay_fine(self, loan_id: str, amount: float) -> PaymentResult:
        """Record a payment reported by the payment service.

        Only the loan row is touched, so the item lock is not taken.
        """
        item_id = self._item_of_loan(loan_id)

        def _pay() -> PaymentResult:
            with self.db.get_session() as session:
                loan = self.ledger.pay_fine(loan_id, amount, session=session)
                return PaymentResult(
                    loan=LoanResponse.model_validate(loan),
                    fully_paid=loan.fine_paid or not loan.fine_amount,
                )

        return self._with_retry(item_id, _pay)

    def tick(self) -> TickResult:
        """Run the periodic sweeps: overdue loans first, then lapsed offers.

        Each item is swept under its own lock. A failure on one item is
        logged and does not stop the remaining items or the expiry sweep.

        Returns:
            TickResult with the number of transitions made
        """
        result = TickResult()

        for item_id in self.ledger.items_with_overdue():
            try:
                with self._item_transaction(item_id) as session:
                    count = self.ledger.sweep_overdue(item_id=item_id, session=session)
                result.overdue_transitioned += count
            except (CirculationError, SQLAlchemyError):
                logger.exception("Overdue sweep failed for item %s", item_id)

        for item_id in self.queue.items_with_lapsed_offers():
            try:
                with self._item_transaction(item_id) as session:
                    count = self.queue.expire_sweep(item_id=item_id, session=session)
                result.expired_reservations += count
            except (CirculationError, SQLAlchemyError):
                logger.exception("Offer expiry failed for item %s", item_id)

        if result.overdue_transitioned or result.expired_reservations:
            logger.info(
                "Tick: %d loans overdue, %d offers expired",
                result.overdue_transitioned,
                result.expired_reservations,
            )
        return result

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    def get_library_stats(self, user_id: Optional[str] = None) -> CirculationStats:
        """Get circulation statistics, library-wide or for one user."""
        stats = CirculationStats(
            loans=self.ledger.get_stats(user_id),
            reservations=self.queue.get_stats(user_id),
        )
        if user_id is None:
            with self.db.get_session() as session:
                total_items, total_copies, available = session.execute(
                    select(
                        func.count(Item.id),
                        func.coalesce(func.sum(Item.total_copies), 0),
                        func.coalesce(func.sum(Item.available_copies), 0),
                    )
                ).one()
            stats.total_items = total_items
            stats.total_copies = total_copies
            stats.available_copies = available
        return stats

    def check_invariants(self, item_id: str) -> list[str]:
        """Check an item's copy accounting and queue shape.

        Returns:
            Descriptions of every violated invariant; empty when consistent
        """
        with self.db.get_session() as session:
            item = self.tracker.get_item(item_id, session)
            active_loans = session.execute(
                select(func.count()).where(
                    Loan.item_id == item_id,
                    Loan.status.in_([s.value for s in ACTIVE_LOAN_STATUSES]),
                )
            ).scalar()
            open_reservations = session.execute(
                select(Reservation.status, Reservation.queue_position).where(
                    Reservation.item_id == item_id,
                    Reservation.status.in_([s.value for s in OPEN_RESERVATION_STATUSES]),
                )
            ).all()
            total, available = item.total_copies, item.available_copies

        offered = sum(1 for status, _ in open_reservations if status == "offered")
        waiting = len(open_reservations) - offered
        positions = [position for _, position in open_reservations]

        problems = []
        if not 0 <= available <= total:
            problems.append(f"available copies {available} outside 0..{total}")
        if available + active_loans + offered != total:
            problems.append(
                f"{available} free + {active_loans} on loan + {offered} offered "
                f"!= {total} total"
            )
        if offered > 1:
            problems.append(f"{offered} offers outstanding")
        if len(set(positions)) != len(positions):
            problems.append("duplicate queue positions")
        if available > 0 and waiting and not offered:
            problems.append("free copy left unoffered while users wait")
        return problems
