"""Loan ledger for borrowing, returning and losing copies."""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..availability.tracker import AvailabilityTracker
from ..db.sqlite import Database, get_db
from ..errors import DuplicateActiveLoan, NotFound
from ..fines.calculator import FineCalculator
from ..reservations.queue import ReservationQueue
from ..utils import Clock, to_iso, utc_now
from .models import Loan
from .schemas import ACTIVE_LOAN_STATUSES, LoanStats, LoanStatus

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_LOAN_STATUSES]


class LoanLedger:
    """Records loans and owns their due dates, overdue and lost state."""

    def __init__(
        self,
        db: Optional[Database] = None,
        tracker: Optional[AvailabilityTracker] = None,
        queue: Optional[ReservationQueue] = None,
        fines: Optional[FineCalculator] = None,
        clock: Clock = utc_now,
        loan_period: timedelta = timedelta(days=14),
    ):
        """Initialize loan ledger.

        Args:
            db: Database instance
            tracker: Availability tracker sharing the database
            queue: Reservation queue notified when a copy comes back
            fines: Fine calculator
            clock: Source of the current time
            loan_period: Default time between borrowing and due date
        """
        self.db = db or get_db()
        self.tracker = tracker or AvailabilityTracker(self.db)
        self.queue = queue or ReservationQueue(self.db, self.tracker, clock=clock)
        self.fines = fines or FineCalculator(clock=clock)
        self.clock = clock
        self.loan_period = loan_period

    # -------------------------------------------------------------------------
    # Loan Lifecycle
    # -------------------------------------------------------------------------

    def create_loan(
        self,
        item_id: str,
        user_id: str,
        loan_period: Optional[timedelta] = None,
        session: Optional[Session] = None,
    ) -> Loan:
        """Create a loan for a copy the caller already holds.

        The copy must have been taken out of the pool beforehand, either by
        ``AvailabilityTracker.try_reserve_copy`` or by an offer.

        Args:
            item_id: Item ID
            user_id: User ID
            loan_period: Override of the default loan period

        Returns:
            Created loan

        Raises:
            DuplicateActiveLoan: If the user already has the item on loan
        """

        def _create(s: Session) -> Loan:
            if self.get_active_loan(item_id, user_id, s) is not None:
                raise DuplicateActiveLoan(item_id, user_id)

            now = self.clock()
            loan = Loan(
                item_id=item_id,
                user_id=user_id,
                status=LoanStatus.BORROWED,
                borrowed_at=to_iso(now),
                due_date=to_iso(now + (loan_period or self.loan_period)),
                fine_amount=0.0,
                fine_paid=False,
                fine_paid_amount=0.0,
                updated_at=to_iso(now),
            )
            s.add(loan)
            s.flush()
            logger.info("Loan %s: %s borrowed %s", loan.id, user_id, item_id)
            return loan

        return self.queue.run(_create, session)

    def return_loan(self, loan_id: str, session: Optional[Session] = None) -> Loan:
        """Mark a loan as returned and put the copy back into circulation.

        A late return is fined before the copy is released. The released copy
        is then offered to the head of the item's waitlist.

        Args:
            loan_id: Loan ID

        Returns:
            Returned loan

        Raises:
            InvalidStateTransition: If the loan is not borrowed or overdue
        """

        def _return(s: Session) -> Loan:
            loan = self.get_loan(loan_id, s)
            now = self.clock()

            loan.status = LoanStatus.RETURNED
            loan.returned_at = to_iso(now)
            loan.updated_at = to_iso(now)
            if now > loan.due_datetime:
                loan.fine_amount = self.fines.assess(loan)
                logger.info("Loan %s returned late, fined %.2f", loan_id, loan.fine_amount)
            s.flush()

            self.tracker.release_copy(loan.item_id, s)
            self.queue.on_copy_available(loan.item_id, s)
            return loan

        return self.queue.run(_return, session)

    def mark_lost(self, loan_id: str, session: Optional[Session] = None) -> Loan:
        """Mark a loan's copy as lost and charge its replacement cost.

        The copy leaves the item's total for good; it is never released.

        Raises:
            InvalidStateTransition: If the loan is not borrowed or overdue
        """

        def _lost(s: Session) -> Loan:
            loan = self.get_loan(loan_id, s)
            loan.status = LoanStatus.LOST
            loan.updated_at = to_iso(self.clock())

            item = self.tracker.get_item(loan.item_id, s)
            loan.fine_amount = self.fines.assess(loan, replacement_cost=item.replacement_cost)
            s.flush()

            self.tracker.remove_copy_permanently(loan.item_id, s)
            logger.warning("Loan %s marked lost, fined %.2f", loan_id, loan.fine_amount)
            return loan

        return self.queue.run(_lost, session)

    def pay_fine(
        self, loan_id: str, amount: float, session: Optional[Session] = None
    ) -> Loan:
        """Record a payment reported by the payment service.

        Args:
            loan_id: Loan ID
            amount: Amount paid

        Returns:
            Updated loan
        """

        def _pay(s: Session) -> Loan:
            loan = s.execute(
                select(Loan).where(Loan.id == loan_id).with_for_update()
            ).scalar_one_or_none()
            if loan is None:
                raise NotFound("Loan", loan_id)
            self.fines.apply_payment(loan, amount)
            loan.updated_at = to_iso(self.clock())
            s.flush()
            return loan

        return self.queue.run(_pay, session)

    def sweep_overdue(
        self, item_id: Optional[str] = None, session: Optional[Session] = None
    ) -> int:
        """Move borrowed loans past their due date to overdue.

        Loans already overdue are left alone, so repeated sweeps are no-ops.

        Args:
            item_id: Restrict the sweep to one item

        Returns:
            Number of loans transitioned
        """

        def _sweep(s: Session) -> int:
            now = to_iso(self.clock())
            stmt = select(Loan).where(
                Loan.status == LoanStatus.BORROWED.value,
                Loan.due_date < now,
            )
            if item_id:
                stmt = stmt.where(Loan.item_id == item_id)

            loans = s.execute(stmt).scalars().all()
            for loan in loans:
                loan.status = LoanStatus.OVERDUE
                loan.updated_at = now
            s.flush()
            if loans:
                logger.info("Marked %d loans overdue", len(loans))
            return len(loans)

        return self.queue.run(_sweep, session)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_loan(self, loan_id: str, session: Optional[Session] = None) -> Loan:
        """Get a loan by ID.

        Raises:
            NotFound: If the loan does not exist
        """

        def _get(s: Session) -> Loan:
            loan = s.get(Loan, loan_id)
            if loan is None:
                raise NotFound("Loan", loan_id)
            return loan

        return self.queue.run(_get, session)

    def get_active_loan(
        self, item_id: str, user_id: str, session: Optional[Session] = None
    ) -> Optional[Loan]:
        """Get the user's borrowed or overdue loan on an item."""

        def _get(s: Session) -> Optional[Loan]:
            return s.execute(
                select(Loan).where(
                    Loan.item_id == item_id,
                    Loan.user_id == user_id,
                    Loan.status.in_(_ACTIVE),
                )
            ).scalar_one_or_none()

        return self.queue.run(_get, session)

    def list_loans(
        self,
        user_id: Optional[str] = None,
        item_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
    ) -> list[Loan]:
        """List loans with optional filters.

        Args:
            user_id: Filter by user
            item_id: Filter by item
            status: Filter by status

        Returns:
            Loans, most recent first
        """
        with self.db.get_session() as session:
            stmt = select(Loan)

            if user_id:
                stmt = stmt.where(Loan.user_id == user_id)
            if item_id:
                stmt = stmt.where(Loan.item_id == item_id)
            if status:
                stmt = stmt.where(Loan.status == status.value)

            stmt = stmt.order_by(Loan.borrowed_at.desc())

            loans = session.execute(stmt).scalars().all()
            for loan in loans:
                session.expunge(loan)
            return list(loans)

    def list_overdue(self) -> list[Loan]:
        """List open loans past their due date, swept or not."""
        with self.db.get_session() as session:
            now = to_iso(self.clock())
            stmt = (
                select(Loan)
                .where(Loan.status.in_(_ACTIVE), Loan.due_date < now)
                .order_by(Loan.due_date)
            )
            loans = session.execute(stmt).scalars().all()
            for loan in loans:
                session.expunge(loan)
            return list(loans)

    def list_due_soon(self, days: int = 3) -> list[Loan]:
        """List borrowed loans due within the given number of days."""
        with self.db.get_session() as session:
            now = self.clock()
            stmt = (
                select(Loan)
                .where(
                    Loan.status == LoanStatus.BORROWED.value,
                    Loan.due_date >= to_iso(now),
                    Loan.due_date <= to_iso(now + timedelta(days=days)),
                )
                .order_by(Loan.due_date)
            )
            loans = session.execute(stmt).scalars().all()
            for loan in loans:
                session.expunge(loan)
            return list(loans)

    def items_with_overdue(self) -> list[str]:
        """Item IDs that have borrowed loans past their due date."""
        now = to_iso(self.clock())
        with self.db.get_session() as session:
            rows = session.execute(
                select(Loan.item_id)
                .where(Loan.status == LoanStatus.BORROWED.value, Loan.due_date < now)
                .distinct()
                .order_by(Loan.item_id)
            ).scalars().all()
            return list(rows)

    def get_stats(self, user_id: Optional[str] = None) -> LoanStats:
        """Get loan statistics.

        Args:
            user_id: Restrict counts to one user

        Returns:
            LoanStats with counts and fine totals
        """
        with self.db.get_session() as session:
            stmt = select(Loan.status, func.count()).group_by(Loan.status)
            if user_id:
                stmt = stmt.where(Loan.user_id == user_id)
            counts = dict(session.execute(stmt).all())

            fines_stmt = select(func.coalesce(func.sum(Loan.fine_amount), 0.0))
            unpaid_stmt = select(
                func.coalesce(func.sum(Loan.fine_amount), 0.0)
            ).where(Loan.fine_paid.is_(False))
            if user_id:
                fines_stmt = fines_stmt.where(Loan.user_id == user_id)
                unpaid_stmt = unpaid_stmt.where(Loan.user_id == user_id)

            total_fines = session.execute(fines_stmt).scalar() or 0.0
            unpaid_fines = session.execute(unpaid_stmt).scalar() or 0.0

        borrowed = counts.get(LoanStatus.BORROWED.value, 0)
        overdue = counts.get(LoanStatus.OVERDUE.value, 0)
        return LoanStats(
            total_loans=sum(counts.values()),
            active_loans=borrowed + overdue,
            overdue_loans=overdue,
            returned_loans=counts.get(LoanStatus.RETURNED.value, 0),
            lost_loans=counts.get(LoanStatus.LOST.value, 0),
            total_fines=round(float(total_fines), 2),
            unpaid_fines=round(float(unpaid_fines), 2),
        )
