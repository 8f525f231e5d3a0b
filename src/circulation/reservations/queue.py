"""Reservation queue - per-item FIFO waitlist and copy offers."""

import logging
from datetime import timedelta
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..availability.tracker import AvailabilityTracker
from ..db.models import Base
from ..db.sqlite import Database, get_db
from ..errors import (
    DuplicateActiveReservation,
    NoCopiesAvailable,
    NotAuthorized,
    NotFound,
)
from ..notifications import (
    LoggingNotifier,
    Notifier,
    OfferNotice,
    dispatch,
    drain_notices,
    queue_notice,
)
from ..utils import Clock, to_iso, utc_now
from .models import Reservation
from .schemas import OPEN_RESERVATION_STATUSES, ReservationStats, ReservationStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OPEN = [s.value for s in OPEN_RESERVATION_STATUSES]


class ReservationQueue:
    """Manages waitlists and turns freed copies into offers.

    An offer holds its copy out of the free pool until it is fulfilled,
    expires or is cancelled. Only one offer per item is outstanding at a
    time; further free copies wait in the pool until it resolves.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        tracker: Optional[AvailabilityTracker] = None,
        notifier: Optional[Notifier] = None,
        clock: Clock = utc_now,
        hold_window: timedelta = timedelta(days=7),
    ):
        """Initialize reservation queue.

        Args:
            db: Database instance
            tracker: Availability tracker sharing the database
            notifier: Receives offer notices after commit
            clock: Source of the current time
            hold_window: How long an offer stays claimable
        """
        if hold_window <= timedelta(0):
            raise ValueError("hold_window must be positive")
        self.db = db or get_db()
        self.tracker = tracker or AvailabilityTracker(self.db)
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.hold_window = hold_window

    def run(self, operation: Callable[[Session], T], session: Optional[Session] = None) -> T:
        """Run an operation in the caller's session or in a new one.

        With a new session, returned rows are detached and offer notices are
        dispatched once the session has committed. With the caller's session
        the caller owns both.
        """
        if session:
            return operation(session)
        with self.db.get_session() as s:
            result = operation(s)
            _detach(s, result)
            notices = drain_notices(s)
        self.dispatch(notices)
        return result

    def dispatch(self, notices: list[OfferNotice]) -> int:
        """Hand committed offer notices to the notifier."""
        return dispatch(self.notifier, notices)

    # -------------------------------------------------------------------------
    # Queue Operations
    # -------------------------------------------------------------------------

    def enqueue(
        self, item_id: str, user_id: str, session: Optional[Session] = None
    ) -> Reservation:
        """Put a user at the back of an item's waitlist.

        Args:
            item_id: Item ID
            user_id: User ID

        Returns:
            Created reservation

        Raises:
            DuplicateActiveReservation: If the user is already waiting
            NotFound: If the item is not tracked
        """

        def _enqueue(s: Session) -> Reservation:
            self.tracker.get_item(item_id, s)

            if self.get_open_reservation(item_id, user_id, s) is not None:
                raise DuplicateActiveReservation(item_id, user_id)

            last_position = s.execute(
                select(func.max(Reservation.queue_position)).where(
                    Reservation.item_id == item_id,
                    Reservation.status.in_(_OPEN),
                )
            ).scalar()

            now = to_iso(self.clock())
            reservation = Reservation(
                item_id=item_id,
                user_id=user_id,
                queue_position=(last_position or 0) + 1,
                status=ReservationStatus.ACTIVE,
                reserved_at=now,
                updated_at=now,
            )
            s.add(reservation)
            s.flush()
            logger.info(
                "Queued %s for %s at position %d",
                user_id,
                item_id,
                reservation.queue_position,
            )
            return reservation

        return self.run(_enqueue, session)

    def on_copy_available(
        self, item_id: str, session: Optional[Session] = None
    ) -> Optional[Reservation]:
        """Offer a free copy to the head of the waitlist.

        The copy is taken out of the pool for the offer. Nothing happens if
        nobody is waiting, an offer is already outstanding, or no copy is
        actually free.

        Args:
            item_id: Item ID

        Returns:
            The reservation that received the offer, or None
        """

        def _offer(s: Session) -> Optional[Reservation]:
            s.flush()
            if self.current_offer(item_id, s) is not None:
                return None

            head = s.execute(
                select(Reservation)
                .where(
                    Reservation.item_id == item_id,
                    Reservation.status == ReservationStatus.ACTIVE.value,
                )
                .order_by(Reservation.queue_position)
                .limit(1)
            ).scalar_one_or_none()
            if head is None:
                return None

            try:
                self.tracker.try_reserve_copy(item_id, s)
            except NoCopiesAvailable:
                logger.debug("No free copy of %s to offer", item_id)
                return None

            now = self.clock()
            head.status = ReservationStatus.OFFERED
            head.expires_at = to_iso(now + self.hold_window)
            head.notified_at = to_iso(now)
            head.updated_at = to_iso(now)
            s.flush()

            queue_notice(
                s,
                OfferNotice(
                    user_id=head.user_id,
                    item_id=item_id,
                    expires_at=now + self.hold_window,
                    reservation_id=head.id,
                ),
            )
            logger.info("Offered %s to %s until %s", item_id, head.user_id, head.expires_at)
            return head

        return self.run(_offer, session)

    def fulfill(
        self, reservation_id: str, session: Optional[Session] = None
    ) -> Reservation:
        """Close an offer because the user borrowed the held copy.

        The held copy is handed over as is; no copy count changes.

        Raises:
            InvalidStateTransition: If the reservation is not offered
        """

        def _fulfill(s: Session) -> Reservation:
            reservation = self.get_reservation(reservation_id, s)
            reservation.status = ReservationStatus.FULFILLED
            reservation.updated_at = to_iso(self.clock())
            s.flush()
            logger.info("Fulfilled reservation %s", reservation_id)

            # A spare copy may have waited for this offer to resolve
            if self.tracker.get_item(reservation.item_id, s).available_copies > 0:
                self.on_copy_available(reservation.item_id, s)
            return reservation

        return self.run(_fulfill, session)

    def cancel(
        self,
        reservation_id: str,
        by_user: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Reservation:
        """Cancel a waiting or offered reservation.

        Cancelling an offer frees the held copy for the next waiter.

        Args:
            reservation_id: Reservation ID
            by_user: Acting user; must own the reservation when given

        Raises:
            NotAuthorized: If by_user does not own the reservation
            InvalidStateTransition: If the reservation is already closed
        """

        def _cancel(s: Session) -> Reservation:
            reservation = self.get_reservation(reservation_id, s)
            if by_user is not None and reservation.user_id != by_user:
                raise NotAuthorized(
                    f"User {by_user} cannot cancel reservation {reservation_id}"
                )

            was_offered = reservation.status == ReservationStatus.OFFERED
            reservation.status = ReservationStatus.CANCELLED
            reservation.updated_at = to_iso(self.clock())
            s.flush()
            logger.info("Cancelled reservation %s", reservation_id)

            if was_offered:
                self._release_hold(reservation.item_id, s)
            return reservation

        return self.run(_cancel, session)

    def expire_sweep(
        self, item_id: Optional[str] = None, session: Optional[Session] = None
    ) -> int:
        """Expire offers whose hold window has passed.

        Each expiry frees the held copy and offers it to the next waiter in
        the same transaction. Running the sweep again without a state change
        expires nothing.

        Args:
            item_id: Restrict the sweep to one item

        Returns:
            Number of reservations expired
        """

        def _sweep(s: Session) -> int:
            now = to_iso(self.clock())
            stmt = select(Reservation).where(
                Reservation.status == ReservationStatus.OFFERED.value,
                Reservation.expires_at < now,
            )
            if item_id:
                stmt = stmt.where(Reservation.item_id == item_id)
            lapsed = s.execute(
                stmt.order_by(Reservation.item_id, Reservation.queue_position)
            ).scalars().all()

            expired = 0
            for reservation in lapsed:
                if reservation.status != ReservationStatus.OFFERED:
                    continue
                reservation.status = ReservationStatus.EXPIRED
                reservation.updated_at = now
                s.flush()
                expired += 1
                logger.info(
                    "Offer of %s to %s expired", reservation.item_id, reservation.user_id
                )
                self._release_hold(reservation.item_id, s)
            return expired

        return self.run(_sweep, session)

    def _release_hold(self, item_id: str, s: Session) -> Optional[Reservation]:
        """Put a held copy back and offer it to the next waiter."""
        self.tracker.release_copy(item_id, s)
        return self.on_copy_available(item_id, s)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_reservation(
        self, reservation_id: str, session: Optional[Session] = None
    ) -> Reservation:
        """Get a reservation by ID.

        Raises:
            NotFound: If the reservation does not exist
        """

        def _get(s: Session) -> Reservation:
            reservation = s.get(Reservation, reservation_id)
            if reservation is None:
                raise NotFound("Reservation", reservation_id)
            return reservation

        return self.run(_get, session)

    def get_open_reservation(
        self, item_id: str, user_id: str, session: Optional[Session] = None
    ) -> Optional[Reservation]:
        """Get the user's waiting or offered reservation for an item."""

        def _get(s: Session) -> Optional[Reservation]:
            return s.execute(
                select(Reservation).where(
                    Reservation.item_id == item_id,
                    Reservation.user_id == user_id,
                    Reservation.status.in_(_OPEN),
                )
            ).scalar_one_or_none()

        return self.run(_get, session)

    def current_offer(
        self, item_id: str, session: Optional[Session] = None
    ) -> Optional[Reservation]:
        """Get the outstanding offer for an item, if any."""

        def _get(s: Session) -> Optional[Reservation]:
            return s.execute(
                select(Reservation).where(
                    Reservation.item_id == item_id,
                    Reservation.status == ReservationStatus.OFFERED.value,
                )
            ).scalars().first()

        return self.run(_get, session)

    def list_queue(
        self, item_id: str, session: Optional[Session] = None
    ) -> list[Reservation]:
        """List an item's open reservations in queue order."""

        def _list(s: Session) -> list[Reservation]:
            return list(
                s.execute(
                    select(Reservation)
                    .where(
                        Reservation.item_id == item_id,
                        Reservation.status.in_(_OPEN),
                    )
                    .order_by(Reservation.queue_position)
                ).scalars().all()
            )

        return self.run(_list, session)

    def list_reservations(
        self,
        user_id: Optional[str] = None,
        item_id: Optional[str] = None,
        status: Optional[ReservationStatus] = None,
    ) -> list[Reservation]:
        """List reservations with optional filters.

        Args:
            user_id: Filter by user
            item_id: Filter by item
            status: Filter by status

        Returns:
            Reservations, newest first
        """

        def _list(s: Session) -> list[Reservation]:
            stmt = select(Reservation)
            if user_id:
                stmt = stmt.where(Reservation.user_id == user_id)
            if item_id:
                stmt = stmt.where(Reservation.item_id == item_id)
            if status:
                stmt = stmt.where(Reservation.status == status.value)
            stmt = stmt.order_by(Reservation.reserved_at.desc())
            return list(s.execute(stmt).scalars().all())

        return self.run(_list, None)

    def items_with_lapsed_offers(self) -> list[str]:
        """Item IDs that have an offer past its hold window."""
        now = to_iso(self.clock())
        with self.db.get_session() as s:
            rows = s.execute(
                select(Reservation.item_id)
                .where(
                    Reservation.status == ReservationStatus.OFFERED.value,
                    Reservation.expires_at < now,
                )
                .distinct()
                .order_by(Reservation.item_id)
            ).scalars().all()
            return list(rows)

    def get_stats(self, user_id: Optional[str] = None) -> ReservationStats:
        """Get reservation statistics.

        Args:
            user_id: Restrict counts to one user

        Returns:
            ReservationStats with counts per status
        """
        with self.db.get_session() as s:
            stmt = select(Reservation.status, func.count()).group_by(Reservation.status)
            if user_id:
                stmt = stmt.where(Reservation.user_id == user_id)
            counts = dict(s.execute(stmt).all())

        return ReservationStats(
            total_reservations=sum(counts.values()),
            active_reservations=counts.get(ReservationStatus.ACTIVE.value, 0),
            offered_reservations=counts.get(ReservationStatus.OFFERED.value, 0),
            fulfilled_reservations=counts.get(ReservationStatus.FULFILLED.value, 0),
            expired_reservations=counts.get(ReservationStatus.EXPIRED.value, 0),
            cancelled_reservations=counts.get(ReservationStatus.CANCELLED.value, 0),
        )


def _detach(session: Session, result) -> None:
    """Expunge returned rows so they stay readable after the session closes."""
    if isinstance(result, Base):
        session.expunge(result)
    elif isinstance(result, (list, tuple)):
        for row in result:
            if isinstance(row, Base):
                session.expunge(row)
