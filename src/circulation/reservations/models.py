"""SQLAlchemy models for reservations.

Tables:
- reservations: Waitlist entries, ordered per item by queue_position
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, validates

from ..db.models import Base, generate_uuid
from ..errors import InvalidStateTransition
from ..utils import parse_iso
from .schemas import OPEN_RESERVATION_STATUSES, RESERVATION_TRANSITIONS, ReservationStatus

_OPEN_RESERVATION = "status IN ('active', 'offered')"


class Reservation(Base):
    """Reservation model - one user's place in an item's waitlist."""

    __tablename__ = "reservations"
    __table_args__ = (
        Index(
            "uq_reservations_open_position",
            "item_id",
            "queue_position",
            unique=True,
            sqlite_where=text(_OPEN_RESERVATION),
            postgresql_where=text(_OPEN_RESERVATION),
        ),
        Index(
            "uq_reservations_open_per_user",
            "item_id",
            "user_id",
            unique=True,
            sqlite_where=text(_OPEN_RESERVATION),
            postgresql_where=text(_OPEN_RESERVATION),
        ),
        Index("ix_reservations_item_status", "item_id", "status", "queue_position"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    item_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("items.id"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    queue_position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # ISO timestamps
    reserved_at: Mapped[str] = mapped_column(String(32), nullable=False)
    expires_at: Mapped[Optional[str]] = mapped_column(String(32))  # set once offered
    notified_at: Mapped[Optional[str]] = mapped_column(String(32))
    updated_at: Mapped[Optional[str]] = mapped_column(String(32))

    def __repr__(self) -> str:
        return (
            f"<Reservation(id={self.id}, item_id={self.item_id}, "
            f"position={self.queue_position}, status={self.status})>"
        )

    @validates("status")
    def _validate_status(self, key: str, value) -> str:
        target = ReservationStatus(value)
        if self.status is not None:
            current = ReservationStatus(self.status)
            if target not in RESERVATION_TRANSITIONS[current]:
                raise InvalidStateTransition(
                    f"Reservation {self.id} cannot go from "
                    f"{current.value} to {target.value}",
                    current=current.value,
                    target=target.value,
                )
        return target.value

    @property
    def is_open(self) -> bool:
        """Check if the reservation is still waiting or offered."""
        return self.status in OPEN_RESERVATION_STATUSES

    @property
    def expires_datetime(self) -> Optional[datetime]:
        return parse_iso(self.expires_at)
