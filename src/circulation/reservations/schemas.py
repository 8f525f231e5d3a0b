"""Pydantic schemas and status types for reservations."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ReservationStatus(str, Enum):
    """Status of a reservation."""

    ACTIVE = "active"  # Waiting in line
    OFFERED = "offered"  # A copy is held for the user
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


RESERVATION_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.ACTIVE: frozenset(
        {ReservationStatus.OFFERED, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.OFFERED: frozenset(
        {
            ReservationStatus.FULFILLED,
            ReservationStatus.EXPIRED,
            ReservationStatus.CANCELLED,
        }
    ),
    ReservationStatus.FULFILLED: frozenset(),
    ReservationStatus.EXPIRED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}

OPEN_RESERVATION_STATUSES = (ReservationStatus.ACTIVE, ReservationStatus.OFFERED)


class ReservationResponse(BaseModel):
    """Schema for reservation responses."""

    id: str
    item_id: str
    user_id: str
    status: ReservationStatus
    reserved_at: datetime
    queue_position: int
    expires_at: Optional[datetime] = None
    notified_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RESERVATION_STATUSES


class ReservationStats(BaseModel):
    """Reservation statistics, optionally scoped to one user."""

    total_reservations: int
    active_reservations: int
    offered_reservations: int
    fulfilled_reservations: int
    expired_reservations: int
    cancelled_reservations: int
