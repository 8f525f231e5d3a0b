"""Reservation waitlists.

Provides functionality for:
- FIFO queueing of users waiting for an item
- Offering freed copies to the head of the queue
- Expiring unclaimed offers and cancelling reservations
"""

from .models import Reservation
from .queue import ReservationQueue
from .schemas import ReservationResponse, ReservationStats, ReservationStatus

__all__ = [
    "Reservation",
    "ReservationQueue",
    "ReservationResponse",
    "ReservationStats",
    "ReservationStatus",
]
