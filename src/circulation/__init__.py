"""Circulation engine for lendable items.

Decides who may borrow a copy of an item, who must wait and in what order,
and how late or lost copies are fined.
"""

__version__ = "0.1.0"

from .config import Config, get_config
from .errors import (
    CirculationError,
    ConcurrencyConflict,
    DuplicateActiveLoan,
    DuplicateActiveReservation,
    InvalidStateTransition,
    NoCopiesAvailable,
    NotAuthorized,
    NotFound,
)
from .loans import LoanLedger, LoanStatus
from .fines import FineCalculator
from .reservations import ReservationQueue, ReservationStatus
from .availability import AvailabilityTracker
from .coordinator import BorrowStatus, CirculationCoordinator

__all__ = [
    "__version__",
    "Config",
    "get_config",
    "CirculationError",
    "ConcurrencyConflict",
    "DuplicateActiveLoan",
    "DuplicateActiveReservation",
    "InvalidStateTransition",
    "NoCopiesAvailable",
    "NotAuthorized",
    "NotFound",
    "LoanLedger",
    "LoanStatus",
    "FineCalculator",
    "ReservationQueue",
    "ReservationStatus",
    "AvailabilityTracker",
    "BorrowStatus",
    "CirculationCoordinator",
]
