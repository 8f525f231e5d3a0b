"""Circulation coordinator.

Provides functionality for:
- Borrowing with automatic queueing
- Returns that hand copies to the next waiter
- Reservation cancellation, fine payment and lost copies
- Periodic overdue and offer-expiry sweeps
"""

from .coordinator import CirculationCoordinator
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

__all__ = [
    "CirculationCoordinator",
    "ItemLockRegistry",
    "BorrowResult",
    "BorrowStatus",
    "CancelResult",
    "CirculationStats",
    "PaymentResult",
    "ReturnResult",
    "TickResult",
]
