"""Pydantic schemas for the circulation engine's public results."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from ..loans.schemas import LoanResponse, LoanStats
from ..reservations.schemas import ReservationResponse, ReservationStats


class BorrowStatus(str, Enum):
    """Outcome of a borrow request."""

    BORROWED = "borrowed"
    QUEUED = "queued"


class BorrowResult(BaseModel):
    """Result of ``borrow_item``."""

    status: BorrowStatus
    loan: Optional[LoanResponse] = None
    reservation: Optional[ReservationResponse] = None


class ReturnResult(BaseModel):
    """Result of ``return_item``."""

    loan: LoanResponse
    fine_assessed: float


class CancelResult(BaseModel):
    """Result of ``cancel_reservation``."""

    reservation: ReservationResponse


class PaymentResult(BaseModel):
    """Result of ``pay_fine``."""

    loan: LoanResponse
    fully_paid: bool


class TickResult(BaseModel):
    """Result of one background sweep."""

    overdue_transitioned: int = 0
    expired_reservations: int = 0


class CirculationStats(BaseModel):
    """Library-wide (or per-user) circulation statistics."""

    total_items: Optional[int] = None
    total_copies: Optional[int] = None
    available_copies: Optional[int] = None
    loans: LoanStats
    reservations: ReservationStats
