"""Pydantic schemas and status types for loans."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class LoanStatus(str, Enum):
    """Status of a loan."""

    BORROWED = "borrowed"
    OVERDUE = "overdue"
    RETURNED = "returned"
    LOST = "lost"


# Allowed status changes. Terminal states map to an empty set.
LOAN_TRANSITIONS: dict[LoanStatus, frozenset[LoanStatus]] = {
    LoanStatus.BORROWED: frozenset(
        {LoanStatus.OVERDUE, LoanStatus.RETURNED, LoanStatus.LOST}
    ),
    LoanStatus.OVERDUE: frozenset({LoanStatus.RETURNED, LoanStatus.LOST}),
    LoanStatus.RETURNED: frozenset(),
    LoanStatus.LOST: frozenset(),
}

# Loans that keep a copy out of circulation
ACTIVE_LOAN_STATUSES = (LoanStatus.BORROWED, LoanStatus.OVERDUE)


class LoanResponse(BaseModel):
    """Schema for loan responses."""

    id: str
    item_id: str
    user_id: str
    status: LoanStatus
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    fine_amount: float = 0.0
    fine_paid: bool = False
    fine_paid_amount: float = 0.0

    model_config = {"from_attributes": True}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_LOAN_STATUSES

    @property
    def outstanding_fine(self) -> float:
        """Fine still owed; partial payments do not reduce it."""
        return 0.0 if self.fine_paid else self.fine_amount


class LoanStats(BaseModel):
    """Loan statistics, optionally scoped to one user."""

    total_loans: int
    active_loans: int
    overdue_loans: int
    returned_loans: int
    lost_loans: int
    total_fines: float
    unpaid_fines: float
