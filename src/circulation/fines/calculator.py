"""Fine computation for late and lost loans."""

import logging
import math
from datetime import datetime
from typing import Optional

from ..config import Config
from ..loans.models import Loan
from ..loans.schemas import LoanStatus
from ..utils import Clock, utc_now

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class FineCalculator:
    """Computes penalties from loan timing.

    Late fines are ``overdue_days * per_day_rate`` capped at ``max_fine_cap``.
    A lost loan is charged the replacement cost instead.
    """

    def __init__(
        self,
        per_day_rate: float = 1.0,
        max_fine_cap: Optional[float] = None,
        replacement_cost: float = 25.0,
        clock: Clock = utc_now,
    ):
        """Initialize fine calculator.

        Args:
            per_day_rate: Fine per full day past the due date
            max_fine_cap: Upper bound of a late fine, None for no cap
            replacement_cost: Default charge for a lost copy
            clock: Source of the current time
        """
        if per_day_rate < 0:
            raise ValueError("per_day_rate cannot be negative")
        self.per_day_rate = per_day_rate
        self.max_fine_cap = max_fine_cap
        self.replacement_cost = replacement_cost
        self.clock = clock

    @classmethod
    def from_config(cls, config: Config, clock: Clock = utc_now) -> "FineCalculator":
        return cls(
            per_day_rate=config.fine_per_day,
            max_fine_cap=config.fine_cap,
            replacement_cost=config.replacement_cost,
            clock=clock,
        )

    def overdue_days(self, loan: Loan, at: Optional[datetime] = None) -> int:
        """Whole days between the due date and the return (or ``at``/now).

        Args:
            loan: Loan to measure
            at: Reference time for unreturned loans

        Returns:
            Number of full days overdue, never negative
        """
        end = loan.returned_datetime or at or self.clock()
        seconds = (end - loan.due_datetime).total_seconds()
        return max(0, math.floor(seconds / SECONDS_PER_DAY))

    def late_fine(self, loan: Loan, at: Optional[datetime] = None) -> float:
        """Per-day fine for a loan, after applying the cap."""
        fine = self.overdue_days(loan, at) * self.per_day_rate
        if self.max_fine_cap is not None:
            fine = min(fine, self.max_fine_cap)
        return round(fine, 2)

    def assess(
        self,
        loan: Loan,
        replacement_cost: Optional[float] = None,
        at: Optional[datetime] = None,
    ) -> float:
        """Fine owed for a loan in its current state.

        Args:
            loan: Loan to assess
            replacement_cost: Item-specific replacement cost for lost loans
            at: Reference time for unreturned loans

        Returns:
            Fine amount
        """
        if loan.status == LoanStatus.LOST:
            cost = self.replacement_cost if replacement_cost is None else replacement_cost
            return round(cost, 2)
        return self.late_fine(loan, at)

    def preview(self, loan: Loan) -> float:
        """Fine accrued so far on a loan that has not been returned yet."""
        if loan.status not in (LoanStatus.BORROWED, LoanStatus.OVERDUE):
            return loan.fine_amount or 0.0
        return self.late_fine(loan)

    def apply_payment(self, loan: Loan, amount: float) -> bool:
        """Record a payment against a loan's fine.

        A single payment of at least ``fine_amount`` settles the fine. A
        smaller payment leaves ``fine_paid`` false; its amount is only kept
        in ``fine_paid_amount`` for audit. A loan with no fine, or a fine
        already settled, counts as fully paid and is left untouched.

        Args:
            loan: Loan being paid for
            amount: Amount received from the payment service

        Returns:
            True if the fine is fully paid

        Raises:
            ValueError: If amount is not positive
        """
        if amount <= 0:
            raise ValueError("Payment amount must be positive")
        if not loan.fine_amount or loan.fine_paid:
            logger.info("Payment on loan %s ignored: nothing owed", loan.id)
            return True

        loan.fine_paid_amount = round((loan.fine_paid_amount or 0.0) + amount, 2)
        loan.fine_paid = amount >= loan.fine_amount
        if not loan.fine_paid:
            logger.info(
                "Partial payment of %.2f on loan %s; fine of %.2f stays open",
                amount,
                loan.id,
                loan.fine_amount,
            )
        return loan.fine_paid
