"""Loan records.

Provides functionality for:
- Creating loans for reserved copies
- Returning loans and fining late returns
- Marking copies lost
- Overdue sweeps and loan statistics
"""

from .ledger import LoanLedger
from .models import Loan
from .schemas import LoanResponse, LoanStats, LoanStatus

__all__ = [
    "LoanLedger",
    "Loan",
    "LoanResponse",
    "LoanStats",
    "LoanStatus",
]
