"""SQLAlchemy models for loans.

Tables:
- loans: One row per copy handed out, kept forever as history
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Float, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, validates

from ..db.models import Base, generate_uuid
from ..errors import InvalidStateTransition
from ..utils import parse_iso
from .schemas import ACTIVE_LOAN_STATUSES, LOAN_TRANSITIONS, LoanStatus

_OPEN_LOAN = "status IN ('borrowed', 'overdue')"


class Loan(Base):
    """Loan model - one user's custody of one copy."""

    __tablename__ = "loans"
    __table_args__ = (
        # A user holds at most one open loan per item
        Index(
            "uq_loans_open_per_user",
            "item_id",
            "user_id",
            unique=True,
            sqlite_where=text(_OPEN_LOAN),
            postgresql_where=text(_OPEN_LOAN),
        ),
        Index("ix_loans_status_due", "status", "due_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    item_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("items.id"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # ISO timestamps
    borrowed_at: Mapped[str] = mapped_column(String(32), nullable=False)
    due_date: Mapped[str] = mapped_column(String(32), nullable=False)
    returned_at: Mapped[Optional[str]] = mapped_column(String(32))

    # Fines
    fine_amount: Mapped[float] = mapped_column(Float, default=0.0)
    fine_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    fine_paid_amount: Mapped[float] = mapped_column(Float, default=0.0)

    updated_at: Mapped[Optional[str]] = mapped_column(String(32))

    def __repr__(self) -> str:
        return f"<Loan(id={self.id}, item_id={self.item_id}, status={self.status})>"

    @validates("status")
    def _validate_status(self, key: str, value) -> str:
        target = LoanStatus(value)
        if self.status is not None:
            current = LoanStatus(self.status)
            if target not in LOAN_TRANSITIONS[current]:
                raise InvalidStateTransition(
                    f"Loan {self.id} cannot go from {current.value} to {target.value}",
                    current=current.value,
                    target=target.value,
                )
        return target.value

    @property
    def is_active(self) -> bool:
        """Check if the loan still holds a copy."""
        return self.status in ACTIVE_LOAN_STATUSES

    @property
    def borrowed_datetime(self) -> datetime:
        return parse_iso(self.borrowed_at)

    @property
    def due_datetime(self) -> datetime:
        return parse_iso(self.due_date)

    @property
    def returned_datetime(self) -> Optional[datetime]:
        return parse_iso(self.returned_at)
