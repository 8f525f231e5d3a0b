"""SQLAlchemy ORM models shared by the circulation engine.

Tables:
- items: Copy counts for each lendable item
"""

from typing import Optional
from uuid import uuid4

from sqlalchemy import CheckConstraint, Float, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..utils import to_iso, utc_now


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid4())


def _timestamp() -> str:
    return to_iso(utc_now())


class Item(Base):
    """Item model - the copy counts of one lendable item.

    Title, author and the rest of the catalog record live with the catalog
    service; the engine only owns the two copy-count fields.
    """

    __tablename__ = "items"
    __table_args__ = (
        CheckConstraint("total_copies >= 0", name="ck_items_total_copies"),
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="ck_items_available_copies",
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    total_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Charged when a copy is marked lost; falls back to the configured default
    replacement_cost: Mapped[Optional[float]] = mapped_column(Float)

    # Timestamps
    created_at: Mapped[str] = mapped_column(String(32), default=_timestamp)
    updated_at: Mapped[str] = mapped_column(String(32), default=_timestamp, onupdate=_timestamp)

    def __repr__(self) -> str:
        return (
            f"<Item(id={self.id}, available={self.available_copies}, "
            f"total={self.total_copies})>"
        )

    @property
    def copies_in_use(self) -> int:
        """Copies currently out on loan or held for an offer."""
        return self.total_copies - self.available_copies
