"""Pydantic schemas for item copy counts."""

from typing import Optional

from pydantic import BaseModel, Field


class ItemCreate(BaseModel):
    """Schema for registering an item with the engine."""

    id: str = Field(..., min_length=1, max_length=64)
    total_copies: int = Field(..., ge=0)
    replacement_cost: Optional[float] = Field(None, ge=0)


class ItemAvailability(BaseModel):
    """Copy counts of one item."""

    id: str
    total_copies: int
    available_copies: int
    replacement_cost: Optional[float] = None

    model_config = {"from_attributes": True}

    @property
    def copies_in_use(self) -> int:
        return self.total_copies - self.available_copies
