"""Late and lost fines."""

from .calculator import FineCalculator

__all__ = ["FineCalculator"]
