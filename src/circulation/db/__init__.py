"""Database module for local SQLite storage."""

from .models import Base, Item
from .schemas import ItemAvailability, ItemCreate
from .sqlite import Database, get_db, reset_db

__all__ = [
    "Base",
    "Item",
    "ItemAvailability",
    "ItemCreate",
    "Database",
    "get_db",
    "reset_db",
]
