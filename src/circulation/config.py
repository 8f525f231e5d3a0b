"""Configuration management for the circulation engine.

Loads configuration from environment variables and provides defaults.
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()


@dataclass
class Config:
    """Application configuration."""

    # Database
    db_path: Path

    # Lending policy
    loan_period_days: int
    hold_window_hours: int

    # Fines
    fine_per_day: float
    fine_cap: Optional[float]
    replacement_cost: float

    # Per-item locking
    lock_max_attempts: int
    lock_initial_backoff: float  # seconds

    log_level: str

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        db_path_str = os.environ.get(
            "CIRCULATION_DB_PATH",
            str(Path.home() / ".circulation" / "circulation.db"),
        )
        db_path = Path(db_path_str).expanduser()

        fine_cap_str = os.environ.get("CIRCULATION_FINE_CAP")

        return cls(
            db_path=db_path,
            loan_period_days=int(os.environ.get("CIRCULATION_LOAN_PERIOD_DAYS", "14")),
            hold_window_hours=int(os.environ.get("CIRCULATION_HOLD_WINDOW_HOURS", "168")),
            fine_per_day=float(os.environ.get("CIRCULATION_FINE_PER_DAY", "1.0")),
            fine_cap=float(fine_cap_str) if fine_cap_str else None,
            replacement_cost=float(os.environ.get("CIRCULATION_REPLACEMENT_COST", "25.0")),
            lock_max_attempts=int(os.environ.get("CIRCULATION_LOCK_MAX_ATTEMPTS", "5")),
            lock_initial_backoff=float(os.environ.get("CIRCULATION_LOCK_BACKOFF", "0.05")),
            log_level=os.environ.get("CIRCULATION_LOG_LEVEL", "WARNING").upper(),
        )

    @property
    def loan_period(self) -> timedelta:
        return timedelta(days=self.loan_period_days)

    @property
    def hold_window(self) -> timedelta:
        return timedelta(hours=self.hold_window_hours)

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.loan_period_days <= 0:
            errors.append("Loan period must be at least one day")
        if self.hold_window_hours <= 0:
            errors.append("Hold window must be at least one hour")
        if self.fine_per_day < 0:
            errors.append("Fine per day cannot be negative")
        if self.fine_cap is not None and self.fine_cap < 0:
            errors.append("Fine cap cannot be negative")
        if self.replacement_cost < 0:
            errors.append("Replacement cost cannot be negative")
        if self.lock_max_attempts < 1:
            errors.append("Lock attempts must be at least 1")
        if not isinstance(logging.getLevelName(self.log_level), int):
            errors.append(f"Unknown log level: {self.log_level}")

        # Check database directory is writable
        if not self.db_path.parent.exists():
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                errors.append(f"Cannot create database directory: {self.db_path.parent}")

        return errors


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
