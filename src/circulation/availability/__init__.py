"""Per-item copy accounting.

Provides functionality for:
- Registering items and their copy counts
- Reserving and releasing copies atomically
- Removing lost copies and reconciling catalog changes
"""

from .tracker import AvailabilityTracker

__all__ = ["AvailabilityTracker"]
