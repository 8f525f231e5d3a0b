"""Exceptions raised by the circulation engine."""

from typing import Optional


class CirculationError(Exception):
    """Base exception for circulation errors."""

    retryable = False


class NotFound(CirculationError):
    """Raised when an item, loan or reservation does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class NoCopiesAvailable(CirculationError):
    """Raised when an item has no free copy to hand out."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"No copies available for item {item_id}")


class DuplicateActiveLoan(CirculationError):
    """Raised when a user already holds an open loan on the item."""

    def __init__(self, item_id: str, user_id: str):
        self.item_id = item_id
        self.user_id = user_id
        super().__init__(f"User {user_id} already has item {item_id} on loan")


class DuplicateActiveReservation(CirculationError):
    """Raised when a user already waits for the item."""

    def __init__(self, item_id: str, user_id: str):
        self.item_id = item_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} already has an open reservation for item {item_id}"
        )


class InvalidStateTransition(CirculationError):
    """Raised when a loan or reservation cannot move to the requested state."""

    def __init__(
        self,
        message: str,
        current: Optional[str] = None,
        target: Optional[str] = None,
    ):
        self.current = current
        self.target = target
        super().__init__(message)


class NotAuthorized(CirculationError):
    """Raised when a user acts on a reservation they do not own."""

    pass


class ConcurrencyConflict(CirculationError):
    """Raised when an item stayed locked past the retry budget."""

    retryable = True

    def __init__(self, item_id: str, attempts: int):
        self.item_id = item_id
        self.attempts = attempts
        super().__init__(
            f"Item {item_id} is busy. Gave up after {attempts} attempts"
        )
