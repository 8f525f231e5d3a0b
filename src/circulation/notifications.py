"""Offer notifications handed to the external notifier.

Offers are created inside a database transaction, but the notifier must only
hear about them once that transaction has committed. Notices are parked in
the session's ``info`` dict and drained by whoever owns the commit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_OUTBOX_KEY = "circulation_outbox"


@dataclass(frozen=True)
class OfferNotice:
    """Tells a waiting user that a copy is held for them."""

    user_id: str
    item_id: str
    expires_at: datetime
    reservation_id: str


class Notifier(Protocol):
    """Delivery side of offer notifications."""

    def notify(self, user_id: str, item_id: str, expires_at: datetime) -> None:
        ...


class LoggingNotifier:
    """Notifier that only logs the intent."""

    def notify(self, user_id: str, item_id: str, expires_at: datetime) -> None:
        logger.info(
            "Copy of %s held for %s until %s", item_id, user_id, expires_at.isoformat()
        )


class NullNotifier:
    """Notifier that drops everything."""

    def notify(self, user_id: str, item_id: str, expires_at: datetime) -> None:
        return None


class RecordingNotifier:
    """Notifier that keeps every notice in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, datetime]] = []

    def notify(self, user_id: str, item_id: str, expires_at: datetime) -> None:
        self.sent.append((user_id, item_id, expires_at))

    def for_user(self, user_id: str) -> list[tuple[str, str, datetime]]:
        return [n for n in self.sent if n[0] == user_id]


def queue_notice(session: Session, notice: OfferNotice) -> None:
    """Park a notice until the session commits."""
    session.info.setdefault(_OUTBOX_KEY, []).append(notice)


def drain_notices(session: Session) -> list[OfferNotice]:
    """Remove and return the notices parked on a session."""
    return session.info.pop(_OUTBOX_KEY, [])


def dispatch(notifier: Notifier, notices: Iterable[OfferNotice]) -> int:
    """Deliver notices, logging failures instead of raising.

    Args:
        notifier: Delivery backend
        notices: Committed offer notices

    Returns:
        Number of notices delivered without error
    """
    delivered = 0
    for notice in notices:
        try:
            notifier.notify(notice.user_id, notice.item_id, notice.expires_at)
            delivered += 1
        except Exception:
            # The hold window expires the offer if the user never hears of it
            logger.exception(
                "Failed to notify %s about reservation %s",
                notice.user_id,
                notice.reservation_id,
            )
    return delivered
