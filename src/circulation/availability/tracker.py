"""Availability tracker - the only writer of item copy counts."""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.models import Item
from ..db.schemas import ItemAvailability, ItemCreate
from ..db.sqlite import Database, get_db
from ..errors import InvalidStateTransition, NoCopiesAvailable, NotFound

logger = logging.getLogger(__name__)


class AvailabilityTracker:
    """Keeps ``available_copies`` and ``total_copies`` consistent per item.

    Every mutation is a single conditional UPDATE, so the free-copy test and
    the decrement happen in one statement. Callers that need a longer
    critical section take the item lock first (see ``lock_item``).
    """

    def __init__(self, db: Optional[Database] = None):
        """Initialize availability tracker.

        Args:
            db: Database instance
        """
        self.db = db or get_db()

    # -------------------------------------------------------------------------
    # Item Registration
    # -------------------------------------------------------------------------

    def register_item(
        self,
        item_id: str,
        total_copies: int,
        replacement_cost: Optional[float] = None,
        session: Optional[Session] = None,
    ) -> Item:
        """Start tracking an item with all copies free.

        Args:
            item_id: Catalog identifier of the item
            total_copies: Number of lendable copies
            replacement_cost: Fine charged when a copy is lost

        Returns:
            Created item
        """
        data = ItemCreate(
            id=item_id, total_copies=total_copies, replacement_cost=replacement_cost
        )

        def _register(s: Session) -> Item:
            if s.get(Item, data.id) is not None:
                raise ValueError(f"Item {data.id} is already registered")
            item = Item(
                id=data.id,
                total_copies=data.total_copies,
                available_copies=data.total_copies,
                replacement_cost=data.replacement_cost,
            )
            s.add(item)
            s.flush()
            logger.debug("Registered %r", item)
            return item

        if session:
            return _register(session)
        with self.db.get_session() as s:
            item = _register(s)
            s.expunge(item)
            return item

    def get_item(self, item_id: str, session: Optional[Session] = None) -> Item:
        """Get an item by ID.

        Raises:
            NotFound: If the item is not tracked
        """

        def _get(s: Session) -> Item:
            item = s.get(Item, item_id)
            if item is None:
                raise NotFound("Item", item_id)
            return item

        if session:
            return _get(session)
        with self.db.get_session() as s:
            item = _get(s)
            s.expunge(item)
            return item

    def get_availability(self, item_id: str) -> ItemAvailability:
        """Get the copy counts of an item."""
        return ItemAvailability.model_validate(self.get_item(item_id))

    def list_items(self) -> list[Item]:
        """List every tracked item."""
        with self.db.get_session() as s:
            items = s.execute(select(Item).order_by(Item.id)).scalars().all()
            for item in items:
                s.expunge(item)
            return list(items)

    def lock_item(self, item_id: str, session: Session) -> Item:
        """Load an item row for update inside the caller's transaction.

        Server databases hold a row lock until commit; SQLite ignores the
        clause and relies on the coordinator's in-process item lock.
        """
        stmt = (
            select(Item)
            .where(Item.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        item = session.execute(stmt).scalar_one_or_none()
        if item is None:
            raise NotFound("Item", item_id)
        return item

    # -------------------------------------------------------------------------
    # Copy Accounting
    # -------------------------------------------------------------------------

    def try_reserve_copy(self, item_id: str, session: Optional[Session] = None) -> Item:
        """Take one free copy out of the pool.

        Args:
            item_id: Item ID

        Returns:
            Item with updated counts

        Raises:
            NoCopiesAvailable: If every copy is out
            NotFound: If the item is not tracked
        """

        def _reserve(s: Session) -> Item:
            s.flush()
            result = s.execute(
                update(Item)
                .where(Item.id == item_id, Item.available_copies > 0)
                .values(available_copies=Item.available_copies - 1)
                .execution_options(synchronize_session=False)
            )
            item = s.get(Item, item_id, populate_existing=True)
            if item is None:
                raise NotFound("Item", item_id)
            if result.rowcount == 0:
                raise NoCopiesAvailable(item_id)
            logger.debug("Reserved copy of %s (%d left)", item_id, item.available_copies)
            return item

        if session:
            return _reserve(session)
        with self.db.get_session() as s:
            item = _reserve(s)
            s.expunge(item)
            return item

    def release_copy(self, item_id: str, session: Optional[Session] = None) -> Item:
        """Return one copy to the pool, never above ``total_copies``.

        Args:
            item_id: Item ID

        Returns:
            Item with updated counts
        """

        def _release(s: Session) -> Item:
            s.flush()
            result = s.execute(
                update(Item)
                .where(Item.id == item_id, Item.available_copies < Item.total_copies)
                .values(available_copies=Item.available_copies + 1)
                .execution_options(synchronize_session=False)
            )
            item = s.get(Item, item_id, populate_existing=True)
            if item is None:
                raise NotFound("Item", item_id)
            if result.rowcount == 0:
                logger.warning("Release of %s ignored: all copies already free", item_id)
            return item

        if session:
            return _release(session)
        with self.db.get_session() as s:
            item = _release(s)
            s.expunge(item)
            return item

    def remove_copy_permanently(
        self, item_id: str, session: Optional[Session] = None
    ) -> Item:
        """Drop a copy that is out on loan from the item's total.

        ``available_copies`` is untouched because the copy was never free.

        Raises:
            InvalidStateTransition: If no copy is out to remove
        """

        def _remove(s: Session) -> Item:
            s.flush()
            result = s.execute(
                update(Item)
                .where(Item.id == item_id, Item.total_copies > Item.available_copies)
                .values(total_copies=Item.total_copies - 1)
                .execution_options(synchronize_session=False)
            )
            item = s.get(Item, item_id, populate_existing=True)
            if item is None:
                raise NotFound("Item", item_id)
            if result.rowcount == 0:
                raise InvalidStateTransition(
                    f"Item {item_id} has no copy out that could be removed"
                )
            logger.info("Removed a copy of %s (%d remain)", item_id, item.total_copies)
            return item

        if session:
            return _remove(session)
        with self.db.get_session() as s:
            item = _remove(s)
            s.expunge(item)
            return item

    def reconcile_total(
        self,
        item_id: str,
        new_total: int,
        session: Optional[Session] = None,
    ) -> tuple[Item, int]:
        """Apply a catalog acquisition or withdrawal.

        Copies in use stay in use; the difference lands in (or comes out of)
        the free pool.

        Args:
            item_id: Item ID
            new_total: New number of copies owned

        Returns:
            Tuple of (item, number of copies newly added to the free pool)

        Raises:
            InvalidStateTransition: If fewer copies would remain than are in use
        """
        if new_total < 0:
            raise ValueError("Total copies cannot be negative")

        def _reconcile(s: Session) -> tuple[Item, int]:
            item = self.lock_item(item_id, s)
            in_use = item.copies_in_use
            if new_total < in_use:
                raise InvalidStateTransition(
                    f"Item {item_id} has {in_use} copies in use; "
                    f"cannot reduce total to {new_total}"
                )
            previous_free = item.available_copies
            item.total_copies = new_total
            item.available_copies = new_total - in_use
            s.flush()
            added = max(0, item.available_copies - previous_free)
            logger.info(
                "Item %s total set to %d (%d free)",
                item_id,
                new_total,
                item.available_copies,
            )
            return item, added

        if session:
            return _reconcile(session)
        with self.db.get_session() as s:
            item, added = _reconcile(s)
            s.expunge(item)
            return item, added
