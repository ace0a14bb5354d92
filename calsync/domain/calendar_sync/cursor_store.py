"""Sync cursor store - Per-calendar incremental sync tokens"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models_calendar import SyncCursor

logger = logging.getLogger(__name__)


class SyncCursorStore:
    """
    Reads and advances sync cursors.

    ``advance`` is a compare-and-set on ``last_sync_time``: a cursor only moves
    to a sync that started later than the one it records, so an out-of-order
    or overlapping pull can never regress it.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, calendar_id: str) -> Optional[SyncCursor]:
        return (
            self.db.query(SyncCursor)
            .filter(SyncCursor.calendar_id == calendar_id)
            .populate_existing()
            .first()
        )

    def ensure(self, calendar_id: str) -> SyncCursor:
        """Get the cursor, creating an empty one on the first sync attempt"""
        cursor = self.get(calendar_id)
        if cursor:
            return cursor

        try:
            cursor = SyncCursor(calendar_id=calendar_id, next_sync_token=None, last_sync_time=None)
            self.db.add(cursor)
            self.db.commit()
        except IntegrityError:
            # Created concurrently
            self.db.rollback()
            cursor = self.get(calendar_id)
        return cursor

    def advance(self, calendar_id: str, token: Optional[str], sync_time: datetime, commit: bool = True) -> bool:
        """
        Move the cursor to ``token`` if ``sync_time`` is newer than the stored one.

        Returns False (and changes nothing) when a newer sync already advanced it.
        """
        updated = (
            self.db.query(SyncCursor)
            .filter(
                SyncCursor.calendar_id == calendar_id,
                or_(SyncCursor.last_sync_time.is_(None), SyncCursor.last_sync_time < sync_time),
            )
            .update(
                {SyncCursor.next_sync_token: token, SyncCursor.last_sync_time: sync_time},
                synchronize_session=False,
            )
        )

        existing = self.get(calendar_id)
        if not updated:
            if existing is not None:
                logger.debug(
                    f"⏭️ Cursor for {calendar_id} already at {existing.last_sync_time}, not moving back to {sync_time}"
                )
                return False
            self.db.add(SyncCursor(calendar_id=calendar_id, next_sync_token=token, last_sync_time=sync_time))
            self.db.flush()

        if commit:
            self.db.commit()
        logger.debug(f"➡️ Cursor for {calendar_id} advanced to {sync_time}")
        return True

    def invalidate(self, calendar_id: str, commit: bool = True) -> None:
        """Clear the token so the next pull performs a full resync"""
        self.db.query(SyncCursor).filter(SyncCursor.calendar_id == calendar_id).update(
            {SyncCursor.next_sync_token: None}, synchronize_session=False
        )
        if commit:
            self.db.commit()
        logger.info(f"🔄 Sync cursor invalidated for calendar {calendar_id}")
