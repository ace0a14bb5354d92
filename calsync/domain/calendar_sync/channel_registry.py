"""Channel registry - Push notification channels and webhook validation"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from ...models_calendar import PushNotificationChannel
from .errors import ChannelNotRecognized
from .mapper import utcnow

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Source of truth for which provider channels this system owns"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, channel_id: str) -> Optional[PushNotificationChannel]:
        return (
            self.db.query(PushNotificationChannel)
            .filter(PushNotificationChannel.channel_id == channel_id)
            .first()
        )

    def register(
        self, calendar_id: str, channel_id: str, resource_id: str, expiration: datetime
    ) -> PushNotificationChannel:
        channel = PushNotificationChannel(
            calendar_id=calendar_id,
            channel_id=channel_id,
            resource_id=resource_id,
            expiration=expiration,
        )
        self.db.add(channel)
        self.db.commit()
        self.db.refresh(channel)
        logger.info(f"✅ Registered channel {channel_id} for calendar {calendar_id} (expires {expiration})")
        return channel

    def find_active(self, calendar_id: str, now: Optional[datetime] = None) -> Optional[PushNotificationChannel]:
        """Newest non-expired channel for the calendar"""
        now = now or utcnow()
        return (
            self.db.query(PushNotificationChannel)
            .filter(
                PushNotificationChannel.calendar_id == calendar_id,
                PushNotificationChannel.expiration > now,
            )
            .order_by(PushNotificationChannel.expiration.desc(), PushNotificationChannel.id.desc())
            .first()
        )

    def validate(self, channel_id: str, resource_id: str, now: Optional[datetime] = None) -> str:
        """Resolve a webhook's channel/resource pair to its calendar, or raise ChannelNotRecognized"""
        now = now or utcnow()
        channel = (
            self.db.query(PushNotificationChannel)
            .filter(
                PushNotificationChannel.channel_id == channel_id,
                PushNotificationChannel.resource_id == resource_id,
                PushNotificationChannel.expiration > now,
            )
            .first()
        )
        if not channel:
            raise ChannelNotRecognized(channel_id, resource_id)
        return channel.calendar_id

    def expiring_before(self, threshold: datetime) -> list[PushNotificationChannel]:
        """Channels expiring before threshold, including ones already expired"""
        return (
            self.db.query(PushNotificationChannel)
            .filter(PushNotificationChannel.expiration < threshold)
            .order_by(PushNotificationChannel.expiration.asc())
            .all()
        )

    def replace(self, old: PushNotificationChannel, new: PushNotificationChannel) -> PushNotificationChannel:
        """
        Swap old for new in one transaction.

        Safe to retry: a new channel that is already registered is not
        inserted twice, and an old channel that is already gone is skipped.
        When the old row is gone and another live channel already serves the
        calendar, that channel wins and new is not inserted.
        """
        old_channel_id = old.channel_id
        try:
            current = self.get(new.channel_id)
            if current is None and self.get(old_channel_id) is None:
                current = self._live_successor(new.calendar_id, new.channel_id)
                if current is not None:
                    logger.info(
                        f"⏭️ Channel {old_channel_id} already replaced by {current.channel_id}, "
                        f"not registering {new.channel_id}"
                    )
            if current is None:
                self.db.add(new)
                current = new
            (
                self.db.query(PushNotificationChannel)
                .filter(PushNotificationChannel.channel_id == old_channel_id)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

        self.db.expire_all()
        logger.info(
            f"🔁 Replaced channel {old_channel_id} with {current.channel_id} for calendar {current.calendar_id}"
        )
        return current

    def _live_successor(self, calendar_id: str, exclude_channel_id: str) -> Optional[PushNotificationChannel]:
        now = utcnow()
        return (
            self.db.query(PushNotificationChannel)
            .filter(
                PushNotificationChannel.calendar_id == calendar_id,
                PushNotificationChannel.channel_id != exclude_channel_id,
                PushNotificationChannel.expiration > now,
            )
            .order_by(PushNotificationChannel.expiration.desc(), PushNotificationChannel.id.desc())
            .first()
        )

    def remove(self, channel_id: str) -> bool:
        deleted = (
            self.db.query(PushNotificationChannel)
            .filter(PushNotificationChannel.channel_id == channel_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return bool(deleted)

    def stale_channels(self, now: Optional[datetime] = None) -> list[PushNotificationChannel]:
        """Expired channels whose calendar has no live successor"""
        now = now or utcnow()
        successor = aliased(PushNotificationChannel)
        has_successor = exists().where(
            and_(
                successor.calendar_id == PushNotificationChannel.calendar_id,
                successor.expiration > now,
            )
        )
        return (
            self.db.query(PushNotificationChannel)
            .filter(PushNotificationChannel.expiration <= now, ~has_successor)
            .order_by(PushNotificationChannel.expiration.asc())
            .all()
        )
