"""
Channel Renewal Scheduler
Replaces push channels before they expire and keeps managed calendars subscribed
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from ...config import Settings
from ...models_calendar import PushNotificationChannel
from .channel_registry import ChannelRegistry
from .client import CalendarClient
from .errors import AdapterError, ChannelExpired, ProviderNotFound
from .mapper import utcnow
from .schemas import RenewalReport

logger = logging.getLogger(__name__)


class ChannelRenewalScheduler:
    """One renewal pass; safe to run concurrently with itself"""

    def __init__(self, db: Session, client: CalendarClient, settings: Settings):
        self.db = db
        self.client = client
        self.settings = settings
        self.registry = ChannelRegistry(db)

    def _threshold(self, now: datetime) -> datetime:
        return now + timedelta(hours=self.settings.renewal_threshold_hours)

    async def run(self, now: Optional[datetime] = None) -> RenewalReport:
        now = now or utcnow()
        report = RenewalReport()

        channels = self.registry.expiring_before(self._threshold(now))
        report.checked = len(channels)
        logger.info(f"🔁 Channel renewal: {len(channels)} channel(s) expire within {self.settings.renewal_threshold_hours}h")

        # Plain values; rows may be deleted by a replace mid-loop
        pending = [(c.channel_id, c.calendar_id) for c in channels]
        for channel_id, calendar_id in pending:
            try:
                channel = self.registry.get(channel_id)
                if channel is None:
                    report.skipped += 1
                    continue
                outcome = await self.renew_channel(channel, now)
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Renewal of channel {channel_id} for calendar {calendar_id} failed: {e}")
                report.failed += 1
                continue

            if outcome == "renewed":
                report.renewed += 1
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.failed += 1

        for calendar_id in self.settings.managed_calendar_ids:
            if self.registry.find_active(calendar_id, now):
                continue
            try:
                await self.subscribe(calendar_id, now)
                report.subscribed += 1
            except AdapterError as e:
                logger.error(f"❌ Could not subscribe managed calendar {calendar_id}: {e}")
                report.failed += 1

        stale = self.registry.stale_channels(now)
        report.stale_channel_ids = [c.channel_id for c in stale]
        if stale:
            logger.error(
                "❌ Channels expired with no successor, webhooks are not being delivered for: "
                + ", ".join(f"{c.calendar_id} ({c.channel_id})" for c in stale)
            )

        logger.info(
            f"✅ Channel renewal finished: {report.renewed} renewed, {report.skipped} skipped, "
            f"{report.subscribed} subscribed, {report.failed} failed"
        )
        return report

    async def renew_channel(self, channel: PushNotificationChannel, now: Optional[datetime] = None) -> str:
        """Replace one channel. Returns 'renewed', 'skipped' or 'failed'."""
        now = now or utcnow()
        channel_id = channel.channel_id
        calendar_id = channel.calendar_id

        active = self.registry.find_active(calendar_id, now)
        if active and active.channel_id != channel_id and active.expiration >= self._threshold(now):
            # A fresh successor already exists (overlapping run or manual subscribe)
            logger.info(f"⏭️ Calendar {calendar_id} already renewed as {active.channel_id}; retiring {channel_id}")
            await self._stop_quietly(channel, now)
            self.registry.remove(channel_id)
            return "skipped"

        await self._stop_quietly(channel, now)

        new_channel_id = str(uuid.uuid4())
        try:
            watch = await self.client.watch(
                calendar_id, new_channel_id, self.settings.webhook_url, self.settings.channel_ttl_seconds
            )
        except AdapterError as e:
            logger.error(
                f"❌ Could not create replacement for channel {channel_id} on calendar {calendar_id}; "
                f"old channel left in place: {e}"
            )
            return "failed"

        current = self.registry.replace(
            channel,
            PushNotificationChannel(
                channel_id=new_channel_id,
                resource_id=watch.resource_id,
                calendar_id=calendar_id,
                expiration=watch.expiration,
            ),
        )
        if current.channel_id != new_channel_id:
            # Lost the race to an overlapping renewal; drop the watch we just opened
            logger.info(f"⏭️ Calendar {calendar_id} renewed concurrently as {current.channel_id}; stopping {new_channel_id}")
            try:
                await self.client.stop_watch(new_channel_id, watch.resource_id)
            except AdapterError as e:
                logger.warning(f"⚠️ Failed to stop surplus channel {new_channel_id}: {e}")
            return "skipped"

        logger.info(f"✅ Renewed calendar {calendar_id}: {channel_id} -> {new_channel_id} (expires {watch.expiration})")
        return "renewed"

    async def _stop_channel(self, channel: PushNotificationChannel, now: datetime) -> None:
        if channel.expiration <= now:
            raise ChannelExpired(channel.channel_id)
        await self.client.stop_watch(channel.channel_id, channel.resource_id)

    async def _stop_quietly(self, channel: PushNotificationChannel, now: datetime) -> None:
        """Stopping is best-effort; the channel lapses on its own at expiration"""
        try:
            await self._stop_channel(channel, now)
        except ChannelExpired:
            logger.info(f"ℹ️ Channel {channel.channel_id} already expired, nothing to stop")
        except ProviderNotFound:
            logger.info(f"ℹ️ Channel {channel.channel_id} already gone on the provider")
        except AdapterError as e:
            logger.warning(f"⚠️ Failed to stop channel {channel.channel_id}: {e}")

    async def subscribe(self, calendar_id: str, now: Optional[datetime] = None) -> PushNotificationChannel:
        """Ensure the calendar has a channel outside the renewal window"""
        now = now or utcnow()
        active = self.registry.find_active(calendar_id, now)
        if active and active.expiration >= self._threshold(now):
            logger.info(f"ℹ️ Calendar {calendar_id} already watched by {active.channel_id}")
            return active

        if active:
            outcome = await self.renew_channel(active, now)
            if outcome == "failed":
                raise AdapterError(f"Could not renew channel for calendar {calendar_id}")
            return self.registry.find_active(calendar_id, now)

        channel_id = str(uuid.uuid4())
        watch = await self.client.watch(
            calendar_id, channel_id, self.settings.webhook_url, self.settings.channel_ttl_seconds
        )
        return self.registry.register(calendar_id, channel_id, watch.resource_id, watch.expiration)


async def run_renewal_pass(
    session_factory: sessionmaker, client: CalendarClient, settings: Settings
) -> RenewalReport:
    db = session_factory()
    try:
        return await ChannelRenewalScheduler(db, client, settings).run()
    finally:
        db.close()
