"""Calendar sync service - Outbound pushes and inbound pull-sync"""

import logging
from typing import Optional

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session, sessionmaker

from ...config import Settings
from ...models_calendar import CalendarEvent
from .access import CalendarAccessService
from .client import CalendarClient
from .cursor_store import SyncCursorStore
from .errors import (
    AdapterError,
    AdapterPermanent,
    AdapterRetryable,
    ConfigurationError,
    InboundNotSupported,
    ProviderNotFound,
    SyncConflict,
    SyncTokenInvalid,
)
from .mapper import (
    apply_calendar_event,
    assignment_span,
    ensure_inbound_supported,
    entity_from_remote,
    expand_to_daily_events,
    merge_remote,
    parse_entity,
    to_calendar_event,
    utcnow,
)
from .repository import CalendarAssignmentRepository, CalendarEventRepository
from .schemas import (
    ENTITY_TYPES,
    EventPushRequest,
    EventUpdateRequest,
    MappedEvent,
    RemoteEvent,
    SyncResult,
)

logger = logging.getLogger(__name__)

PROVIDER_UNAVAILABLE = "Calendar provider not configured"


def _row_fields(event: MappedEvent) -> dict:
    return {
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "is_all_day": event.is_all_day,
        "location": event.location,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "assignee_type": event.assignee_type,
        "assignee_id": event.assignee_id,
        "attendees": event.attendees,
        "send_notifications": event.send_notifications,
        "calendar_id": event.calendar_id,
        "sync_enabled": event.sync_enabled,
        "day_number": event.day_number,
        "total_days": event.total_days,
    }


class CalendarSyncService:
    """Service layer for mirroring scheduling entities to the calendar provider and back"""

    def __init__(self, db: Session, client: Optional[CalendarClient], settings: Settings):
        self.db = db
        self.client = client
        self.settings = settings
        self.repo = CalendarEventRepository()
        self.assignments = CalendarAssignmentRepository()
        self.access = CalendarAccessService(db)
        self.cursors = SyncCursorStore(db)

    # ========================================================================
    # Reads
    # ========================================================================

    def get_event(self, event_id: str) -> CalendarEvent:
        event = self.repo.get_event(self.db, event_id)
        if not event:
            raise HTTPException(status_code=404, detail="Calendar event not found")
        return event

    def list_entity_events(self, entity_type: str, entity_id: str) -> list[CalendarEvent]:
        return self.repo.list_for_entity(self.db, entity_type, entity_id)

    # ========================================================================
    # Outbound
    # ========================================================================

    def _parse(self, entity_type: str, data: dict) -> BaseModel:
        try:
            return parse_entity(entity_type, data)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Invalid {entity_type}: {e}") from e

    async def push_entity(self, data: EventPushRequest) -> list[CalendarEvent]:
        """Create mirrored events for an entity and push them when sync is enabled"""
        entity = self._parse(data.entity_type, data.entity)
        calendar_id = data.calendar_id or self.access.default_calendar_for(data.entity_type, data.project_id)

        if data.sync_enabled:
            self.access.require_sync_permission(data.actor_id, calendar_id)

        if self.repo.list_for_entity(self.db, data.entity_type, entity.id, calendar_id):
            raise HTTPException(
                status_code=409,
                detail=f"{data.entity_type} {entity.id} already has events on calendar {calendar_id}",
            )

        logger.info(f"📥 Pushing {data.entity_type} {entity.id} to calendar {calendar_id}")
        mapped = to_calendar_event(
            entity,
            calendar_id,
            assignee_type=data.assignee_type,
            assignee_id=data.assignee_id,
            sync_enabled=data.sync_enabled,
            attendees=data.attendees,
            send_notifications=data.send_notifications,
            created_by=data.actor_id,
        )
        snapshot = entity.model_dump(mode="json")

        rows = [
            self.repo.create_event(
                self.db,
                **_row_fields(day),
                entity_data=snapshot,
                created_by=data.actor_id,
                pending_push=data.sync_enabled,
            )
            for day in expand_to_daily_events(mapped)
        ]
        self.db.commit()

        await self._push_rows(rows)
        self._record_assignment(entity, rows[0], data.assignee_type, data.assignee_id, data.rate_per_hour, data.billable)
        self.db.commit()
        return rows

    async def update_entity(self, event_id: str, data: EventUpdateRequest) -> list[CalendarEvent]:
        """Re-map an updated entity onto its mirrored events and push them"""
        row = self.get_event(event_id)
        entity = self._parse(row.entity_type, data.entity)
        if entity.id != row.entity_id:
            raise HTTPException(
                status_code=400,
                detail="An event cannot be re-pointed to a different entity; delete and recreate it",
            )

        assignee_type = data.assignee_type or row.assignee_type
        assignee_id = data.assignee_id or row.assignee_id
        attendees = data.attendees if data.attendees is not None else row.attendees
        send_notifications = (
            data.send_notifications if data.send_notifications is not None else row.send_notifications
        )
        mapped = to_calendar_event(
            entity,
            row.calendar_id,
            assignee_type=assignee_type,
            assignee_id=assignee_id,
            sync_enabled=row.sync_enabled,
            attendees=attendees,
            send_notifications=send_notifications,
            created_by=row.created_by,
        )
        snapshot = entity.model_dump(mode="json")

        existing = self.repo.list_for_entity(self.db, row.entity_type, row.entity_id, row.calendar_id)
        days = expand_to_daily_events(mapped)
        kept = []
        for index, day in enumerate(days):
            fields = _row_fields(day)
            if index < len(existing):
                event = self.repo.update_event(
                    self.db, existing[index], **fields, entity_data=snapshot, pending_push=day.sync_enabled
                )
            else:
                event = self.repo.create_event(
                    self.db, **fields, entity_data=snapshot, created_by=row.created_by, pending_push=day.sync_enabled
                )
            kept.append(event)

        for extra in existing[len(days):]:
            await self._delete_row(extra)
        self.db.commit()

        await self._push_rows(kept, overwrite=data.overwrite)
        self._record_assignment(entity, kept[0], assignee_type, assignee_id, data.rate_per_hour, data.billable)
        self.db.commit()
        return kept

    async def delete_entity(self, entity_type: str, entity_id: str) -> int:
        """Cascade-delete every mirrored event (provider side first) and the entity's assignments"""
        rows = self.repo.list_for_entity(self.db, entity_type, entity_id)
        for row in rows:
            await self._delete_row(row)
        self.assignments.delete_for_entity(self.db, entity_type, entity_id)
        self.db.commit()
        logger.info(f"🗑️ Deleted {len(rows)} calendar event(s) for {entity_type} {entity_id}")
        return len(rows)

    async def _push_rows(self, rows: list[CalendarEvent], overwrite: bool = False) -> None:
        for row in rows:
            await self.push_row(row, overwrite=overwrite)
            self.db.commit()

    async def push_row(self, row: CalendarEvent, overwrite: bool = False) -> None:
        """
        Push one mirrored event. Failures never undo the local change:
        retryable ones leave the push pending, permanent ones record the error.
        A SyncConflict is recorded and re-raised for the caller to resolve.
        """
        if not row.sync_enabled:
            return
        if self.client is None:
            row.pending_push = True
            row.last_sync_error = PROVIDER_UNAVAILABLE
            logger.warning(f"⚠️ {PROVIDER_UNAVAILABLE}; event {row.id} left pending")
            return

        mapped = MappedEvent.model_validate(row)
        try:
            if row.provider_event_id:
                remote = await self.client.update_event(mapped, etag=None if overwrite else row.etag)
            else:
                remote = await self.client.create_event(mapped)
        except SyncConflict as e:
            row.pending_push = True
            row.last_sync_error = str(e)
            self.db.commit()
            logger.warning(f"⚠️ Conflict pushing event {row.id}: {e}")
            raise
        except AdapterRetryable as e:
            row.pending_push = True
            row.last_sync_error = str(e)
            logger.error(f"❌ Push of event {row.id} still pending after {e.attempts} attempt(s): {e}")
            return
        except AdapterPermanent as e:
            row.pending_push = False
            row.last_sync_error = str(e)
            logger.error(f"❌ Push of event {row.id} failed permanently: {e}")
            return

        row.provider_event_id = remote.provider_event_id
        row.etag = remote.etag
        row.last_synced_at = utcnow()
        row.last_sync_error = None
        row.pending_push = False
        logger.info(f"✅ Event {row.id} synced as {remote.provider_event_id}")

    async def _delete_row(self, row: CalendarEvent) -> None:
        if row.provider_event_id:
            if self.client is None:
                logger.warning(f"⚠️ {PROVIDER_UNAVAILABLE}; provider event {row.provider_event_id} not deleted")
            else:
                notify = bool(row.attendees or row.send_notifications)
                try:
                    await self.client.delete_event(row.calendar_id, row.provider_event_id, send_updates=notify)
                except ProviderNotFound:
                    logger.info(f"ℹ️ Provider event {row.provider_event_id} already gone")
                except AdapterError as e:
                    logger.error(f"❌ Could not delete provider event {row.provider_event_id}: {e}")
        self.repo.delete_event(self.db, row)

    def _record_assignment(
        self,
        entity: BaseModel,
        row: CalendarEvent,
        assignee_type: Optional[str],
        assignee_id: Optional[str],
        rate_per_hour: Optional[float],
        billable: bool,
    ) -> None:
        if not assignee_id or (rate_per_hour is None and not billable):
            return

        start_date, end_date = assignment_span(entity)
        self.assignments.upsert_assignment(
            self.db,
            row.entity_type,
            row.entity_id,
            assignee_id,
            row.calendar_id,
            assignee_type=assignee_type,
            provider_event_id=row.provider_event_id,
            etag=row.etag,
            start_date=start_date,
            end_date=end_date,
            rate_per_hour=rate_per_hour,
        )
        logger.info(f"💰 Assignment recorded for {assignee_id} on {row.entity_type} {row.entity_id}")

    # ========================================================================
    # Inbound
    # ========================================================================

    async def pull(self, calendar_id: str, full: bool = False) -> SyncResult:
        """
        Apply provider changes since the stored cursor, then advance it.

        Changes and the cursor commit together; any failure rolls the batch
        back and leaves the cursor where it was.
        """
        if self.client is None:
            raise ConfigurationError(PROVIDER_UNAVAILABLE)

        if full:
            self.cursors.invalidate(calendar_id)
        cursor = self.cursors.ensure(calendar_id)
        token = cursor.next_sync_token
        started_at = utcnow()

        try:
            changes = await self.client.list_changes_since(calendar_id, token)
        except SyncTokenInvalid:
            logger.warning(f"🔄 Sync token for calendar {calendar_id} expired, forcing full resync")
            self.cursors.invalidate(calendar_id)
            token = None
            changes = await self.client.list_changes_since(calendar_id, None)

        result = SyncResult(
            calendar_id=calendar_id, full_resync=token is None, next_sync_token=changes.next_sync_token
        )
        try:
            for remote in changes.events:
                try:
                    self._apply_remote(calendar_id, remote, result)
                except InboundNotSupported as e:
                    result.rejected += 1
                    logger.info(f"🚫 {e} (provider event {remote.provider_event_id})")
            self.db.flush()
            self.cursors.advance(calendar_id, changes.next_sync_token, started_at, commit=False)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Pull sync failed for calendar {calendar_id}, cursor not advanced: {e}")
            raise

        logger.info(
            f"✅ Pulled calendar {calendar_id}: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {result.skipped} skipped, {result.rejected} rejected, "
            f"{result.conflicts} conflicts"
        )
        return result

    def _apply_remote(self, calendar_id: str, remote: RemoteEvent, result: SyncResult) -> None:
        row = self.repo.get_by_provider_id(self.db, calendar_id, remote.provider_event_id)

        if remote.cancelled:
            if row is None:
                result.skipped += 1
                return
            self.assignments.delete_for_provider_event(self.db, calendar_id, remote.provider_event_id)
            self.repo.delete_event(self.db, row)
            result.deleted += 1
            logger.debug(f"🗑️ Provider cancelled {remote.provider_event_id}, local mirror removed")
            return

        if row is None:
            self._create_from_remote(calendar_id, remote, result)
            return

        if row.etag and row.etag == remote.etag:
            result.skipped += 1
            return

        if row.pending_push:
            # Local edit not yet pushed; never silently overwrite it
            row.last_sync_error = (
                f"Provider changed event {remote.provider_event_id} while a local change was pending"
            )
            result.conflicts += 1
            logger.warning(f"⚠️ {row.last_sync_error}")
            return

        ensure_inbound_supported(row.entity_type)
        merged = merge_remote(MappedEvent.model_validate(row), remote)

        # Split days mirror only their own slice, so they do not rewrite the entity
        if row.entity_data is not None and row.total_days is None:
            entity = parse_entity(row.entity_type, row.entity_data)
            row.entity_data = apply_calendar_event(merged, entity).model_dump(mode="json")

        self.repo.update_event(
            self.db,
            row,
            title=merged.title,
            description=merged.description,
            start_time=merged.start_time,
            end_time=merged.end_time,
            is_all_day=merged.is_all_day,
            location=merged.location,
            etag=remote.etag,
            last_synced_at=utcnow(),
            last_sync_error=None,
        )
        result.updated += 1
        logger.debug(f"📝 Applied provider change to event {row.id}")

    def _create_from_remote(self, calendar_id: str, remote: RemoteEvent, result: SyncResult) -> None:
        entity_type = remote.entity_type if remote.entity_type in ENTITY_TYPES else "ad_hoc"
        entity_id = remote.entity_id if entity_type == remote.entity_type and remote.entity_id else None
        entity_id = entity_id or remote.provider_event_id

        ensure_inbound_supported(entity_type)
        if remote.start_time is None:
            result.skipped += 1
            return

        entity_data = None
        if entity_type == "ad_hoc":
            entity_data = entity_from_remote(remote, entity_id).model_dump(mode="json")

        self.repo.create_event(
            self.db,
            title=remote.title or "(untitled)",
            description=remote.description,
            start_time=remote.start_time,
            end_time=remote.end_time,
            is_all_day=remote.is_all_day,
            location=remote.location,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_data=entity_data,
            calendar_id=calendar_id,
            provider_event_id=remote.provider_event_id,
            etag=remote.etag,
            day_number=remote.day_number,
            total_days=remote.total_days,
            sync_enabled=True,
            pending_push=False,
            last_synced_at=utcnow(),
        )
        result.created += 1
        logger.debug(f"➕ Mirrored provider event {remote.provider_event_id} as {entity_type} {entity_id}")


async def run_pull_sync(
    session_factory: sessionmaker,
    client: Optional[CalendarClient],
    settings: Settings,
    calendar_id: str,
    full: bool = False,
) -> SyncResult:
    """Pull-sync a calendar in its own session"""
    db = session_factory()
    try:
        return await CalendarSyncService(db, client, settings).pull(calendar_id, full=full)
    finally:
        db.close()
