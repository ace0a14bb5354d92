"""
Entity Mapper
Translates scheduling entities to provider-agnostic calendar events and back
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from pydantic import BaseModel

from .errors import InboundNotSupported
from .schemas import (
    ENTITY_MODELS,
    PUSH_ONLY_ENTITY_TYPES,
    AdHocItem,
    ContactInteraction,
    MappedEvent,
    Project,
    ProjectMilestone,
    RemoteEvent,
    ScheduleItem,
    TimeEntry,
    WorkOrder,
)

logger = logging.getLogger(__name__)

TIME_ENTRY_TITLE = "Time Entry"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how rows are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _at_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _in_original_zone(value: datetime, original: datetime) -> datetime:
    if original.tzinfo is None:
        return value
    return value.replace(tzinfo=timezone.utc).astimezone(original.tzinfo)


def _merge_instant(original: Optional[datetime], incoming: Optional[datetime]) -> Optional[datetime]:
    incoming = naive_utc(incoming)
    if incoming is None or original is None:
        return incoming
    if naive_utc(original) == incoming:
        return original
    return _in_original_zone(incoming, original)


def _merge_all_day(original: Optional[datetime], incoming: Optional[datetime]) -> Optional[datetime]:
    """All-day events carry no clock time, so keep the original one across date moves"""
    incoming = naive_utc(incoming)
    if incoming is None:
        return None
    if original is None:
        return _at_midnight(incoming.date())
    base = naive_utc(original)
    if base.date() == incoming.date():
        return original
    return _in_original_zone(datetime.combine(incoming.date(), base.time()), original)


def _merge(original: Optional[datetime], incoming: Optional[datetime], all_day: bool) -> Optional[datetime]:
    if all_day:
        return _merge_all_day(original, incoming)
    return _merge_instant(original, incoming)


# ============================================================================
# Outbound: entity -> event fields
# ============================================================================


def _work_order_fields(entity: WorkOrder) -> dict:
    return {
        "title": entity.title,
        "description": entity.description,
        "start_time": entity.scheduled_start,
        "end_time": entity.scheduled_end,
        "is_all_day": False,
        "location": entity.location,
    }


def _project_fields(entity: Project) -> dict:
    end = entity.end_date if entity.end_date and entity.end_date != entity.start_date else None
    return {
        "title": entity.name,
        "description": entity.description,
        "start_time": _at_midnight(entity.start_date),
        "end_time": _at_midnight(end) if end else None,
        "is_all_day": True,
        "location": entity.address,
    }


def _milestone_fields(entity: ProjectMilestone) -> dict:
    return {
        "title": entity.name,
        "description": entity.description,
        "start_time": entity.due_date,
        "end_time": None,
        "is_all_day": True,
        "location": None,
    }


def _time_entry_fields(entity: TimeEntry) -> dict:
    start = datetime.combine(entity.work_date, entity.start_time)
    end = datetime.combine(entity.work_date, entity.end_time)
    if naive_utc(end) <= naive_utc(start):
        # Shift ran past midnight
        end += timedelta(days=1)
    return {
        "title": TIME_ENTRY_TITLE,
        "description": entity.notes,
        "start_time": start,
        "end_time": end,
        "is_all_day": False,
        "location": None,
    }


def _ad_hoc_fields(entity: AdHocItem) -> dict:
    return {
        "title": entity.title,
        "description": entity.description,
        "start_time": entity.start,
        "end_time": entity.end,
        "is_all_day": entity.all_day,
        "location": entity.location,
    }


def _schedule_item_fields(entity: ScheduleItem) -> dict:
    return {
        "title": entity.title,
        "description": entity.description,
        "start_time": entity.start_date,
        "end_time": entity.end_date,
        "is_all_day": entity.all_day,
        "location": entity.location,
    }


def _contact_interaction_fields(entity: ContactInteraction) -> dict:
    return {
        "title": entity.subject,
        "description": entity.notes,
        "start_time": entity.interaction_at,
        "end_time": entity.interaction_at + timedelta(minutes=entity.duration_minutes),
        "is_all_day": False,
        "location": None,
    }


_OUTBOUND = {
    "work_order": _work_order_fields,
    "project": _project_fields,
    "project_milestone": _milestone_fields,
    "time_entry": _time_entry_fields,
    "ad_hoc": _ad_hoc_fields,
    "schedule_item": _schedule_item_fields,
    "contact_interaction": _contact_interaction_fields,
}


# ============================================================================
# Inbound: event -> entity updates
# ============================================================================


def _apply_work_order(event: MappedEvent, entity: WorkOrder) -> dict:
    return {
        "title": event.title,
        "description": event.description,
        "scheduled_start": _merge_instant(entity.scheduled_start, event.start_time),
        "scheduled_end": _merge_instant(entity.scheduled_end, event.end_time),
        "location": event.location,
    }


def _apply_milestone(event: MappedEvent, entity: ProjectMilestone) -> dict:
    return {
        "name": event.title,
        "description": event.description,
        "due_date": _merge(entity.due_date, event.start_time, event.is_all_day),
    }


def _apply_time_entry(event: MappedEvent, entity: TimeEntry) -> dict:
    updates = {"notes": event.description}
    current = _time_entry_fields(entity)
    start = naive_utc(event.start_time)
    end = naive_utc(event.end_time)
    if start == naive_utc(current["start_time"]) and end == naive_utc(current["end_time"]):
        return updates

    updates["work_date"] = start.date()
    updates["start_time"] = start.time()
    updates["end_time"] = end.time() if end else entity.end_time
    return updates


def _apply_ad_hoc(event: MappedEvent, entity: AdHocItem) -> dict:
    return {
        "title": event.title,
        "description": event.description,
        "start": _merge(entity.start, event.start_time, event.is_all_day),
        "end": _merge(entity.end, event.end_time, event.is_all_day),
        "all_day": event.is_all_day,
        "location": event.location,
    }


def _apply_schedule_item(event: MappedEvent, entity: ScheduleItem) -> dict:
    return {
        "title": event.title,
        "description": event.description,
        "start_date": _merge(entity.start_date, event.start_time, event.is_all_day),
        "end_date": _merge(entity.end_date, event.end_time, event.is_all_day),
        "all_day": event.is_all_day,
        "location": event.location,
    }


# Push-only types (project, contact_interaction) are deliberately absent
_INBOUND = {
    "work_order": _apply_work_order,
    "project_milestone": _apply_milestone,
    "time_entry": _apply_time_entry,
    "ad_hoc": _apply_ad_hoc,
    "schedule_item": _apply_schedule_item,
}


# ============================================================================
# Public API
# ============================================================================


def parse_entity(entity_type: str, data: dict) -> BaseModel:
    """Validate raw entity data into the model registered for entity_type"""
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise ValueError(f"Unknown entity type: {entity_type}")
    return model.model_validate(data)


def ensure_inbound_supported(entity_type: str) -> None:
    if entity_type in PUSH_ONLY_ENTITY_TYPES or entity_type not in _INBOUND:
        raise InboundNotSupported(entity_type)


def to_calendar_event(
    entity: BaseModel,
    calendar_id: str = "primary",
    *,
    assignee_type: Optional[str] = None,
    assignee_id: Optional[str] = None,
    sync_enabled: bool = True,
    attendees: Optional[list[str]] = None,
    send_notifications: bool = False,
    created_by: Optional[str] = None,
) -> MappedEvent:
    """Map a scheduling entity to a calendar event. Timestamps are normalized to naive UTC."""
    fields = _OUTBOUND[entity.entity_type](entity)
    fields["start_time"] = naive_utc(fields["start_time"])
    fields["end_time"] = naive_utc(fields["end_time"])

    return MappedEvent(
        entity_type=entity.entity_type,
        entity_id=entity.id,
        calendar_id=calendar_id,
        assignee_type=assignee_type,
        assignee_id=assignee_id,
        sync_enabled=sync_enabled,
        attendees=attendees or [],
        send_notifications=send_notifications,
        created_by=created_by,
        **fields,
    )


def apply_calendar_event(event: MappedEvent, entity: BaseModel) -> BaseModel:
    """
    Apply a (possibly provider-edited) calendar event to the entity it mirrors.

    Returns an updated copy; the input entity is not modified. Raises
    InboundNotSupported for push-only entity types.
    """
    if event.entity_type != entity.entity_type or event.entity_id != entity.id:
        raise ValueError(
            f"Event belongs to {event.entity_type}/{event.entity_id}, "
            f"not {entity.entity_type}/{entity.id}"
        )
    ensure_inbound_supported(event.entity_type)

    updates = _INBOUND[event.entity_type](event, entity)
    return entity.model_copy(update=updates)


def assignment_span(entity: BaseModel) -> tuple[date, Optional[date]]:
    """Inclusive date span an assignment on this entity covers; projects without an end date are open-ended"""
    if isinstance(entity, Project):
        return entity.start_date, entity.end_date

    event = to_calendar_event(entity)
    return event.start_time.date(), (event.end_time or event.start_time).date()


def entity_from_remote(remote: RemoteEvent, entity_id: Optional[str] = None) -> AdHocItem:
    """Build an ad-hoc item for a provider event that no internal entity owns"""
    return AdHocItem(
        id=entity_id or remote.provider_event_id,
        title=remote.title or "(untitled)",
        description=remote.description,
        start=remote.start_time,
        end=remote.end_time,
        all_day=remote.is_all_day,
        location=remote.location,
    )


def merge_remote(base: MappedEvent, remote: RemoteEvent) -> MappedEvent:
    """Overlay provider-side content onto a locally mirrored event, keeping its ownership fields"""
    return base.model_copy(
        update={
            "title": remote.title,
            "description": remote.description,
            "start_time": remote.start_time or base.start_time,
            "end_time": remote.end_time,
            "is_all_day": remote.is_all_day,
            "location": remote.location,
            "provider_event_id": remote.provider_event_id,
            "etag": remote.etag,
        }
    )


def expand_to_daily_events(event: MappedEvent) -> list[MappedEvent]:
    """
    Split a multi-day all-day event into one all-day event per day (inclusive).

    Timed events and single-day events are returned unchanged.
    """
    if not event.is_all_day or event.end_time is None:
        return [event]

    first = event.start_time.date()
    last = event.end_time.date()
    if last <= first:
        return [event]

    total = (last - first).days + 1
    logger.debug(f"📅 Splitting {event.entity_type}/{event.entity_id} into {total} daily events")
    return [
        event.model_copy(
            update={
                "title": f"{event.title} (Day {day}/{total})",
                "start_time": _at_midnight(first + timedelta(days=day - 1)),
                "end_time": None,
                "day_number": day,
                "total_days": total,
            }
        )
        for day in range(1, total + 1)
    ]
