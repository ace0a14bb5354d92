"""Calendar sync domain schemas - Pydantic models for entities, events and API payloads"""

from datetime import date, datetime, time
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ENTITY_TYPES = (
    "work_order",
    "project",
    "ad_hoc",
    "schedule_item",
    "time_entry",
    "project_milestone",
    "contact_interaction",
)
ASSIGNEE_TYPES = ("employee", "subcontractor", "customer", "vendor", "contact")
ACCESS_LEVELS = ("read", "write", "admin")
SCOPE_TYPES = ("organization", "project")

# Entity types that only flow outbound; provider edits to them are rejected
PUSH_ONLY_ENTITY_TYPES = frozenset({"project", "contact_interaction"})


def _check_entity_type(v):
    if v not in ENTITY_TYPES:
        raise ValueError(f"entity_type must be one of: {', '.join(ENTITY_TYPES)}")
    return v


def _check_assignee_type(v):
    if v is not None and v not in ASSIGNEE_TYPES:
        raise ValueError(f"assignee_type must be one of: {', '.join(ASSIGNEE_TYPES)}")
    return v


def _check_attendees(v):
    if v is None:
        return v
    emails = []
    for email in v:
        email = email.strip().lower()
        if "@" not in email:
            raise ValueError(f"Invalid attendee email: {email}")
        if email not in emails:
            emails.append(email)
    return emails


# ============================================================================
# Scheduling entities (owned by the surrounding CRUD flows)
# ============================================================================


class WorkOrder(BaseModel):
    entity_type: ClassVar[str] = "work_order"

    id: str
    title: str
    description: Optional[str] = None
    scheduled_start: datetime
    scheduled_end: Optional[datetime] = None
    location: Optional[str] = None


class Project(BaseModel):
    entity_type: ClassVar[str] = "project"

    id: str
    name: str
    description: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    address: Optional[str] = None


class ProjectMilestone(BaseModel):
    entity_type: ClassVar[str] = "project_milestone"

    id: str
    project_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    due_date: datetime


class TimeEntry(BaseModel):
    """Hours worked on a single date; an end clock time at or before the start rolls into the next day"""

    entity_type: ClassVar[str] = "time_entry"

    id: str
    employee_id: Optional[str] = None
    project_id: Optional[str] = None
    work_date: date
    start_time: time
    end_time: time
    notes: Optional[str] = None


class AdHocItem(BaseModel):
    entity_type: ClassVar[str] = "ad_hoc"

    id: str
    title: str
    description: Optional[str] = None
    start: datetime
    end: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None


class ScheduleItem(BaseModel):
    entity_type: ClassVar[str] = "schedule_item"

    id: str
    title: str
    description: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None


class ContactInteraction(BaseModel):
    entity_type: ClassVar[str] = "contact_interaction"

    id: str
    contact_id: Optional[str] = None
    subject: str
    notes: Optional[str] = None
    interaction_at: datetime
    duration_minutes: int = 30


ENTITY_MODELS = {
    model.entity_type: model
    for model in (
        WorkOrder,
        Project,
        ProjectMilestone,
        TimeEntry,
        AdHocItem,
        ScheduleItem,
        ContactInteraction,
    )
}


# ============================================================================
# Calendar events
# ============================================================================


class MappedEvent(BaseModel):
    """Provider-agnostic calendar event produced from (or applied to) a scheduling entity"""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    title: str
    description: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    is_all_day: bool = False
    location: Optional[str] = None
    entity_type: str
    entity_id: str
    assignee_type: Optional[str] = None
    assignee_id: Optional[str] = None
    calendar_id: str = "primary"
    provider_event_id: Optional[str] = None
    etag: Optional[str] = None
    sync_enabled: bool = True
    last_synced_at: Optional[datetime] = None
    day_number: Optional[int] = None
    total_days: Optional[int] = None
    attendees: list[str] = []
    send_notifications: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, v):
        return _check_entity_type(v)

    @field_validator("assignee_type")
    @classmethod
    def validate_assignee_type(cls, v):
        return _check_assignee_type(v)

    @field_validator("attendees", mode="before")
    @classmethod
    def validate_attendees(cls, v):
        # Rows written before attendees existed hold NULL
        return _check_attendees(v) or []


class RemoteEvent(BaseModel):
    """An event as listed by the calendar provider, stripped of provider-specific shapes"""

    provider_event_id: str
    etag: Optional[str] = None
    cancelled: bool = False
    title: str = ""
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_all_day: bool = False
    location: Optional[str] = None
    # Set only when the event was pushed by this system
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    day_number: Optional[int] = None
    total_days: Optional[int] = None


class ChangeSet(BaseModel):
    events: list[RemoteEvent] = Field(default_factory=list)
    next_sync_token: Optional[str] = None


class WatchResult(BaseModel):
    resource_id: str
    expiration: datetime


# ============================================================================
# Management API payloads
# ============================================================================


class EventPushRequest(BaseModel):
    """Schema for pushing a scheduling entity to a calendar"""

    entity_type: str
    entity: dict[str, Any]
    calendar_id: Optional[str] = None
    project_id: Optional[str] = None
    assignee_type: Optional[str] = None
    assignee_id: Optional[str] = None
    rate_per_hour: Optional[float] = None
    billable: bool = False
    sync_enabled: bool = True
    attendees: list[str] = []
    send_notifications: bool = False
    actor_id: Optional[str] = None

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, v):
        return _check_entity_type(v)

    @field_validator("assignee_type")
    @classmethod
    def validate_assignee_type(cls, v):
        return _check_assignee_type(v)

    @field_validator("rate_per_hour")
    @classmethod
    def validate_rate(cls, v):
        if v is not None and v < 0:
            raise ValueError("rate_per_hour cannot be negative")
        return v

    @field_validator("attendees")
    @classmethod
    def validate_attendees(cls, v):
        return _check_attendees(v)


class EventUpdateRequest(BaseModel):
    """Schema for re-pushing an updated entity; overwrite skips the etag check"""

    entity: dict[str, Any]
    assignee_type: Optional[str] = None
    assignee_id: Optional[str] = None
    rate_per_hour: Optional[float] = None
    billable: bool = False
    # None keeps the attendees already on the events
    attendees: Optional[list[str]] = None
    send_notifications: Optional[bool] = None
    actor_id: Optional[str] = None
    overwrite: bool = False

    @field_validator("assignee_type")
    @classmethod
    def validate_assignee_type(cls, v):
        return _check_assignee_type(v)

    @field_validator("attendees")
    @classmethod
    def validate_attendees(cls, v):
        return _check_attendees(v)


class CalendarEventResponse(BaseModel):
    id: str
    title: str
    description: Optional[str]
    start_time: datetime
    end_time: Optional[datetime]
    is_all_day: bool
    location: Optional[str]
    entity_type: str
    entity_id: str
    assignee_type: Optional[str]
    assignee_id: Optional[str]
    calendar_id: str
    provider_event_id: Optional[str]
    etag: Optional[str]
    sync_enabled: bool
    sync_status: str
    last_synced_at: Optional[datetime]
    last_sync_error: Optional[str]
    day_number: Optional[int]
    total_days: Optional[int]
    attendees: Optional[list[str]] = None
    send_notifications: bool = False
    created_by: Optional[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncResult(BaseModel):
    calendar_id: str
    full_resync: bool = False
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    rejected: int = 0
    conflicts: int = 0
    next_sync_token: Optional[str] = None


class ChannelResponse(BaseModel):
    channel_id: str
    resource_id: str
    calendar_id: str
    expiration: datetime

    class Config:
        from_attributes = True


class RenewalReport(BaseModel):
    checked: int = 0
    renewed: int = 0
    skipped: int = 0
    failed: int = 0
    subscribed: int = 0
    stale_channel_ids: list[str] = Field(default_factory=list)


# ============================================================================
# Cost rollup
# ============================================================================


class DateRange(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def check_order(self):
        if self.end < self.start:
            raise ValueError("end date must not be before start date")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


class AssigneeCost(BaseModel):
    assignee_id: str
    days: int
    hours: float
    cost: float
    rate_per_hour: Optional[float] = None
    rate_unknown: bool = False


class CostRollup(BaseModel):
    entity_type: str
    entity_id: str
    start: date
    end: date
    total_hours: float = 0.0
    total_cost: float = 0.0
    breakdown: list[AssigneeCost] = Field(default_factory=list)


# ============================================================================
# Calendar scopes
# ============================================================================


class ScopeCreate(BaseModel):
    scope_type: str
    calendar_id: str
    name: Optional[str] = None
    organization_id: Optional[str] = None
    project_id: Optional[str] = None
    entity_type: Optional[str] = None

    @field_validator("scope_type")
    @classmethod
    def validate_scope_type(cls, v):
        if v not in SCOPE_TYPES:
            raise ValueError(f"scope_type must be one of: {', '.join(SCOPE_TYPES)}")
        return v

    @field_validator("entity_type")
    @classmethod
    def validate_entity_type(cls, v):
        if v is not None:
            return _check_entity_type(v)
        return v

    @model_validator(mode="after")
    def check_project(self):
        if self.scope_type == "project" and not self.project_id:
            raise ValueError("project scopes require project_id")
        return self


class ScopeResponse(BaseModel):
    id: int
    scope_type: str
    calendar_id: str
    name: Optional[str]
    organization_id: Optional[str]
    project_id: Optional[str]
    entity_type: Optional[str]

    class Config:
        from_attributes = True


class AccessGrant(BaseModel):
    employee_id: str
    access_level: str = "read"

    @field_validator("access_level")
    @classmethod
    def validate_access_level(cls, v):
        if v not in ACCESS_LEVELS:
            raise ValueError(f"access_level must be one of: {', '.join(ACCESS_LEVELS)}")
        return v


class AccessResponse(BaseModel):
    id: int
    scope_id: int
    employee_id: str
    access_level: str

    class Config:
        from_attributes = True
