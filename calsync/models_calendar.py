"""
Calendar Sync Models
"""
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_uuid():
    return str(uuid.uuid4())


class CalendarEvent(Base):
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("calendar_id", "provider_event_id", name="uq_calendar_events_provider_event"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    is_all_day = Column(Boolean, default=False, nullable=False)
    location = Column(String(500), nullable=True)

    # Internal owner; immutable once created
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(100), nullable=False, index=True)
    entity_data = Column(JSON, nullable=True)  # last known entity snapshot

    assignee_type = Column(String(50), nullable=True)
    assignee_id = Column(String(100), nullable=True)
    attendees = Column(JSON, nullable=True)  # invitee emails
    send_notifications = Column(Boolean, default=False, nullable=False)

    calendar_id = Column(String(255), nullable=False, index=True)
    provider_event_id = Column(String(255), nullable=True, index=True)
    etag = Column(String(255), nullable=True)

    # Split multi-day events
    day_number = Column(Integer, nullable=True)
    total_days = Column(Integer, nullable=True)

    # Sync state
    sync_enabled = Column(Boolean, default=True, nullable=False)
    pending_push = Column(Boolean, default=False, nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    last_sync_error = Column(Text, nullable=True)

    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def sync_status(self) -> str:
        if not self.sync_enabled:
            return "disabled"
        if self.pending_push:
            return "pending"
        if self.last_sync_error:
            return "error"
        if not self.provider_event_id:
            return "pending"
        return "synced"


class PushNotificationChannel(Base):
    __tablename__ = "push_notification_channels"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(String(255), nullable=False, unique=True, index=True)
    resource_id = Column(String(255), nullable=False)
    calendar_id = Column(String(255), nullable=False, index=True)
    expiration = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())


class SyncCursor(Base):
    __tablename__ = "sync_cursors"

    calendar_id = Column(String(255), primary_key=True)
    next_sync_token = Column(Text, nullable=True)  # null forces a full resync
    last_sync_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class CalendarAssignment(Base):
    __tablename__ = "calendar_assignments"
    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "assignee_id", "calendar_id", name="uq_calendar_assignments_owner"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(100), nullable=False, index=True)
    assignee_type = Column(String(50), nullable=True)
    assignee_id = Column(String(100), nullable=False)
    calendar_id = Column(String(255), nullable=False)
    provider_event_id = Column(String(255), nullable=True)
    etag = Column(String(255), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)  # open-ended when null
    rate_per_hour = Column(Float, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class CalendarScope(Base):
    """Binds a calendar to an organization (optionally per entity type) or to a single project"""

    __tablename__ = "calendar_scopes"

    id = Column(Integer, primary_key=True, index=True)
    scope_type = Column(String(20), nullable=False)  # organization, project
    calendar_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    organization_id = Column(String(100), nullable=True)
    project_id = Column(String(100), nullable=True, index=True)
    entity_type = Column(String(50), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    access = relationship("CalendarAccess", back_populates="scope", cascade="all, delete-orphan")


class CalendarAccess(Base):
    __tablename__ = "calendar_access"
    __table_args__ = (UniqueConstraint("scope_id", "employee_id", name="uq_calendar_access_employee"),)

    id = Column(Integer, primary_key=True, index=True)
    scope_id = Column(Integer, ForeignKey("calendar_scopes.id", ondelete="CASCADE"), nullable=False)
    employee_id = Column(String(100), nullable=False, index=True)
    access_level = Column(String(20), nullable=False, default="read")  # read, write, admin
    created_at = Column(DateTime, server_default=func.now())

    scope = relationship("CalendarScope", back_populates="access")
