"""Calendar access service - Which calendars an employee may sync to"""

import logging
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models_calendar import CalendarAccess, CalendarScope
from .errors import CalendarAccessDenied
from .repository import CalendarScopeRepository
from .schemas import AccessGrant, ScopeCreate

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"
SYNC_LEVELS = ("write", "admin")


class CalendarAccessService:
    """Scopes bind calendars to the organization or a project; access rows grant employees levels on them"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = CalendarScopeRepository()

    def create_scope(self, data: ScopeCreate) -> CalendarScope:
        scope = self.repo.create_scope(self.db, **data.model_dump())
        self.db.commit()
        self.db.refresh(scope)
        logger.info(f"✅ Created {scope.scope_type} calendar scope {scope.id} for calendar {scope.calendar_id}")
        return scope

    def grant_access(self, scope_id: int, data: AccessGrant) -> CalendarAccess:
        scope = self.repo.get_scope(self.db, scope_id)
        if not scope:
            raise HTTPException(status_code=404, detail="Calendar scope not found")

        access = self.repo.upsert_access(self.db, scope_id, data.employee_id, data.access_level)
        self.db.commit()
        self.db.refresh(access)
        logger.info(f"🔑 Granted {data.access_level} on scope {scope_id} to employee {data.employee_id}")
        return access

    def can_enable_sync(self, employee_id: Optional[str], calendar_id: str) -> bool:
        """Unscoped calendars are open; scoped ones need write or admin access"""
        if not self.repo.scopes_for_calendar(self.db, calendar_id):
            return True
        if not employee_id:
            return False
        return self.repo.has_access(self.db, employee_id, calendar_id, SYNC_LEVELS)

    def require_sync_permission(self, employee_id: Optional[str], calendar_id: str) -> None:
        if not self.can_enable_sync(employee_id, calendar_id):
            logger.warning(f"⚠️ Employee {employee_id} denied sync on calendar {calendar_id}")
            raise CalendarAccessDenied(employee_id, calendar_id)

    def default_calendar_for(self, entity_type: Optional[str], project_id: Optional[str] = None) -> str:
        """Project calendar first, then the organization calendar for the entity type, then primary"""
        if project_id:
            scope = self.repo.find_project_scope(self.db, project_id)
            if scope:
                return scope.calendar_id

        scope = self.repo.find_organization_scope(self.db, entity_type)
        if scope:
            return scope.calendar_id
        return DEFAULT_CALENDAR_ID
