"""Calendar sync repository - Database operations for mirrored events, assignments and scopes

Methods flush but never commit; the calling service owns the transaction so a
whole push or pull batch commits (or rolls back) together.
"""

from datetime import date
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models_calendar import (
    CalendarAccess,
    CalendarAssignment,
    CalendarEvent,
    CalendarScope,
)


class CalendarEventRepository:
    """Repository for mirrored calendar event rows"""

    @staticmethod
    def get_event(db: Session, event_id: str) -> Optional[CalendarEvent]:
        return db.query(CalendarEvent).filter(CalendarEvent.id == event_id).first()

    @staticmethod
    def get_by_provider_id(db: Session, calendar_id: str, provider_event_id: str) -> Optional[CalendarEvent]:
        return (
            db.query(CalendarEvent)
            .filter(
                CalendarEvent.calendar_id == calendar_id,
                CalendarEvent.provider_event_id == provider_event_id,
            )
            .first()
        )

    @staticmethod
    def list_for_entity(
        db: Session, entity_type: str, entity_id: str, calendar_id: Optional[str] = None
    ) -> list[CalendarEvent]:
        """Mirrored events for an entity, split days in order"""
        query = db.query(CalendarEvent).filter(
            CalendarEvent.entity_type == entity_type,
            CalendarEvent.entity_id == entity_id,
        )
        if calendar_id:
            query = query.filter(CalendarEvent.calendar_id == calendar_id)
        return query.order_by(CalendarEvent.calendar_id, CalendarEvent.day_number, CalendarEvent.start_time).all()

    @staticmethod
    def create_event(db: Session, **event_data) -> CalendarEvent:
        event = CalendarEvent(**event_data)
        db.add(event)
        db.flush()
        return event

    @staticmethod
    def update_event(db: Session, event: CalendarEvent, **updates) -> CalendarEvent:
        for key, value in updates.items():
            if hasattr(event, key):
                setattr(event, key, value)
        db.flush()
        return event

    @staticmethod
    def delete_event(db: Session, event: CalendarEvent) -> None:
        db.delete(event)
        db.flush()


class CalendarAssignmentRepository:
    """Repository for assignment rows used by the cost rollup"""

    @staticmethod
    def upsert_assignment(
        db: Session,
        entity_type: str,
        entity_id: str,
        assignee_id: str,
        calendar_id: str,
        **fields,
    ) -> CalendarAssignment:
        assignment = (
            db.query(CalendarAssignment)
            .filter(
                CalendarAssignment.entity_type == entity_type,
                CalendarAssignment.entity_id == entity_id,
                CalendarAssignment.assignee_id == assignee_id,
                CalendarAssignment.calendar_id == calendar_id,
            )
            .first()
        )
        if assignment is None:
            assignment = CalendarAssignment(
                entity_type=entity_type,
                entity_id=entity_id,
                assignee_id=assignee_id,
                calendar_id=calendar_id,
            )
            db.add(assignment)

        for key, value in fields.items():
            setattr(assignment, key, value)
        db.flush()
        return assignment

    @staticmethod
    def delete_for_entity(db: Session, entity_type: str, entity_id: str) -> int:
        deleted = (
            db.query(CalendarAssignment)
            .filter(
                CalendarAssignment.entity_type == entity_type,
                CalendarAssignment.entity_id == entity_id,
            )
            .delete(synchronize_session=False)
        )
        db.flush()
        return deleted

    @staticmethod
    def delete_for_provider_event(db: Session, calendar_id: str, provider_event_id: str) -> int:
        deleted = (
            db.query(CalendarAssignment)
            .filter(
                CalendarAssignment.calendar_id == calendar_id,
                CalendarAssignment.provider_event_id == provider_event_id,
            )
            .delete(synchronize_session=False)
        )
        db.flush()
        return deleted

    @staticmethod
    def list_overlapping(
        db: Session, entity_type: str, entity_id: str, start: date, end: date
    ) -> list[CalendarAssignment]:
        """Assignments whose span touches [start, end]; open-ended ones run forever"""
        return (
            db.query(CalendarAssignment)
            .filter(
                CalendarAssignment.entity_type == entity_type,
                CalendarAssignment.entity_id == entity_id,
                CalendarAssignment.start_date <= end,
                or_(CalendarAssignment.end_date.is_(None), CalendarAssignment.end_date >= start),
            )
            .order_by(CalendarAssignment.assignee_id, CalendarAssignment.start_date)
            .all()
        )


class CalendarScopeRepository:
    """Repository for calendar scopes and per-employee access"""

    @staticmethod
    def get_scope(db: Session, scope_id: int) -> Optional[CalendarScope]:
        return db.query(CalendarScope).filter(CalendarScope.id == scope_id).first()

    @staticmethod
    def scopes_for_calendar(db: Session, calendar_id: str) -> list[CalendarScope]:
        return db.query(CalendarScope).filter(CalendarScope.calendar_id == calendar_id).all()

    @staticmethod
    def find_project_scope(db: Session, project_id: str) -> Optional[CalendarScope]:
        return (
            db.query(CalendarScope)
            .filter(CalendarScope.scope_type == "project", CalendarScope.project_id == project_id)
            .order_by(CalendarScope.id)
            .first()
        )

    @staticmethod
    def find_organization_scope(db: Session, entity_type: Optional[str]) -> Optional[CalendarScope]:
        """Organization scope for entity_type, falling back to the organization-wide default"""
        query = db.query(CalendarScope).filter(CalendarScope.scope_type == "organization")
        if entity_type:
            scope = query.filter(CalendarScope.entity_type == entity_type).order_by(CalendarScope.id).first()
            if scope:
                return scope
        return query.filter(CalendarScope.entity_type.is_(None)).order_by(CalendarScope.id).first()

    @staticmethod
    def create_scope(db: Session, **scope_data) -> CalendarScope:
        scope = CalendarScope(**scope_data)
        db.add(scope)
        db.flush()
        return scope

    @staticmethod
    def upsert_access(db: Session, scope_id: int, employee_id: str, access_level: str) -> CalendarAccess:
        access = (
            db.query(CalendarAccess)
            .filter(CalendarAccess.scope_id == scope_id, CalendarAccess.employee_id == employee_id)
            .first()
        )
        if access is None:
            access = CalendarAccess(scope_id=scope_id, employee_id=employee_id)
            db.add(access)
        access.access_level = access_level
        db.flush()
        return access

    @staticmethod
    def has_access(db: Session, employee_id: str, calendar_id: str, levels: tuple[str, ...]) -> bool:
        return (
            db.query(CalendarAccess)
            .join(CalendarScope, CalendarAccess.scope_id == CalendarScope.id)
            .filter(
                CalendarScope.calendar_id == calendar_id,
                CalendarAccess.employee_id == employee_id,
                CalendarAccess.access_level.in_(levels),
            )
            .first()
            is not None
        )
