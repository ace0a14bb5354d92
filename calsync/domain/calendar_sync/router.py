"""Calendar sync router - Webhook receiver and management endpoints"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ...config import Settings
from ...database import get_db
from .access import CalendarAccessService
from .channel_registry import ChannelRegistry
from .client import CalendarClient
from .errors import ConfigurationError, WebhookValidationError
from .renewal import ChannelRenewalScheduler
from .rollup import CostRollupEngine
from .schemas import (
    AccessGrant,
    AccessResponse,
    CalendarEventResponse,
    ChannelResponse,
    CostRollup,
    DateRange,
    EventPushRequest,
    EventUpdateRequest,
    ScopeCreate,
    ScopeResponse,
    SyncResult,
)
from .sync_service import CalendarSyncService
from .webhook_service import WebhookIngestionService, parse_webhook_headers, pull_in_background

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar-sync", tags=["Calendar Sync"])
webhook_router = APIRouter(tags=["Calendar Webhooks"])

WEBHOOK_PATH = "/webhook/calendar"

# Provider calls this from its own infrastructure
WEBHOOK_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_calendar_client(request: Request) -> Optional[CalendarClient]:
    return request.app.state.calendar_client


def require_calendar_client(request: Request) -> CalendarClient:
    client = request.app.state.calendar_client
    if client is None:
        raise ConfigurationError("Calendar provider not configured")
    return client


def get_sync_service(
    db: Session = Depends(get_db),
    client: Optional[CalendarClient] = Depends(get_calendar_client),
    settings: Settings = Depends(get_settings),
) -> CalendarSyncService:
    """Dependency injection for CalendarSyncService"""
    return CalendarSyncService(db, client, settings)


def get_access_service(db: Session = Depends(get_db)) -> CalendarAccessService:
    """Dependency injection for CalendarAccessService"""
    return CalendarAccessService(db)


# ============================================================================
# PROVIDER WEBHOOK
# ============================================================================


@webhook_router.options(WEBHOOK_PATH)
async def calendar_webhook_preflight():
    return Response(status_code=204, headers=WEBHOOK_CORS_HEADERS)


@webhook_router.post(WEBHOOK_PATH)
async def calendar_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Receive a Google Calendar push notification.

    Only malformed headers get a non-2xx answer; everything else is
    acknowledged with 200 so the provider does not retry.
    """
    try:
        notification = parse_webhook_headers(request.headers)
    except WebhookValidationError as e:
        logger.warning(f"⚠️ Rejected calendar webhook: {e}")
        return JSONResponse(status_code=400, content={"error": str(e)}, headers=WEBHOOK_CORS_HEADERS)

    try:
        decision = WebhookIngestionService(db).handle(notification)
        if decision.calendar_id:
            background_tasks.add_task(
                pull_in_background,
                request.app.state.session_factory,
                request.app.state.calendar_client,
                request.app.state.settings,
                decision.calendar_id,
            )
        return JSONResponse(status_code=200, content=decision.body, headers=WEBHOOK_CORS_HEADERS)
    except Exception as e:
        logger.exception(f"❌ Error handling calendar webhook on channel {notification.channel_id}: {e}")
        return JSONResponse(status_code=200, content={"status": "error"}, headers=WEBHOOK_CORS_HEADERS)


# ============================================================================
# EVENTS
# ============================================================================


@router.post("/events", response_model=list[CalendarEventResponse], status_code=201)
async def push_entity(
    data: EventPushRequest,
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Mirror an entity onto a calendar and push it to the provider"""
    return await service.push_entity(data)


@router.put("/events/{event_id}", response_model=list[CalendarEventResponse])
async def update_entity(
    event_id: str,
    data: EventUpdateRequest,
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Re-push an updated entity; 409 when the provider copy changed underneath"""
    return await service.update_entity(event_id, data)


@router.delete("/entities/{entity_type}/{entity_id}")
async def delete_entity(
    entity_type: str,
    entity_id: str,
    service: CalendarSyncService = Depends(get_sync_service),
):
    deleted = await service.delete_entity(entity_type, entity_id)
    return {"deleted": deleted}


@router.get("/entities/{entity_type}/{entity_id}/events", response_model=list[CalendarEventResponse])
async def list_entity_events(
    entity_type: str,
    entity_id: str,
    service: CalendarSyncService = Depends(get_sync_service),
):
    return service.list_entity_events(entity_type, entity_id)


# ============================================================================
# SYNC & CHANNELS
# ============================================================================


@router.post("/calendars/{calendar_id}/resync", response_model=SyncResult)
async def resync_calendar(
    calendar_id: str,
    full: bool = Query(False),
    service: CalendarSyncService = Depends(get_sync_service),
):
    """Manual pull-sync; full=true discards the cursor first"""
    return await service.pull(calendar_id, full=full)


@router.post("/calendars/{calendar_id}/watch", response_model=ChannelResponse)
async def watch_calendar(
    calendar_id: str,
    db: Session = Depends(get_db),
    client: CalendarClient = Depends(require_calendar_client),
    settings: Settings = Depends(get_settings),
):
    if not settings.webhook_url:
        raise ConfigurationError("WEBHOOK_BASE_URL is not set")
    return await ChannelRenewalScheduler(db, client, settings).subscribe(calendar_id)


@router.get("/channels/health")
async def channel_health(db: Session = Depends(get_db)):
    """Channels past expiration with no successor; webhooks have stopped for these calendars"""
    stale = ChannelRegistry(db).stale_channels()
    return {
        "healthy": not stale,
        "stale_channels": [ChannelResponse.model_validate(c).model_dump(mode="json") for c in stale],
    }


# ============================================================================
# COST ROLLUP
# ============================================================================


@router.get("/rollup/{entity_type}/{entity_id}", response_model=CostRollup)
async def cost_rollup(
    entity_type: str,
    entity_id: str,
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        date_range = DateRange(start=start, end=end)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail="end date must not be before start date") from e
    return CostRollupEngine(db, settings.hours_per_day).rollup(entity_type, entity_id, date_range)


# ============================================================================
# SCOPES & ACCESS
# ============================================================================


@router.post("/scopes", response_model=ScopeResponse, status_code=201)
async def create_scope(
    data: ScopeCreate,
    service: CalendarAccessService = Depends(get_access_service),
):
    return service.create_scope(data)


@router.post("/scopes/{scope_id}/access", response_model=AccessResponse)
async def grant_access(
    scope_id: int,
    data: AccessGrant,
    service: CalendarAccessService = Depends(get_access_service),
):
    return service.grant_access(scope_id, data)
