"""
Calendar Client Adapter
Event CRUD and channel watch operations against the Google Calendar REST API
"""
import asyncio
import base64
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from ...config import Settings
from .errors import (
    AdapterPermanent,
    AdapterRetryable,
    ProviderNotFound,
    SyncConflict,
    SyncTokenInvalid,
)
from .schemas import ChangeSet, MappedEvent, RemoteEvent, WatchResult

logger = logging.getLogger(__name__)

APP_SOURCE = "construction_management"
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
PAGE_SIZE = 250


class CalendarClient(ABC):
    """Provider boundary; nothing provider-shaped crosses it"""

    @abstractmethod
    async def create_event(self, event: MappedEvent) -> RemoteEvent:
        ...

    @abstractmethod
    async def update_event(self, event: MappedEvent, etag: Optional[str]) -> RemoteEvent:
        """Update an existing event. When etag is given the provider must still hold it, else SyncConflict."""

    @abstractmethod
    async def delete_event(self, calendar_id: str, provider_event_id: str, send_updates: bool = False) -> None:
        """Cancel an event; send_updates notifies its attendees"""

    @abstractmethod
    async def list_changes_since(self, calendar_id: str, sync_token: Optional[str]) -> ChangeSet:
        """Changes since sync_token, or every event plus a fresh token when sync_token is None"""

    @abstractmethod
    async def watch(self, calendar_id: str, channel_id: str, webhook_url: str, ttl_seconds: int) -> WatchResult:
        ...

    @abstractmethod
    async def stop_watch(self, channel_id: str, resource_id: str) -> None:
        ...

    async def aclose(self) -> None:
        pass


# ============================================================================
# Provider payload translation
# ============================================================================


def _parse_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _format_datetime(value: datetime) -> str:
    # Stored timestamps are naive UTC
    return value.replace(microsecond=0).isoformat() + "Z"


def new_event_id() -> str:
    """Client-chosen event id: base32hex (a-v, 0-9) so the provider accepts it"""
    return base64.b32hexencode(uuid.uuid4().bytes).decode("ascii").rstrip("=").lower()


def send_updates_param(event: MappedEvent) -> str:
    # Invitations go out whenever there are attendees or the caller asked for them
    return "all" if event.attendees or event.send_notifications else "none"


def build_event_body(event: MappedEvent, time_zone: str = "UTC", event_id: Optional[str] = None) -> dict:
    """
    Build a Google Calendar event resource from a mapped event.

    event_id is only set on creates; a retried insert with the same id
    cannot produce a second event.
    """
    private = {
        "appSource": APP_SOURCE,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
    }
    if event.day_number is not None:
        private["dayNumber"] = str(event.day_number)
        private["totalDays"] = str(event.total_days)

    body: dict[str, Any] = {
        "summary": event.title,
        "extendedProperties": {"private": private},
    }
    if event_id:
        body["id"] = event_id
    if event.description:
        body["description"] = event.description
    if event.location:
        body["location"] = event.location
    if event.attendees:
        body["attendees"] = [{"email": email} for email in event.attendees]

    if event.is_all_day:
        last_day = (event.end_time or event.start_time).date()
        body["start"] = {"date": event.start_time.date().isoformat()}
        # All-day end dates are exclusive
        body["end"] = {"date": (last_day + timedelta(days=1)).isoformat()}
    else:
        end = event.end_time or event.start_time + timedelta(hours=1)
        body["start"] = {"dateTime": _format_datetime(event.start_time), "timeZone": time_zone}
        body["end"] = {"dateTime": _format_datetime(end), "timeZone": time_zone}

    return body


def parse_event_resource(item: dict) -> RemoteEvent:
    """Translate a Google Calendar event resource into a RemoteEvent"""
    if item.get("status") == "cancelled":
        return RemoteEvent(provider_event_id=item["id"], etag=item.get("etag"), cancelled=True)

    start = item.get("start") or {}
    end = item.get("end") or {}
    is_all_day = "date" in start

    if is_all_day:
        first_day = date.fromisoformat(start["date"])
        start_time = datetime.combine(first_day, datetime.min.time())
        end_time = None
        if end.get("date"):
            last_day = date.fromisoformat(end["date"]) - timedelta(days=1)
            if last_day > first_day:
                end_time = datetime.combine(last_day, datetime.min.time())
    else:
        start_time = _parse_datetime(start["dateTime"]) if start.get("dateTime") else None
        end_time = _parse_datetime(end["dateTime"]) if end.get("dateTime") else None

    private = (item.get("extendedProperties") or {}).get("private") or {}
    owned = private.get("appSource") == APP_SOURCE

    return RemoteEvent(
        provider_event_id=item["id"],
        etag=item.get("etag"),
        title=item.get("summary") or "",
        description=item.get("description"),
        start_time=start_time,
        end_time=end_time,
        is_all_day=is_all_day,
        location=item.get("location"),
        entity_type=private.get("entityType") if owned else None,
        entity_id=private.get("entityId") if owned else None,
        day_number=int(private["dayNumber"]) if owned and private.get("dayNumber") else None,
        total_days=int(private["totalDays"]) if owned and private.get("totalDays") else None,
    )


def _error_reason(response: httpx.Response) -> Optional[str]:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return None
    if not isinstance(error, dict):
        return str(error)
    errors = error.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get("reason")
    return error.get("status") or error.get("message")


def _is_retryable(response: httpx.Response, reason: Optional[str]) -> bool:
    if response.status_code == 429 or response.status_code >= 500:
        return True
    return response.status_code == 403 and reason in RATE_LIMIT_REASONS


# ============================================================================
# Google Calendar client
# ============================================================================


class GoogleCalendarClient(CalendarClient):
    """
    Google Calendar adapter using an OAuth refresh token.

    Retryable failures (timeouts, transport errors, 429, 5xx, rate-limit 403)
    are retried with exponential backoff; once attempts are exhausted the last
    failure is raised as AdapterRetryable. Everything else maps to a permanent
    error without retrying.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.base_url = settings.google_calendar_api.rstrip("/")
        self.timeout = httpx.Timeout(settings.provider_timeout_seconds)
        self.max_attempts = settings.provider_max_attempts
        self.backoff_seconds = settings.provider_backoff_seconds
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout)
        self._owns_http = http_client is None
        self._sleep = sleep
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _get_access_token(self) -> str:
        now = datetime.now(timezone.utc)
        # Refresh a few minutes early
        if self._access_token and self._token_expires_at and self._token_expires_at > now + timedelta(minutes=5):
            return self._access_token

        logger.info("🔄 Refreshing Google Calendar access token...")
        response = await self._http.post(
            self.settings.google_token_url,
            data={
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "refresh_token": self.settings.google_refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=self.timeout,
        )
        if response.status_code != 200:
            reason = _error_reason(response)
            if response.status_code == 429 or response.status_code >= 500:
                raise AdapterRetryable(f"Token refresh failed: HTTP {response.status_code}", response.status_code)
            raise AdapterPermanent(
                f"Token refresh failed: HTTP {response.status_code}", response.status_code, reason or "auth"
            )

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise AdapterPermanent("No access token in refresh response", response.status_code, "auth")

        self._access_token = access_token
        self._token_expires_at = now + timedelta(seconds=tokens.get("expires_in", 3600))
        logger.info("✅ Google Calendar token refreshed successfully")
        return access_token

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        last_error: Optional[AdapterRetryable] = None

        for attempt in range(self.max_attempts):
            try:
                token = await self._get_access_token()
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}", **(headers or {})},
                    timeout=self.timeout,
                )
            except httpx.TimeoutException as e:
                last_error = AdapterRetryable(f"Timeout calling {method} {path}: {e}")
            except httpx.TransportError as e:
                last_error = AdapterRetryable(f"Transport error calling {method} {path}: {e}")
            except AdapterRetryable as e:
                last_error = e
            else:
                if response.status_code < 400:
                    return response

                reason = _error_reason(response)
                if response.status_code == 401:
                    # Access token revoked or expired early; refresh and retry
                    self._access_token = None
                    last_error = AdapterRetryable(f"Unauthorized calling {method} {path}", 401)
                elif _is_retryable(response, reason):
                    last_error = AdapterRetryable(
                        f"HTTP {response.status_code} calling {method} {path} ({reason})", response.status_code
                    )
                elif response.status_code in (404, 410):
                    raise ProviderNotFound(
                        f"HTTP {response.status_code} calling {method} {path}", response.status_code, reason
                    )
                else:
                    raise AdapterPermanent(
                        f"HTTP {response.status_code} calling {method} {path}: {response.text[:200]}",
                        response.status_code,
                        reason,
                    )

            if attempt < self.max_attempts - 1:
                delay = self.backoff_seconds * (2**attempt)
                logger.warning(
                    f"⚠️ {last_error} - retrying in {delay}s (attempt {attempt + 1}/{self.max_attempts})"
                )
                await self._sleep(delay)

        logger.error(f"❌ Giving up after {self.max_attempts} attempts: {last_error}")
        raise AdapterRetryable(str(last_error), last_error.status_code, attempts=self.max_attempts)

    @staticmethod
    def _events_path(calendar_id: str, provider_event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if provider_event_id:
            path += f"/{quote(provider_event_id, safe='')}"
        return path

    async def create_event(self, event: MappedEvent) -> RemoteEvent:
        event_id = new_event_id()
        try:
            response = await self._request(
                "POST",
                self._events_path(event.calendar_id),
                params={"sendUpdates": send_updates_param(event)},
                json=build_event_body(event, self.settings.default_timezone, event_id=event_id),
            )
        except AdapterPermanent as e:
            if e.status_code != 409:
                raise
            # An earlier attempt was stored even though its response was lost
            logger.info(f"ℹ️ Event {event_id} already exists on calendar {event.calendar_id}, fetching it")
            response = await self._request("GET", self._events_path(event.calendar_id, event_id))
        remote = parse_event_resource(response.json())
        logger.info(f"✅ Google Calendar event created: {remote.provider_event_id}")
        return remote

    async def update_event(self, event: MappedEvent, etag: Optional[str]) -> RemoteEvent:
        if not event.provider_event_id:
            raise ValueError("Cannot update an event that was never pushed")

        headers = {"If-Match": etag} if etag else None
        try:
            response = await self._request(
                "PUT",
                self._events_path(event.calendar_id, event.provider_event_id),
                params={"sendUpdates": send_updates_param(event)},
                json=build_event_body(event, self.settings.default_timezone),
                headers=headers,
            )
        except AdapterPermanent as e:
            if e.status_code == 412:
                raise SyncConflict(event.provider_event_id, etag) from e
            raise

        remote = parse_event_resource(response.json())
        logger.info(f"✅ Google Calendar event updated: {remote.provider_event_id}")
        return remote

    async def delete_event(self, calendar_id: str, provider_event_id: str, send_updates: bool = False) -> None:
        await self._request(
            "DELETE",
            self._events_path(calendar_id, provider_event_id),
            params={"sendUpdates": "all" if send_updates else "none"},
        )
        logger.info(f"🗑️ Google Calendar event deleted: {provider_event_id}")

    async def list_changes_since(self, calendar_id: str, sync_token: Optional[str]) -> ChangeSet:
        params: dict[str, Any] = {"showDeleted": "true", "maxResults": PAGE_SIZE}
        if sync_token:
            params["syncToken"] = sync_token

        events: list[RemoteEvent] = []
        page_token: Optional[str] = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            try:
                response = await self._request("GET", self._events_path(calendar_id), params=page_params)
            except ProviderNotFound as e:
                if sync_token and e.status_code == 410:
                    raise SyncTokenInvalid(
                        f"Sync token for calendar {calendar_id} is no longer valid", 410, e.reason
                    ) from e
                raise

            data = response.json()
            events.extend(parse_event_resource(item) for item in data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                next_token = data.get("nextSyncToken")
                break

        logger.info(
            f"📥 Listed {len(events)} changed events for calendar {calendar_id} "
            f"({'incremental' if sync_token else 'full'})"
        )
        return ChangeSet(events=events, next_sync_token=next_token)

    async def watch(self, calendar_id: str, channel_id: str, webhook_url: str, ttl_seconds: int) -> WatchResult:
        response = await self._request(
            "POST",
            f"{self._events_path(calendar_id)}/watch",
            json={
                "id": channel_id,
                "type": "web_hook",
                "address": webhook_url,
                "params": {"ttl": str(ttl_seconds)},
            },
        )
        data = response.json()
        if not data.get("resourceId") or not data.get("expiration"):
            raise AdapterPermanent(f"Watch response for calendar {calendar_id} is missing fields", response.status_code)

        # Expiration is epoch milliseconds
        expiration = datetime.fromtimestamp(int(data["expiration"]) / 1000, tz=timezone.utc).replace(tzinfo=None)
        logger.info(f"🔔 Watching calendar {calendar_id} on channel {channel_id} until {expiration}")
        return WatchResult(resource_id=data["resourceId"], expiration=expiration)

    async def stop_watch(self, channel_id: str, resource_id: str) -> None:
        await self._request("POST", "/channels/stop", json={"id": channel_id, "resourceId": resource_id})
        logger.info(f"🔕 Stopped channel {channel_id}")

