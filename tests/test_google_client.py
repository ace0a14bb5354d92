"""Google Calendar adapter against a mocked HTTP transport."""

import json
from datetime import datetime
from typing import Callable

import httpx
import pytest

from calsync.config import GOOGLE_TOKEN_URL
from calsync.domain.calendar_sync.client import (
    GoogleCalendarClient,
    build_event_body,
    new_event_id,
    parse_event_resource,
)
from calsync.domain.calendar_sync.errors import (
    AdapterPermanent,
    AdapterRetryable,
    ProviderNotFound,
    SyncConflict,
    SyncTokenInvalid,
)
from calsync.domain.calendar_sync.schemas import MappedEvent

pytestmark = pytest.mark.unit

API = "https://www.googleapis.com/calendar/v3"


def _token_response() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600})


def _event(**overrides) -> MappedEvent:
    fields = {
        "title": "Pour foundation",
        "start_time": datetime(2024, 6, 3, 7, 30),
        "end_time": datetime(2024, 6, 3, 15, 0),
        "entity_type": "work_order",
        "entity_id": "WO-1",
        "calendar_id": "crew@example.com",
    }
    fields.update(overrides)
    return MappedEvent(**fields)


class TestGoogleCalendarClient:
    def _make_client(self, settings, handler: Callable[[httpx.Request], httpx.Response]):
        self.sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            self.sleeps.append(delay)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GoogleCalendarClient(settings, http_client=http_client, sleep=fake_sleep)

    async def test_create_event_sends_body_with_entity_metadata(self, settings):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            body = json.loads(request.content)
            return httpx.Response(200, json={**body, "etag": '"1"'})

        client = self._make_client(settings, handler)
        remote = await client.create_event(_event())

        assert remote.provider_event_id == json.loads(requests[-1].content)["id"]
        assert remote.etag == '"1"'
        assert remote.entity_type == "work_order"
        assert remote.entity_id == "WO-1"

        create = requests[-1]
        assert create.method == "POST"
        assert create.url.path == "/calendar/v3/calendars/crew@example.com/events"
        assert create.headers["Authorization"] == "Bearer tok-1"
        assert create.url.params["sendUpdates"] == "none"
        body = json.loads(create.content)
        assert body["start"] == {"dateTime": "2024-06-03T07:30:00Z", "timeZone": "UTC"}
        assert "attendees" not in body
        assert body["extendedProperties"]["private"] == {
            "appSource": "construction_management",
            "entityType": "work_order",
            "entityId": "WO-1",
        }

    async def test_timed_out_create_is_retried_with_the_same_event_id(self, settings):
        stored: dict[str, dict] = {}
        posted_ids: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            if request.method == "GET":
                event_id = request.url.path.rsplit("/", 1)[-1]
                return httpx.Response(200, json=stored[event_id])
            body = json.loads(request.content)
            posted_ids.append(body["id"])
            if body["id"] in stored:
                return httpx.Response(409, json={"error": {"errors": [{"reason": "duplicate"}]}})
            # The event is stored but the response never arrives
            stored[body["id"]] = {**body, "etag": '"1"'}
            raise httpx.ReadTimeout("timed out", request=request)

        client = self._make_client(settings, handler)
        remote = await client.create_event(_event())

        assert len(posted_ids) == 2
        assert posted_ids[0] == posted_ids[1]
        assert list(stored) == [posted_ids[0]]
        assert remote.provider_event_id == posted_ids[0]
        assert remote.etag == '"1"'
        assert remote.entity_id == "WO-1"

    async def test_create_with_attendees_sends_invitations(self, settings):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            return httpx.Response(200, json={**json.loads(request.content), "etag": '"1"'})

        client = self._make_client(settings, handler)
        await client.create_event(_event(attendees=["Foreman@Example.com"]))

        create = requests[-1]
        assert create.url.params["sendUpdates"] == "all"
        assert json.loads(create.content)["attendees"] == [{"email": "foreman@example.com"}]

    async def test_update_and_delete_pass_send_updates(self, settings):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            if request.method == "DELETE":
                return httpx.Response(204)
            return httpx.Response(200, json={**json.loads(request.content), "id": "evt-1", "etag": '"2"'})

        client = self._make_client(settings, handler)
        await client.update_event(_event(provider_event_id="evt-1", send_notifications=True), etag=None)
        await client.delete_event("crew@example.com", "evt-1", send_updates=True)
        await client.delete_event("crew@example.com", "evt-1")

        update, notified_delete, quiet_delete = requests[-3:]
        assert update.method == "PUT"
        assert update.url.params["sendUpdates"] == "all"
        assert "id" not in json.loads(update.content)
        assert notified_delete.url.params["sendUpdates"] == "all"
        assert quiet_delete.url.params["sendUpdates"] == "none"

    async def test_update_sends_if_match_and_maps_412_to_conflict(self, settings):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            return httpx.Response(412, json={"error": {"errors": [{"reason": "conditionNotMet"}]}})

        client = self._make_client(settings, handler)
        with pytest.raises(SyncConflict) as exc_info:
            await client.update_event(_event(provider_event_id="evt-1"), etag='"old"')

        assert exc_info.value.local_etag == '"old"'
        assert requests[-1].method == "PUT"
        assert requests[-1].headers["If-Match"] == '"old"'
        assert self.sleeps == []

    async def test_list_changes_follows_pages_until_sync_token(self, settings):
        seen_params: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            params = dict(request.url.params)
            seen_params.append(params)
            if "pageToken" not in params:
                return httpx.Response(
                    200,
                    json={
                        "items": [{"id": "a", "etag": '"1"', "summary": "A", "start": {"date": "2024-06-01"}}],
                        "nextPageToken": "page-2",
                    },
                )
            return httpx.Response(
                200,
                json={"items": [{"id": "b", "etag": '"2"', "status": "cancelled"}], "nextSyncToken": "sync-9"},
            )

        client = self._make_client(settings, handler)
        changes = await client.list_changes_since("primary", None)

        assert [e.provider_event_id for e in changes.events] == ["a", "b"]
        assert changes.events[0].is_all_day is True
        assert changes.events[1].cancelled is True
        assert changes.next_sync_token == "sync-9"
        assert "syncToken" not in seen_params[0]
        assert seen_params[0]["showDeleted"] == "true"
        assert seen_params[1]["pageToken"] == "page-2"

    async def test_gone_sync_token_raises_sync_token_invalid(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            return httpx.Response(410, json={"error": {"errors": [{"reason": "fullSyncRequired"}]}})

        client = self._make_client(settings, handler)
        with pytest.raises(SyncTokenInvalid):
            await client.list_changes_since("primary", "stale-token")

    async def test_server_errors_are_retried_with_backoff(self, settings):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            attempts["count"] += 1
            if attempts["count"] < 3:
                return httpx.Response(503, json={"error": {"message": "backend error"}})
            return httpx.Response(200, json={"id": "evt-1", "etag": '"1"', "start": {"date": "2024-06-01"}})

        client = self._make_client(settings.model_copy(update={"provider_backoff_seconds": 1.0}), handler)
        remote = await client.create_event(_event())

        assert remote.provider_event_id == "evt-1"
        assert attempts["count"] == 3
        assert self.sleeps == [1.0, 2.0]

    async def test_timeouts_exhaust_into_retryable_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            raise httpx.ReadTimeout("timed out", request=request)

        client = self._make_client(settings, handler)
        with pytest.raises(AdapterRetryable) as exc_info:
            await client.delete_event("primary", "evt-1")

        assert exc_info.value.attempts == settings.provider_max_attempts
        assert len(self.sleeps) == settings.provider_max_attempts - 1

    async def test_rate_limited_403_is_retried(self, settings):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            attempts["count"] += 1
            if attempts["count"] == 1:
                return httpx.Response(403, json={"error": {"errors": [{"reason": "rateLimitExceeded"}]}})
            return httpx.Response(204)

        client = self._make_client(settings, handler)
        await client.stop_watch("ch-1", "res-1")

        assert attempts["count"] == 2

    async def test_not_found_is_permanent_and_not_retried(self, settings):
        attempts = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            attempts["count"] += 1
            return httpx.Response(404, json={"error": {"errors": [{"reason": "notFound"}]}})

        client = self._make_client(settings, handler)
        with pytest.raises(ProviderNotFound):
            await client.delete_event("primary", "missing")

        assert attempts["count"] == 1
        assert self.sleeps == []

    async def test_forbidden_is_permanent(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            return httpx.Response(403, json={"error": {"errors": [{"reason": "forbidden"}]}})

        client = self._make_client(settings, handler)
        with pytest.raises(AdapterPermanent) as exc_info:
            await client.create_event(_event())

        assert exc_info.value.status_code == 403
        assert exc_info.value.reason == "forbidden"

    async def test_watch_posts_channel_and_parses_expiration(self, settings):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if str(request.url) == GOOGLE_TOKEN_URL:
                return _token_response()
            return httpx.Response(
                200, json={"kind": "api#channel", "id": "ch-1", "resourceId": "res-1", "expiration": "1718000000000"}
            )

        client = self._make_client(settings, handler)
        result = await client.watch("primary", "ch-1", settings.webhook_url, 604800)

        assert result.resource_id == "res-1"
        assert result.expiration == datetime(2024, 6, 10, 6, 13, 20)
        assert requests[-1].url == httpx.URL(f"{API}/calendars/primary/events/watch")
        assert json.loads(requests[-1].content) == {
            "id": "ch-1",
            "type": "web_hook",
            "address": "https://hooks.example.com/webhook/calendar",
            "params": {"ttl": "604800"},
        }

    async def test_token_is_refreshed_once_and_reused(self, settings):
        token_calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == GOOGLE_TOKEN_URL:
                token_calls["count"] += 1
                return _token_response()
            return httpx.Response(204)

        client = self._make_client(settings, handler)
        await client.stop_watch("ch-1", "res-1")
        await client.stop_watch("ch-2", "res-2")

        assert token_calls["count"] == 1


def test_all_day_body_uses_exclusive_end_date():
    event = _event(
        start_time=datetime(2024, 6, 10),
        end_time=datetime(2024, 6, 12),
        is_all_day=True,
        day_number=1,
        total_days=3,
    )

    body = build_event_body(event)

    assert body["start"] == {"date": "2024-06-10"}
    assert body["end"] == {"date": "2024-06-13"}
    assert body["extendedProperties"]["private"]["dayNumber"] == "1"


def test_parse_event_without_metadata_has_no_owner():
    remote = parse_event_resource(
        {
            "id": "ext-1",
            "etag": '"5"',
            "summary": "Dentist",
            "start": {"dateTime": "2024-06-03T09:00:00-04:00"},
            "end": {"dateTime": "2024-06-03T10:00:00-04:00"},
        }
    )

    assert remote.entity_type is None
    assert remote.start_time == datetime(2024, 6, 3, 13, 0)
    assert remote.end_time == datetime(2024, 6, 3, 14, 0)


def test_new_event_ids_are_valid_provider_ids():
    ids = {new_event_id() for _ in range(20)}

    assert len(ids) == 20
    for event_id in ids:
        assert len(event_id) == 26
        assert set(event_id) <= set("0123456789abcdefghijklmnopqrstuv")
