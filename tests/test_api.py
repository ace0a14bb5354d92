"""Management endpoints through the FastAPI app."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from calsync.domain.calendar_sync.channel_registry import ChannelRegistry
from calsync.domain.calendar_sync.errors import AdapterRetryable
from calsync.domain.calendar_sync.mapper import utcnow
from calsync.main import create_app

pytestmark = pytest.mark.unit

WORK_ORDER = {
    "id": "WO-1",
    "title": "Pour foundation",
    "scheduled_start": "2024-06-03T07:30:00",
    "scheduled_end": "2024-06-03T15:00:00",
}


def _push(http, **fields):
    payload = {"entity_type": "work_order", "entity": dict(WORK_ORDER), **fields}
    return http.post("/calendar-sync/events", json=payload)


def test_health_reports_provider_availability(http, settings):
    assert http.get("/health").json() == {"status": "healthy", "calendar_sync": "available"}

    unconfigured = settings.model_copy(update={"google_client_id": None})
    with TestClient(create_app(unconfigured)) as client:
        assert client.get("/health").json()["calendar_sync"] == "unavailable"


def test_push_and_list_entity_events(http):
    response = _push(http, assignee_type="employee", assignee_id="E-1", rate_per_hour=40)

    assert response.status_code == 201
    [event] = response.json()
    assert event["provider_event_id"] == "evt-1"
    assert event["sync_status"] == "synced"

    listed = http.get("/calendar-sync/entities/work_order/WO-1/events").json()
    assert [e["id"] for e in listed] == [event["id"]]


def test_push_with_attendees_reports_them(http, fake_client):
    response = _push(http, attendees=["foreman@example.com"], send_notifications=True)

    assert response.status_code == 201
    [event] = response.json()
    assert event["attendees"] == ["foreman@example.com"]
    assert event["send_notifications"] is True
    assert fake_client.pushed[-1].attendees == ["foreman@example.com"]

    invalid = _push(http, attendees=["not-an-address"])
    assert invalid.status_code == 422


def test_push_validates_entity_payload(http):
    response = http.post(
        "/calendar-sync/events", json={"entity_type": "work_order", "entity": {"id": "WO-1"}}
    )

    assert response.status_code == 422


def test_unknown_entity_type_is_rejected(http):
    response = http.post("/calendar-sync/events", json={"entity_type": "invoice", "entity": {"id": "1"}})

    assert response.status_code == 422


def test_duplicate_push_is_409(http):
    _push(http)

    assert _push(http).status_code == 409


def test_retryable_provider_failure_still_creates_pending_event(http, fake_client):
    fake_client.fail_next["create_event"] = AdapterRetryable("timed out", attempts=3)

    response = _push(http)

    assert response.status_code == 201
    assert response.json()[0]["sync_status"] == "pending"


def test_update_conflict_is_409(http, fake_client):
    event = _push(http).json()[0]
    fake_client.provider_edit("primary", event["provider_event_id"], title="Edited in calendar")

    response = http.put(f"/calendar-sync/events/{event['id']}", json={"entity": {**WORK_ORDER, "title": "Local"}})

    assert response.status_code == 409

    forced = http.put(
        f"/calendar-sync/events/{event['id']}",
        json={"entity": {**WORK_ORDER, "title": "Local"}, "overwrite": True},
    )
    assert forced.status_code == 200
    assert forced.json()[0]["sync_status"] == "synced"


def test_update_missing_event_is_404(http):
    response = http.put("/calendar-sync/events/nope", json={"entity": WORK_ORDER})

    assert response.status_code == 404


def test_delete_entity(http, fake_client):
    _push(http)

    response = http.delete("/calendar-sync/entities/work_order/WO-1")

    assert response.json() == {"deleted": 1}
    assert fake_client.get("primary", "evt-1").cancelled is True
    assert http.get("/calendar-sync/entities/work_order/WO-1/events").json() == []


def test_scoped_calendar_denies_push_without_access(http):
    scope = http.post("/calendar-sync/scopes", json={"scope_type": "organization", "calendar_id": "crew"})
    assert scope.status_code == 201

    denied = _push(http, calendar_id="crew", actor_id="E-1")
    assert denied.status_code == 403

    grant = http.post(
        f"/calendar-sync/scopes/{scope.json()['id']}/access", json={"employee_id": "E-1", "access_level": "write"}
    )
    assert grant.status_code == 200
    assert _push(http, calendar_id="crew", actor_id="E-1").status_code == 201


def test_project_scope_becomes_default_calendar(http):
    http.post(
        "/calendar-sync/scopes", json={"scope_type": "project", "calendar_id": "proj-7", "project_id": "P-7"}
    )

    event = _push(http, project_id="P-7", sync_enabled=False).json()[0]

    assert event["calendar_id"] == "proj-7"


def test_invalid_access_level_is_422(http):
    scope = http.post("/calendar-sync/scopes", json={"scope_type": "organization", "calendar_id": "crew"}).json()

    response = http.post(
        f"/calendar-sync/scopes/{scope['id']}/access", json={"employee_id": "E-1", "access_level": "owner"}
    )

    assert response.status_code == 422


def test_manual_resync(http, fake_client):
    _push(http)

    first = http.post("/calendar-sync/calendars/primary/resync").json()
    full = http.post("/calendar-sync/calendars/primary/resync", params={"full": "true"}).json()

    assert first["full_resync"] is True
    assert first["skipped"] == 1
    assert full["full_resync"] is True


def test_resync_without_provider_is_503(settings):
    unconfigured = settings.model_copy(update={"google_refresh_token": None})
    with TestClient(create_app(unconfigured)) as client:
        response = client.post("/calendar-sync/calendars/primary/resync")

    assert response.status_code == 503


def test_watch_registers_channel(http, fake_client, app_db):
    response = http.post("/calendar-sync/calendars/primary/watch")

    assert response.status_code == 200
    body = response.json()
    assert body["calendar_id"] == "primary"
    assert body["resource_id"] == f"res-{body['channel_id']}"
    assert ChannelRegistry(app_db).find_active("primary").channel_id == body["channel_id"]

    again = http.post("/calendar-sync/calendars/primary/watch")
    assert again.json()["channel_id"] == body["channel_id"]
    assert len(fake_client.watches) == 1


def test_channel_health_lists_stale_channels(http, app_db):
    assert http.get("/calendar-sync/channels/health").json() == {"healthy": True, "stale_channels": []}

    ChannelRegistry(app_db).register("crew", "ch-old", "res-old", utcnow() - timedelta(hours=1))

    body = http.get("/calendar-sync/channels/health").json()
    assert body["healthy"] is False
    assert [c["channel_id"] for c in body["stale_channels"]] == ["ch-old"]


def test_rollup_endpoint(http):
    _push(http, assignee_id="E-1", rate_per_hour=50)

    response = http.get(
        "/calendar-sync/rollup/work_order/WO-1", params={"start": "2024-06-01", "end": "2024-06-30"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_hours"] == 8.0
    assert body["total_cost"] == 400.0
    assert body["breakdown"][0]["assignee_id"] == "E-1"


def test_rollup_rejects_inverted_range(http):
    response = http.get(
        "/calendar-sync/rollup/work_order/WO-1", params={"start": "2024-06-30", "end": "2024-06-01"}
    )

    assert response.status_code == 422
