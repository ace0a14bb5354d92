from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from calsync import models_calendar  # noqa: F401
from calsync.config import Settings
from calsync.database import Base, create_db_engine, create_session_factory
from calsync.domain.calendar_sync.channel_registry import ChannelRegistry
from calsync.domain.calendar_sync.mapper import utcnow
from calsync.main import create_app

from tests.fakes import InMemoryCalendarClient


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        db_log_slow_queries=False,
        google_client_id="cid",
        google_client_secret="secret",
        google_refresh_token="rtok",
        webhook_base_url="https://hooks.example.com",
        provider_backoff_seconds=0.0,
    )


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_client() -> InMemoryCalendarClient:
    return InMemoryCalendarClient()


@pytest.fixture
def app(settings, fake_client):
    return create_app(settings, client=fake_client)


@pytest.fixture
def http(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def app_db(app, http):
    """Session on the app's own database (tables exist once the lifespan ran)"""
    session = app.state.session_factory()
    yield session
    session.close()


@pytest.fixture
def make_channel(db):
    def _make(calendar_id: str, channel_id: str, hours_left: float, resource_id=None):
        return ChannelRegistry(db).register(
            calendar_id,
            channel_id,
            resource_id or f"res-{channel_id}",
            utcnow() + timedelta(hours=hours_left),
        )

    return _make
