import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models_calendar  # noqa: F401 - registers tables on Base
from .config import Settings, load_settings
from .database import Base, create_db_engine, create_session_factory
from .domain.calendar_sync.client import CalendarClient, GoogleCalendarClient
from .domain.calendar_sync.errors import (
    AdapterPermanent,
    AdapterRetryable,
    CalendarAccessDenied,
    ConfigurationError,
    InboundNotSupported,
    SyncConflict,
)
from .domain.calendar_sync.router import WEBHOOK_PATH
from .domain.calendar_sync.router import router as calendar_sync_router
from .domain.calendar_sync.router import webhook_router as calendar_webhook_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


class WebhookExemptCORSMiddleware(CORSMiddleware):
    """Browser CORS for the API; provider webhook paths answer with their own headers"""

    def __init__(self, app, exempt_paths=(), **kwargs):
        super().__init__(app, **kwargs)
        self.exempt_paths = tuple(exempt_paths)

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope["path"].startswith(self.exempt_paths):
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(settings: Optional[Settings] = None, client: Optional[CalendarClient] = None) -> FastAPI:
    """
    Build the API. Settings are loaded from the environment when not given;
    a Google Calendar client is created when credentials are configured and
    no client is injected.
    """
    settings = settings or load_settings()
    engine = create_db_engine(settings)
    owns_client = client is None and settings.provider_configured
    if owns_client:
        client = GoogleCalendarClient(settings)
    elif client is None:
        logger.warning("⚠️ Google Calendar credentials not configured - calendar sync unavailable")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Application starting up...")
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
        yield
        logger.info("Application shutting down...")
        if owns_client:
            await client.aclose()
        engine.dispose()

    app = FastAPI(title="Calendar Sync API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.state.calendar_client = client

    @app.exception_handler(SyncConflict)
    async def sync_conflict_handler(request: Request, exc: SyncConflict):
        return _error_response(409, exc)

    @app.exception_handler(CalendarAccessDenied)
    async def access_denied_handler(request: Request, exc: CalendarAccessDenied):
        return _error_response(403, exc)

    @app.exception_handler(InboundNotSupported)
    async def inbound_not_supported_handler(request: Request, exc: InboundNotSupported):
        return _error_response(422, exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return _error_response(503, exc)

    @app.exception_handler(AdapterRetryable)
    async def adapter_retryable_handler(request: Request, exc: AdapterRetryable):
        # Provider still unreachable after retries; the caller may try again later
        return _error_response(503, exc)

    @app.exception_handler(AdapterPermanent)
    async def adapter_permanent_handler(request: Request, exc: AdapterPermanent):
        return _error_response(502, exc)

    logger.info(f"CORS allowed origins: {list(settings.allowed_origins)}")
    app.add_middleware(
        WebhookExemptCORSMiddleware,
        exempt_paths=(WEBHOOK_PATH,),
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Routes
    app.include_router(calendar_webhook_router)
    app.include_router(calendar_sync_router)

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "calendar_sync": "available" if app.state.calendar_client is not None else "unavailable",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
