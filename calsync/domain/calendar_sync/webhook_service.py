"""
Webhook Ingestion Service
Validates provider push notifications and decides whether to pull-sync
"""
import logging
from typing import Mapping, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from ...config import Settings
from .channel_registry import ChannelRegistry
from .client import CalendarClient
from .errors import ChannelNotRecognized, WebhookValidationError
from .sync_service import run_pull_sync

logger = logging.getLogger(__name__)

# Google Calendar push notification headers
CHANNEL_ID_HEADER = "x-goog-channel-id"
RESOURCE_ID_HEADER = "x-goog-resource-id"
RESOURCE_STATE_HEADER = "x-goog-resource-state"
RESOURCE_URI_HEADER = "x-goog-resource-uri"
MESSAGE_NUMBER_HEADER = "x-goog-message-number"

REQUIRED_HEADERS = (
    CHANNEL_ID_HEADER,
    RESOURCE_ID_HEADER,
    RESOURCE_STATE_HEADER,
    RESOURCE_URI_HEADER,
    MESSAGE_NUMBER_HEADER,
)

CHANGE_STATES = {"exists", "not_exists"}


class WebhookNotification(BaseModel):
    channel_id: str
    resource_id: str
    resource_state: str
    resource_uri: str
    message_number: str


class WebhookDecision(BaseModel):
    """Response body for the provider plus the calendar to pull, if any"""

    body: dict
    calendar_id: Optional[str] = None


def parse_webhook_headers(headers: Mapping[str, str]) -> WebhookNotification:
    """Raise WebhookValidationError unless every required header is present and non-empty"""
    values = {name: headers.get(name) for name in REQUIRED_HEADERS}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise WebhookValidationError(missing)

    return WebhookNotification(
        channel_id=values[CHANNEL_ID_HEADER],
        resource_id=values[RESOURCE_ID_HEADER],
        resource_state=values[RESOURCE_STATE_HEADER],
        resource_uri=values[RESOURCE_URI_HEADER],
        message_number=values[MESSAGE_NUMBER_HEADER],
    )


class WebhookIngestionService:
    """
    Per-request state machine over the provider's resource state.

    The notification carries no event data, so the only action ever taken is
    to pull changes since the stored cursor; re-delivered notifications are
    therefore harmless.
    """

    def __init__(self, db: Session):
        self.db = db
        self.registry = ChannelRegistry(db)

    def handle(self, notification: WebhookNotification) -> WebhookDecision:
        state = notification.resource_state
        logger.info(
            f"📨 Calendar webhook: channel={notification.channel_id} state={state} "
            f"message={notification.message_number}"
        )

        if state == "sync":
            return WebhookDecision(body={"status": "sync acknowledged"})

        if state not in CHANGE_STATES:
            logger.info(f"ℹ️ Unhandled resource state '{state}' on channel {notification.channel_id}")
            return WebhookDecision(body={"status": "acknowledged"})

        try:
            calendar_id = self.registry.validate(notification.channel_id, notification.resource_id)
        except ChannelNotRecognized as e:
            logger.warning(f"⚠️ {e}")
            return WebhookDecision(body={"status": "channel not recognized"})

        return WebhookDecision(body={"status": "processing", "calendar_id": calendar_id}, calendar_id=calendar_id)


async def pull_in_background(
    session_factory: sessionmaker,
    client: Optional[CalendarClient],
    settings: Settings,
    calendar_id: str,
) -> None:
    """Background pull triggered by a webhook; failures are logged since the provider was already answered"""
    if client is None:
        logger.warning(f"⚠️ Calendar provider not configured; change on {calendar_id} will sync later")
        return

    try:
        await run_pull_sync(session_factory, client, settings, calendar_id)
    except Exception as e:
        logger.exception(f"❌ Webhook-triggered sync failed for calendar {calendar_id}: {e}")
