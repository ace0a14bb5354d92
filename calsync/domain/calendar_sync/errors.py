"""Calendar sync error taxonomy"""

from typing import Optional


class CalendarSyncError(Exception):
    """Base class for calendar sync failures"""

    pass


class ConfigurationError(CalendarSyncError):
    """Raised when required settings or credentials cannot be loaded"""

    pass


class WebhookValidationError(CalendarSyncError):
    """Raised when an inbound webhook is missing required headers"""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required webhook headers: {', '.join(missing)}")


class ChannelNotRecognized(CalendarSyncError):
    """Webhook channel/resource pair is not in the registry"""

    def __init__(self, channel_id: str, resource_id: str):
        self.channel_id = channel_id
        self.resource_id = resource_id
        super().__init__(f"Channel not recognized: {channel_id} ({resource_id})")


class AdapterError(CalendarSyncError):
    """Base class for calendar provider failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AdapterRetryable(AdapterError):
    """Timeout, transport error, 5xx or rate limit. Safe to retry later."""

    def __init__(self, message: str, status_code: Optional[int] = None, attempts: int = 1):
        self.attempts = attempts
        super().__init__(message, status_code)


class AdapterPermanent(AdapterError):
    """Provider rejected the request for good; retrying the same call will not help"""

    def __init__(self, message: str, status_code: Optional[int] = None, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message, status_code)


class ProviderNotFound(AdapterPermanent):
    """Event, calendar or channel does not exist (404/410)"""

    pass


class SyncTokenInvalid(AdapterPermanent):
    """Incremental sync token was rejected; a full resync is required"""

    pass


class SyncConflict(CalendarSyncError):
    """Provider etag changed since the local copy was taken"""

    def __init__(self, provider_event_id: str, local_etag: Optional[str], remote_etag: Optional[str] = None):
        self.provider_event_id = provider_event_id
        self.local_etag = local_etag
        self.remote_etag = remote_etag
        super().__init__(
            f"Etag mismatch for event {provider_event_id}: local={local_etag} remote={remote_etag}"
        )


class ChannelExpired(CalendarSyncError):
    """Channel is already past expiration, so there is nothing to stop"""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Channel already expired: {channel_id}")


class InboundNotSupported(CalendarSyncError):
    """Entity type is push-only and cannot be updated from provider changes"""

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(f"Inbound changes are not supported for entity type '{entity_type}'")


class CalendarAccessDenied(CalendarSyncError):
    """Actor may not enable sync on the requested calendar"""

    def __init__(self, employee_id: Optional[str], calendar_id: str):
        self.employee_id = employee_id
        self.calendar_id = calendar_id
        super().__init__(f"Employee {employee_id} lacks write access to calendar {calendar_id}")
