"""Base calendar client interface and error taxonomy."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
import logging

from ..models import EventPage, WatchResponse

logger = logging.getLogger(__name__)


class HearthsyncError(Exception):
    """Base exception for local (non-remote) errors."""
    pass


class ConfigurationError(HearthsyncError):
    """A setting required by the requested operation is missing or invalid."""
    pass


class OperationInProgressError(HearthsyncError):
    """Another operation holds the calendar link."""
    pass


class JobTimeoutError(HearthsyncError):
    """A scheduled job exceeded its wall-clock ceiling."""
    pass


class CalendarServiceError(Exception):
    """Base exception for calendar service errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncTokenInvalidError(CalendarServiceError):
    """The sync cursor was invalidated by the remote (HTTP 410)."""
    pass


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""
    pass


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""
    pass


class CalendarNotFoundError(CalendarServiceError):
    """Calendar not found errors."""
    pass


class RemoteTimeoutError(CalendarServiceError):
    """A remote call did not complete within the configured timeout."""
    pass


class BaseCalendarClient(ABC):
    """Abstract remote calendar client bound to one access token."""

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        sync_token: Optional[str] = None,
        page_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        max_results: int = 250,
    ) -> EventPage:
        """Fetch one page of events.

        Args:
            calendar_id: Remote calendar ID
            sync_token: Cursor from a previous listing; includes deleted items
            page_token: Continuation token of the listing in progress
            time_min: Lower bound of the window (ignored with a sync token)
            time_max: Upper bound of the window (ignored with a sync token)
            max_results: Page size

        Returns:
            One page of events with its continuation tokens

        Raises:
            SyncTokenInvalidError: If the sync token is no longer valid
            CalendarServiceError: If the page cannot be retrieved
        """
        pass

    @abstractmethod
    async def watch_events(
        self,
        calendar_id: str,
        *,
        channel_id: str,
        address: str,
        token: str,
        expiration: Optional[datetime] = None,
    ) -> WatchResponse:
        """Register a push notification channel for a calendar's events.

        Raises:
            CalendarServiceError: If the channel cannot be created
        """
        pass

    @abstractmethod
    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        """Stop a push notification channel.

        Raises:
            CalendarServiceError: If the channel cannot be stopped
        """
        pass

    async def close(self) -> None:
        """Release resources held by the client."""
        pass
