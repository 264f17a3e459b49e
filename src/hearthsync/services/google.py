"""Google Calendar client with async support."""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from dateutil.parser import isoparse
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz

from .base import (
    BaseCalendarClient, CalendarServiceError, AuthenticationError, RateLimitError,
    CalendarNotFoundError, RemoteTimeoutError, SyncTokenInvalidError,
)
from ..config import Settings
from ..models import EventPage, EventStatus, RemoteEvent, WatchResponse

logger = logging.getLogger(__name__)

RATE_LIMIT_REASONS = frozenset({'rateLimitExceeded', 'userRateLimitExceeded', 'quotaExceeded'})


def _error_reason(error: HttpError) -> Optional[str]:
    """Extract the first error reason from a Google API error body."""
    try:
        payload = json.loads(error.content.decode('utf-8') if isinstance(error.content, bytes) else error.content)
    except (ValueError, TypeError, AttributeError):
        return None
    errors = payload.get('error', {}).get('errors') or []
    if errors and isinstance(errors[0], dict):
        return errors[0].get('reason')
    return None


def translate_http_error(error: HttpError, context: str) -> CalendarServiceError:
    """Map a Google API HTTP error onto the client error taxonomy."""
    status = error.resp.status
    if status == 410:
        return SyncTokenInvalidError(f"{context}: sync token is no longer valid", status)
    if status == 401:
        return AuthenticationError(f"{context}: access token rejected", status)
    if status == 429 or (status == 403 and _error_reason(error) in RATE_LIMIT_REASONS):
        return RateLimitError(f"{context}: rate limited", status)
    if status == 404:
        return CalendarNotFoundError(f"{context}: not found", status)
    return CalendarServiceError(f"{context}: {error}", status)


def _parse_time(value: Dict[str, Any]) -> tuple:
    """Parse a Google start/end object into (aware datetime, all_day)."""
    if 'dateTime' in value:
        dt = isoparse(value['dateTime'])
        if dt.tzinfo is None:
            tz = pytz.timezone(value['timeZone']) if value.get('timeZone') else pytz.UTC
            dt = tz.localize(dt)
        return dt.astimezone(pytz.UTC), False
    if 'date' in value:
        day = datetime.strptime(value['date'], '%Y-%m-%d')
        return pytz.UTC.localize(day), True
    raise ValueError("time object has neither 'dateTime' nor 'date'")


def parse_google_event(event_data: Dict[str, Any]) -> RemoteEvent:
    """Convert a Google Calendar event resource to a RemoteEvent.

    Cancelled items from an incremental listing only need an id.

    Raises:
        ValueError: If the resource is missing required fields or is malformed
    """
    event_id = event_data.get('id')
    if not event_id:
        raise ValueError("event has no id")

    status = event_data.get('status', EventStatus.CONFIRMED.value)
    if status == EventStatus.CANCELLED.value:
        return RemoteEvent(id=event_id, status=EventStatus.CANCELLED)

    start, all_day = _parse_time(event_data.get('start') or {})
    end, _ = _parse_time(event_data.get('end') or {})
    updated = isoparse(event_data['updated']) if event_data.get('updated') else None

    attendees = []
    for attendee in event_data.get('attendees', []):
        attendees.append({
            'email': attendee.get('email', ''),
            'displayName': attendee.get('displayName', ''),
            'responseStatus': attendee.get('responseStatus', 'needsAction'),
        })

    return RemoteEvent(
        id=event_id,
        status=EventStatus(status),
        summary=event_data.get('summary') or '(No title)',
        description=event_data.get('description'),
        location=event_data.get('location'),
        start=start,
        end=end,
        all_day=all_day,
        event_type=event_data.get('eventType'),
        updated=updated,
        recurring_event_id=event_data.get('recurringEventId'),
        attendees=attendees,
    )


class GoogleCalendarClient(BaseCalendarClient):
    """Google Calendar v3 client authenticated with a bearer access token."""

    def __init__(
        self,
        access_token: str,
        settings: Settings,
        semaphore: asyncio.Semaphore,
        service: Any = None,
    ):
        """Initialize Google Calendar client.

        Args:
            access_token: OAuth access token for the linked account
            settings: Application settings
            semaphore: Shared bound on in-flight remote calls
            service: Prebuilt discovery service (built lazily when omitted)
        """
        self.settings = settings
        self.logger = logger.getChild('client')
        self._access_token = access_token
        self._semaphore = semaphore
        self._service = service

    @property
    def service(self):
        if self._service is None:
            credentials = Credentials(token=self._access_token)
            self._service = build('calendar', 'v3', credentials=credentials, cache_discovery=False)
        return self._service

    async def _execute(self, make_request: Callable[[], Any], context: str) -> Dict[str, Any]:
        """Run a blocking API request in the default executor.

        Raises:
            CalendarServiceError: Translated HTTP or timeout failure
        """
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    asyncio.get_event_loop().run_in_executor(None, lambda: make_request().execute()),
                    timeout=self.settings.request_timeout_seconds,
                )
            except HttpError as e:
                raise translate_http_error(e, context) from e
            except asyncio.TimeoutError as e:
                raise RemoteTimeoutError(
                    f"{context}: no response within {self.settings.request_timeout_seconds}s"
                ) from e

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
        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'maxResults': max_results,
            'singleEvents': True,
        }
        if sync_token:
            # Time filters are not allowed together with a sync token
            params['syncToken'] = sync_token
            params['showDeleted'] = True
        else:
            if time_min is not None:
                params['timeMin'] = time_min.isoformat()
            if time_max is not None:
                params['timeMax'] = time_max.isoformat()
        if page_token:
            params['pageToken'] = page_token

        result = await self._execute(
            lambda: self.service.events().list(**params),
            f"Listing events of {calendar_id}",
        )

        items = []
        for event_data in result.get('items', []):
            try:
                items.append(parse_google_event(event_data))
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning(f"Skipping unparseable Google event {event_data.get('id')}: {e}")

        return EventPage(
            items=items,
            next_page_token=result.get('nextPageToken'),
            next_sync_token=result.get('nextSyncToken'),
        )

    async def watch_events(
        self,
        calendar_id: str,
        *,
        channel_id: str,
        address: str,
        token: str,
        expiration: Optional[datetime] = None,
    ) -> WatchResponse:
        body: Dict[str, Any] = {
            'id': channel_id,
            'type': 'web_hook',
            'address': address,
            'token': token,
        }
        if expiration is not None:
            body['expiration'] = str(int(expiration.timestamp() * 1000))

        result = await self._execute(
            lambda: self.service.events().watch(calendarId=calendar_id, body=body),
            f"Watching events of {calendar_id}",
        )

        expires_at = None
        if result.get('expiration'):
            expires_at = datetime.fromtimestamp(int(result['expiration']) / 1000, tz=pytz.UTC)

        return WatchResponse(
            channel_id=result.get('id', channel_id),
            resource_id=result['resourceId'],
            expiration=expires_at,
        )

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        await self._execute(
            lambda: self.service.channels().stop(body={'id': channel_id, 'resourceId': resource_id}),
            f"Stopping channel {channel_id}",
        )


class GoogleClientFactory:
    """Builds per-account clients that share one concurrency bound."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.semaphore = asyncio.Semaphore(settings.max_concurrent_requests)

    def create(self, access_token: str) -> BaseCalendarClient:
        return GoogleCalendarClient(access_token, self.settings, self.semaphore)
