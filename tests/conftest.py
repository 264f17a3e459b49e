"""Shared fixtures and in-memory fakes."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from hearthsync.broadcast import EventBroadcaster
from hearthsync.concurrency import KeyedGuard, TaskDispatcher
from hearthsync.config import Settings
from hearthsync.database import DatabaseManager
from hearthsync.models import EventPage, RemoteEvent, WatchResponse
from hearthsync.services.base import BaseCalendarClient
from hearthsync.services.tokens import CredentialProvider


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        google_client_id='x' * 20,
        google_client_secret='y' * 20,
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        webhook_base_url='https://hooks.example.com',
        cron_secret='cron-secret',
    )
    values.update(overrides)
    return TestSettings(**values)


def make_event(event_id: str, summary: str = 'Event', start: Optional[datetime] = None, **fields) -> RemoteEvent:
    start = start or datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)
    fields.setdefault('end', start + timedelta(hours=1))
    fields.setdefault('updated', datetime(2024, 2, 1, tzinfo=pytz.UTC))
    return RemoteEvent(id=event_id, summary=summary, start=start, **fields)


def cancelled(event_id: str) -> RemoteEvent:
    return RemoteEvent(id=event_id, status='cancelled')


class FakeCalendarClient(BaseCalendarClient):
    """Scripted remote: each ``list_events`` call pops the next queued page or exception."""

    def __init__(self):
        self.responses: List[Any] = []
        self.list_calls: List[Dict[str, Any]] = []
        self.watch_calls: List[Dict[str, Any]] = []
        self.stopped: List[tuple] = []
        self.watch_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.watch_expiration: Optional[datetime] = None

    def queue(self, *responses) -> "FakeCalendarClient":
        self.responses.extend(responses)
        return self

    async def list_events(self, calendar_id, *, sync_token=None, page_token=None,
                          time_min=None, time_max=None, max_results=250) -> EventPage:
        self.list_calls.append({
            'calendar_id': calendar_id,
            'sync_token': sync_token,
            'page_token': page_token,
            'time_min': time_min,
            'time_max': time_max,
        })
        if not self.responses:
            raise AssertionError("Unexpected list_events call")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def watch_events(self, calendar_id, *, channel_id, address, token, expiration=None) -> WatchResponse:
        self.watch_calls.append({
            'calendar_id': calendar_id,
            'channel_id': channel_id,
            'address': address,
            'token': token,
            'expiration': expiration,
        })
        if self.watch_error is not None:
            raise self.watch_error
        return WatchResponse(
            channel_id=channel_id,
            resource_id=f'resource-{channel_id}',
            expiration=self.watch_expiration or expiration,
        )

    async def stop_channel(self, channel_id, resource_id) -> None:
        self.stopped.append((channel_id, resource_id))
        if self.stop_error is not None:
            raise self.stop_error


class FakeClientFactory:
    def __init__(self, client: FakeCalendarClient):
        self.client = client
        self.tokens: List[str] = []

    def create(self, access_token: str) -> FakeCalendarClient:
        self.tokens.append(access_token)
        return self.client


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, token: Optional[str] = 'access-token'):
        self.token = token
        self.requests: List[str] = []

    async def get_valid_access_token(self, account_id: str) -> Optional[str]:
        self.requests.append(account_id)
        return self.token


class RecordingBroadcaster(EventBroadcaster):
    def __init__(self, dispatcher: Optional[TaskDispatcher] = None):
        super().__init__(dispatcher or TaskDispatcher())
        self.sent: List[tuple] = []

    def broadcast(self, channel: str, event: str, data: Dict[str, Any]) -> None:
        self.sent.append((channel, event, data))

    async def deliver(self, channel, event, data) -> None:
        self.sent.append((channel, event, data))


class RecordingDispatcher(TaskDispatcher):
    """Closes dispatched coroutines instead of running them."""

    def __init__(self):
        super().__init__()
        self.dispatched: List[str] = []

    def dispatch(self, coro, name=None):
        self.dispatched.append(name)
        coro.close()
        return None


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    return manager


@pytest.fixture
def remote():
    return FakeCalendarClient()


@pytest.fixture
def client_factory(remote):
    return FakeClientFactory(remote)


@pytest.fixture
def credentials():
    return StaticCredentialProvider()


@pytest.fixture
def guard():
    return KeyedGuard('test')


@pytest.fixture
def calendar_link(db):
    with db.get_session() as session:
        account = db.create_account(session, access_token='stored', refresh_token='refresh')
        return db.create_calendar_link(
            session, family_id='family-1', account_id=account.id, remote_calendar_id='primary', name='Family'
        )
