"""Explicitly wired component graph shared by the server and the CLI."""

import logging
from typing import Optional

from .broadcast import EventBroadcaster, HttpBroadcaster, NullBroadcaster
from .channel_manager import ChannelManager
from .concurrency import FixedWindowRateLimiter, KeyedGuard, TaskDispatcher
from .config import Settings
from .database import DatabaseManager
from .jobs import SyncJobs
from .recurrence import RecurrenceHorizonExtender
from .services.google import GoogleClientFactory
from .services.tokens import CredentialProvider, DatabaseCredentialProvider
from .sync_engine import SyncEngine
from .webhooks import WebhookIngestor

logger = logging.getLogger(__name__)


class SyncRuntime:
    """Owns every long-lived component; constructed once per process."""

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        credentials: CredentialProvider,
        client_factory,
        dispatcher: TaskDispatcher,
        broadcaster: EventBroadcaster,
        rate_limiter: FixedWindowRateLimiter,
    ):
        self.settings = settings
        self.db = db
        self.credentials = credentials
        self.client_factory = client_factory
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster
        self.rate_limiter = rate_limiter

        self.sync_guard = KeyedGuard('sync')
        self.channel_guard = KeyedGuard('channel')

        self.sync_engine = SyncEngine(
            settings, db, credentials, client_factory, self.sync_guard, broadcaster
        )
        self.channel_manager = ChannelManager(
            settings, db, credentials, client_factory, self.channel_guard
        )
        self.ingestor = WebhookIngestor(self.channel_manager, self.sync_engine, dispatcher)
        self.extender = RecurrenceHorizonExtender(settings, db)
        self.jobs = SyncJobs(settings, self.sync_engine, self.channel_manager, self.extender)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        db: Optional[DatabaseManager] = None,
        credentials: Optional[CredentialProvider] = None,
        client_factory=None,
        broadcaster: Optional[EventBroadcaster] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
    ) -> "SyncRuntime":
        """Build the runtime, using production defaults for anything not supplied."""
        if db is None:
            db = DatabaseManager(settings)
            db.init_db()
        dispatcher = TaskDispatcher()
        if broadcaster is None:
            if settings.broadcast_url:
                broadcaster = HttpBroadcaster(dispatcher, settings.broadcast_url, settings.request_timeout_seconds)
            else:
                broadcaster = NullBroadcaster(dispatcher)
        else:
            broadcaster.dispatcher = dispatcher

        return cls(
            settings=settings,
            db=db,
            credentials=credentials or DatabaseCredentialProvider(settings, db),
            client_factory=client_factory or GoogleClientFactory(settings),
            dispatcher=dispatcher,
            broadcaster=broadcaster,
            rate_limiter=rate_limiter or FixedWindowRateLimiter(
                settings.manual_sync_rate_limit, settings.manual_sync_rate_window_seconds
            ),
        )

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Drain background work and release network resources."""
        logger.info(f"Shutting down, {self.dispatcher.pending} background tasks pending")
        await self.dispatcher.drain(timeout)
        await self.broadcaster.close()
