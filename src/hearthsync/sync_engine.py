"""Cursor-based sync engine for remote calendars."""

import logging
from datetime import timedelta
from typing import List, Optional, Tuple

from .broadcast import EventBroadcaster
from .concurrency import KeyedGuard
from .config import Settings
from .database import CalendarLinkDB, DatabaseManager
from .models import EventPage, SyncResult, UpsertOutcome, utcnow
from .services.base import BaseCalendarClient, CalendarServiceError, SyncTokenInvalidError
from .services.tokens import CredentialProvider

logger = logging.getLogger(__name__)

CALENDAR_NOT_FOUND = "Calendar not found"

# A page token only continues the listing that issued it
FULL_LISTING = 'full'
INCREMENTAL_LISTING = 'incremental'


class SyncEngine:
    """Pulls remote changes into the local event store, one calendar link at a time.

    Each call processes at most ``max_pages`` pages and checkpoints after
    every page, so an interrupted run resumes where it stopped.
    """

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        credentials: CredentialProvider,
        client_factory,
        guard: KeyedGuard,
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            db: Database manager
            credentials: Access token source for linked accounts
            client_factory: Object whose ``create(access_token)`` returns a calendar client
            guard: Per-link guard shared with every caller of the engine
            broadcaster: Optional realtime notifier
        """
        self.settings = settings
        self.db = db
        self.credentials = credentials
        self.client_factory = client_factory
        self.guard = guard
        self.broadcaster = broadcaster
        self.logger = logger.getChild('sync_engine')

    async def perform_initial_sync(self, calendar_link_id: str, max_pages: Optional[int] = None) -> SyncResult:
        """Run (or resume) a full windowed sync of a calendar link.

        Args:
            calendar_link_id: Calendar link to sync
            max_pages: Page budget for this call (defaults to the configured limit)

        Returns:
            Sync result; never raises for remote or credential failures
        """
        async with self.guard.hold(calendar_link_id) as acquired:
            if not acquired:
                return self._coalesced(calendar_link_id)
            result = await self._sync(calendar_link_id, max_pages, incremental=False)
        self._announce(result)
        return result

    async def perform_incremental_sync(self, calendar_link_id: str, max_pages: Optional[int] = None) -> SyncResult:
        """Apply remote changes since the stored cursor.

        Falls back to a full sync when the link has no cursor or the remote
        has invalidated it.

        Args:
            calendar_link_id: Calendar link to sync
            max_pages: Page budget for this call (defaults to the configured limit)

        Returns:
            Sync result; never raises for remote or credential failures
        """
        async with self.guard.hold(calendar_link_id) as acquired:
            if not acquired:
                return self._coalesced(calendar_link_id)
            result = await self._sync(calendar_link_id, max_pages, incremental=True)
        self._announce(result)
        return result

    def get_calendars_needing_sync(self, interval_minutes: Optional[int] = None) -> List[CalendarLinkDB]:
        """Enabled links with a pending pagination, never synced, or synced longer ago than the interval."""
        if interval_minutes is None:
            interval_minutes = self.settings.sync_config.sync_interval_minutes
        with self.db.get_session() as session:
            return self.db.get_calendars_needing_sync(session, interval_minutes)

    def set_sync_enabled(self, calendar_link_id: str, enabled: bool) -> bool:
        """Include or exclude a link from scheduled syncs; False if it does not exist."""
        with self.db.get_session() as session:
            updated = self.db.set_sync_enabled(session, calendar_link_id, enabled)
        if updated:
            self.logger.info(f"Sync {'enabled' if enabled else 'disabled'} for {calendar_link_id}")
        return updated

    def _coalesced(self, calendar_link_id: str) -> SyncResult:
        self.logger.info(f"Sync already running for {calendar_link_id}, coalescing request")
        return SyncResult(calendar_link_id=calendar_link_id, complete=False, coalesced=True)

    async def _sync(self, calendar_link_id: str, max_pages: Optional[int], incremental: bool) -> SyncResult:
        progress = SyncResult(calendar_link_id=calendar_link_id, complete=False)
        max_pages = max_pages or self.settings.sync_config.max_pages_per_run

        prepared = await self._prepare(calendar_link_id, progress)
        if prepared is None:
            return progress
        link, client = prepared

        try:
            if incremental and link.sync_cursor:
                try:
                    return await self._paginate(link, client, progress, max_pages, cursor=link.sync_cursor)
                except SyncTokenInvalidError:
                    self.logger.warning(
                        f"Sync cursor for {calendar_link_id} was invalidated, falling back to full sync"
                    )
                    with self.db.get_session() as session:
                        self.db.clear_sync_state(session, calendar_link_id)
                    link.pagination_token = None
                    link.pagination_mode = None
            return await self._paginate(link, client, progress, max_pages, cursor=None)
        except CalendarServiceError as e:
            self.logger.error(f"Sync of {calendar_link_id} failed: {e}")
            progress.error = str(e)
        except Exception as e:
            self.logger.exception(f"Unexpected error syncing {calendar_link_id}: {e}")
            progress.error = f"Unexpected error: {e}"
        finally:
            await client.close()
        return progress

    async def _prepare(
        self, calendar_link_id: str, progress: SyncResult
    ) -> Optional[Tuple[CalendarLinkDB, BaseCalendarClient]]:
        with self.db.get_session() as session:
            link = self.db.get_calendar_link(session, calendar_link_id)
        if link is None:
            progress.error = CALENDAR_NOT_FOUND
            return None

        access_token = await self.credentials.get_valid_access_token(link.account_id)
        if not access_token:
            self.logger.warning(f"No valid access token for account {link.account_id} (link {calendar_link_id})")
            progress.error = "No valid access token for linked account"
            return None

        return link, self.client_factory.create(access_token)

    async def _paginate(
        self,
        link: CalendarLinkDB,
        client: BaseCalendarClient,
        progress: SyncResult,
        max_pages: int,
        cursor: Optional[str],
    ) -> SyncResult:
        """Fetch and apply pages until the listing ends or the page budget is spent.

        ``progress`` accumulates the counts of committed pages, so they
        survive an exception raised by a later page.
        """
        sync_config = self.settings.sync_config
        now = utcnow()
        time_min = None if cursor else now - timedelta(days=sync_config.sync_past_days)
        time_max = None if cursor else now + timedelta(days=sync_config.sync_future_days)
        mode = INCREMENTAL_LISTING if cursor else FULL_LISTING
        page_token = None
        if link.pagination_token and link.pagination_mode == mode:
            page_token = link.pagination_token
            self.logger.info(f"Resuming {mode} pagination of {link.id}")
        elif link.pagination_token:
            self.logger.info(
                f"Discarding {link.pagination_mode} page token of {link.id}, starting a new {mode} listing"
            )

        pages = 0
        while True:
            page = await client.list_events(
                link.remote_calendar_id,
                sync_token=cursor,
                page_token=page_token,
                time_min=time_min,
                time_max=time_max,
                max_results=sync_config.page_size,
            )
            pages += 1

            with self.db.get_session() as session:
                try:
                    counts = self._apply_page(session, link, page)
                    if page.next_page_token:
                        self.db.save_pagination_token(session, link.id, page.next_page_token, mode)
                    elif page.next_sync_token:
                        self.db.complete_sync(session, link.id, page.next_sync_token)
                    else:
                        session.rollback()
                        self.logger.error(f"Last page for {link.id} carried no sync cursor")
                        progress.error = "Remote listing ended without a sync cursor"
                        return progress
                    session.commit()
                except Exception:
                    session.rollback()
                    raise

            progress.events_created += counts[UpsertOutcome.CREATED]
            progress.events_updated += counts[UpsertOutcome.UPDATED]
            progress.events_deleted += counts['deleted']

            if not page.next_page_token:
                progress.cursor = page.next_sync_token
                progress.complete = True
                link.pagination_token = None
                link.pagination_mode = None
                self.logger.info(
                    f"Synced {link.id}: {progress.events_created} created, "
                    f"{progress.events_updated} updated, {progress.events_deleted} deleted"
                )
                return progress

            page_token = page.next_page_token
            link.pagination_token = page_token
            link.pagination_mode = mode
            if pages >= max_pages:
                self.logger.info(f"Page limit ({max_pages}) reached for {link.id}, will resume next run")
                progress.cursor = cursor
                return progress

    def _apply_page(self, session, link: CalendarLinkDB, page: EventPage) -> dict:
        counts = {UpsertOutcome.CREATED: 0, UpsertOutcome.UPDATED: 0, UpsertOutcome.UNCHANGED: 0, 'deleted': 0}
        for remote in page.items:
            if remote.is_cancelled:
                if self.db.delete_remote_event(session, link.id, remote.id):
                    counts['deleted'] += 1
                continue
            if remote.is_status_event:
                continue
            if remote.start is None or remote.end is None:
                self.logger.warning(f"Skipping event {remote.id} without start/end")
                continue
            counts[self.db.upsert_remote_event(session, link, remote)] += 1
        return counts

    def _announce(self, result: SyncResult) -> None:
        if self.broadcaster is None or not result.succeeded or result.total_changes == 0:
            return
        with self.db.get_session() as session:
            link = self.db.get_calendar_link(session, result.calendar_link_id)
            family_id = link.family_id if link else None
        if family_id is None:
            return
        self.broadcaster.broadcast_to_family(family_id, 'calendar-synced', {
            'calendarLinkId': result.calendar_link_id,
            'created': result.events_created,
            'updated': result.events_updated,
            'deleted': result.events_deleted,
        })
