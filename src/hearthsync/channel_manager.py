"""Push notification channel lifecycle: creation, renewal, verification."""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .concurrency import KeyedGuard
from .config import Settings
from .database import CalendarLinkDB, DatabaseManager
from .models import ChannelResult, WatchChannelInfo, ensure_utc, utcnow
from .services.base import CalendarServiceError, ConfigurationError, OperationInProgressError
from .services.tokens import CredentialProvider

logger = logging.getLogger(__name__)


def generate_channel_token() -> str:
    """URL-safe encoding of 32 random bytes."""
    return secrets.token_urlsafe(32)


class ChannelManager:
    """Creates, renews, verifies and stops watch channels, and unlinks calendars."""

    def __init__(
        self,
        settings: Settings,
        db: DatabaseManager,
        credentials: CredentialProvider,
        client_factory,
        guard: KeyedGuard,
    ):
        self.settings = settings
        self.db = db
        self.credentials = credentials
        self.client_factory = client_factory
        self.guard = guard
        self.logger = logger.getChild('channel_manager')

    def ensure_configured(self) -> str:
        """Return the webhook address.

        Raises:
            ConfigurationError: If WEBHOOK_BASE_URL is not set
        """
        address = self.settings.webhook_address
        if not address:
            raise ConfigurationError(
                "WEBHOOK_BASE_URL is not configured; push notification channels cannot be created"
            )
        return address

    async def create_watch_channel(self, calendar_link_id: str) -> ChannelResult:
        """Create a channel for a link, replacing (and stopping) any previous one.

        A failed watch request leaves the previous channel in place.

        Args:
            calendar_link_id: Calendar link to watch

        Returns:
            Channel result; never raises for remote or configuration failures
        """
        try:
            address = self.ensure_configured()
        except ConfigurationError as e:
            return ChannelResult(calendar_link_id=calendar_link_id, success=False, error=str(e))

        async with self.guard.hold(calendar_link_id) as acquired:
            if not acquired:
                self.logger.info(f"Channel operation already running for {calendar_link_id}, coalescing")
                return ChannelResult(calendar_link_id=calendar_link_id, success=False, coalesced=True)
            return await self._create(calendar_link_id, address)

    async def _create(self, calendar_link_id: str, address: str) -> ChannelResult:
        with self.db.get_session() as session:
            link = self.db.get_calendar_link(session, calendar_link_id)
        if link is None:
            return ChannelResult(calendar_link_id=calendar_link_id, success=False, error="Calendar not found")

        access_token = await self.credentials.get_valid_access_token(link.account_id)
        if not access_token:
            return ChannelResult(
                calendar_link_id=calendar_link_id, success=False,
                error="No valid access token for linked account",
            )

        channel_id = str(uuid.uuid4())
        token = generate_channel_token()
        requested_expiration = utcnow() + timedelta(hours=self.settings.channel_config.channel_ttl_hours)

        client = self.client_factory.create(access_token)
        try:
            try:
                response = await client.watch_events(
                    link.remote_calendar_id,
                    channel_id=channel_id,
                    address=address,
                    token=token,
                    expiration=requested_expiration,
                )
            except CalendarServiceError as e:
                self.logger.error(f"Failed to create watch channel for {calendar_link_id}: {e}")
                return ChannelResult(calendar_link_id=calendar_link_id, success=False, error=str(e))

            # The remote may grant a shorter lifetime than requested
            expiration = ensure_utc(response.expiration) if response.expiration else requested_expiration
            try:
                with self.db.get_session() as session:
                    previous = self.db.replace_channel(
                        session,
                        calendar_link_id,
                        channel_id=response.channel_id,
                        resource_id=response.resource_id,
                        token=token,
                        expiration=expiration,
                    )
            except Exception:
                # Unrecorded channels would post notifications nobody can verify
                self.logger.error(f"Failed to store watch channel {response.channel_id}, stopping it")
                await self._stop_remote(client, WatchChannelInfo(
                    channel_id=response.channel_id,
                    calendar_link_id=calendar_link_id,
                    resource_id=response.resource_id,
                    expiration=expiration,
                ))
                raise

            if previous is not None:
                await self._stop_remote(client, previous)
        finally:
            await client.close()

        self.logger.info(f"Watch channel {response.channel_id} created for {calendar_link_id}, expires {expiration}")
        return ChannelResult(
            calendar_link_id=calendar_link_id,
            success=True,
            channel_id=response.channel_id,
            expiration=expiration,
        )

    async def _stop_remote(self, client, channel: WatchChannelInfo) -> None:
        try:
            await client.stop_channel(channel.channel_id, channel.resource_id)
        except CalendarServiceError as e:
            # The remote expires abandoned channels on its own
            self.logger.warning(f"Failed to stop old channel {channel.channel_id}: {e}")

    async def stop_watch_channel(self, calendar_link_id: str) -> bool:
        """Stop and forget the channel of a link.

        Returns:
            True if a channel was removed
        """
        async with self.guard.hold(calendar_link_id) as acquired:
            if not acquired:
                return False
            return await self._stop(calendar_link_id)

    async def unlink_calendar(self, calendar_link_id: str) -> bool:
        """Stop the link's channel, then delete the link with its synced events.

        The remote stop is best-effort; the link is deleted either way.

        Returns:
            False if the link does not exist

        Raises:
            OperationInProgressError: If a channel operation holds the link
        """
        async with self.guard.hold(calendar_link_id) as acquired:
            if not acquired:
                raise OperationInProgressError(f"A channel operation is running for {calendar_link_id}")
            await self._stop(calendar_link_id)
            with self.db.get_session() as session:
                deleted = self.db.delete_calendar_link(session, calendar_link_id)
        if deleted:
            self.logger.info(f"Unlinked calendar {calendar_link_id}")
        return deleted

    async def _stop(self, calendar_link_id: str) -> bool:
        with self.db.get_session() as session:
            channel = self.db.get_channel_for_link(session, calendar_link_id)
            link = self.db.get_calendar_link(session, calendar_link_id)
            if channel is None:
                return False
            info = channel.to_info()
            account_id = link.account_id if link else None

        access_token = await self.credentials.get_valid_access_token(account_id) if account_id else None
        if access_token:
            client = self.client_factory.create(access_token)
            try:
                await self._stop_remote(client, info)
            finally:
                await client.close()
        else:
            self.logger.warning(f"No access token to stop channel {info.channel_id}; removing locally only")

        with self.db.get_session() as session:
            removed = self.db.delete_channel(session, info.channel_id)
        self.logger.info(f"Stopped watch channel {info.channel_id} for {calendar_link_id}")
        return removed

    def get_channels_needing_renewal(self, within: Optional[timedelta] = None) -> List[WatchChannelInfo]:
        """Channels expiring within the lookahead (expired ones included)."""
        if within is None:
            within = timedelta(minutes=self.settings.channel_config.renewal_lookahead_minutes)
        with self.db.get_session() as session:
            channels = self.db.get_channels_expiring_before(session, utcnow() + within)
            return [channel.to_info() for channel in channels]

    def get_calendars_without_channel(self) -> List[CalendarLinkDB]:
        with self.db.get_session() as session:
            return self.db.get_links_without_active_channel(session, utcnow())

    def verify_channel_token(self, channel_id: str, token: str) -> Optional[str]:
        """Return the owning calendar link id if the channel exists, the token matches and it has not expired."""
        with self.db.get_session() as session:
            channel = self.db.get_channel(session, channel_id)
            if channel is None:
                return None
            if not secrets.compare_digest(channel.token.encode('utf-8'), token.encode('utf-8')):
                return None
            if ensure_utc(channel.expiration) <= utcnow():
                return None
            return channel.calendar_link_id

    def record_message_number(self, channel_id: str, message_number: int) -> bool:
        """False if the notification is a duplicate or arrived out of order."""
        with self.db.get_session() as session:
            return self.db.advance_message_number(session, channel_id, message_number)

    def get_channel_status(self, calendar_link_id: str) -> Dict[str, Any]:
        with self.db.get_session() as session:
            channel = self.db.get_channel_for_link(session, calendar_link_id)
            if channel is None:
                return {'active': False, 'channelId': None, 'expiration': None}
            expiration: datetime = ensure_utc(channel.expiration)
            return {
                'active': expiration > utcnow(),
                'channelId': channel.id,
                'expiration': expiration.isoformat(),
            }

    def cleanup_expired_channels(
        self, retention: Optional[timedelta] = None, now: Optional[datetime] = None
    ) -> int:
        """Purge channels (and their tokens) that expired longer ago than ``retention``.

        Returns:
            Number of channels deleted
        """
        if retention is None:
            retention = timedelta(days=self.settings.channel_config.token_retention_days)
        cutoff = (now or utcnow()) - retention
        with self.db.get_session() as session:
            deleted = self.db.delete_channels_expired_before(session, cutoff)
        self.logger.info(f"Purged {deleted} watch channels expired before {cutoff.isoformat()}")
        return deleted
