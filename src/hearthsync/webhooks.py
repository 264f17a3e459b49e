"""Ingestion of push notifications into safe sync triggers."""

import logging
from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .channel_manager import ChannelManager
from .concurrency import TaskDispatcher
from .models import ResourceState
from .services.base import HearthsyncError
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)

CHANNEL_ID_HEADER = 'X-Goog-Channel-ID'
CHANNEL_TOKEN_HEADER = 'X-Goog-Channel-Token'
RESOURCE_STATE_HEADER = 'X-Goog-Resource-State'
RESOURCE_ID_HEADER = 'X-Goog-Resource-ID'
MESSAGE_NUMBER_HEADER = 'X-Goog-Message-Number'

REQUIRED_HEADERS = (CHANNEL_ID_HEADER, CHANNEL_TOKEN_HEADER, RESOURCE_STATE_HEADER, MESSAGE_NUMBER_HEADER)


class MalformedNotificationError(HearthsyncError):
    """A notification is missing required headers or carries invalid values."""
    pass


class WebhookState(str, Enum):
    """Terminal state of one notification."""

    RECEIVED = "received"
    VALIDATED = "validated"
    TRIGGERED = "triggered"
    REJECTED = "rejected"


class WebhookNotification(BaseModel):
    """Headers of one push notification."""

    channel_id: str
    token: str
    resource_state: str
    message_number: int
    resource_id: Optional[str] = Field(None)

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "WebhookNotification":
        """Parse notification headers (case-insensitive lookup is the caller's mapping's job).

        Raises:
            MalformedNotificationError: If a required header is missing or invalid
        """
        missing = [name for name in REQUIRED_HEADERS if not headers.get(name)]
        if missing:
            raise MalformedNotificationError(f"Missing required headers: {', '.join(missing)}")

        raw_number = headers.get(MESSAGE_NUMBER_HEADER).strip()
        try:
            message_number = int(raw_number)
        except ValueError:
            raise MalformedNotificationError(f"Invalid message number: {raw_number!r}")

        return cls(
            channel_id=headers.get(CHANNEL_ID_HEADER),
            token=headers.get(CHANNEL_TOKEN_HEADER),
            resource_state=headers.get(RESOURCE_STATE_HEADER),
            message_number=message_number,
            resource_id=headers.get(RESOURCE_ID_HEADER),
        )


class WebhookOutcome(BaseModel):
    """How a notification was handled and what to answer."""

    state: WebhookState
    status_code: int = Field(200)
    calendar_link_id: Optional[str] = Field(None)
    reason: Optional[str] = Field(None)


class WebhookIngestor:
    """Validates notifications and dispatches background syncs.

    Forged or stale notifications are acknowledged with 200 so the sender
    learns nothing about which channels exist.
    """

    def __init__(self, channel_manager: ChannelManager, sync_engine: SyncEngine, dispatcher: TaskDispatcher):
        self.channel_manager = channel_manager
        self.sync_engine = sync_engine
        self.dispatcher = dispatcher
        self.logger = logger.getChild('ingestor')

    def ingest(self, headers: Mapping[str, str]) -> WebhookOutcome:
        """Run one notification through the state machine.

        Never waits for the sync it triggers.
        """
        try:
            notification = WebhookNotification.from_headers(headers)
        except MalformedNotificationError as e:
            self.logger.warning(f"Malformed webhook: {e}")
            return WebhookOutcome(state=WebhookState.REJECTED, status_code=400, reason=str(e))

        calendar_link_id = self.channel_manager.verify_channel_token(notification.channel_id, notification.token)
        if calendar_link_id is None:
            self.logger.warning(
                f"Rejected webhook for channel {notification.channel_id} "
                f"(resource {notification.resource_id}): unknown channel, bad token or expired"
            )
            return WebhookOutcome(state=WebhookState.REJECTED, reason="Invalid channel or token")

        if not self.channel_manager.record_message_number(notification.channel_id, notification.message_number):
            self.logger.info(
                f"Ignoring duplicate or out-of-order message {notification.message_number} "
                f"on channel {notification.channel_id}"
            )
            return WebhookOutcome(
                state=WebhookState.VALIDATED, calendar_link_id=calendar_link_id, reason="Duplicate message"
            )

        state = notification.resource_state
        if state == ResourceState.SYNC.value:
            self.logger.info(f"Channel {notification.channel_id} handshake received")
            return WebhookOutcome(state=WebhookState.VALIDATED, calendar_link_id=calendar_link_id, reason="Handshake")

        if state == ResourceState.EXISTS.value:
            self.dispatcher.dispatch(
                self.sync_engine.perform_incremental_sync(calendar_link_id),
                name=f"webhook-sync:{calendar_link_id}",
            )
            self.logger.info(f"Dispatched incremental sync for {calendar_link_id} (message {notification.message_number})")
            return WebhookOutcome(state=WebhookState.TRIGGERED, calendar_link_id=calendar_link_id)

        self.logger.info(f"Acknowledged '{state}' notification for {calendar_link_id} without sync")
        return WebhookOutcome(state=WebhookState.VALIDATED, calendar_link_id=calendar_link_id, reason=f"State {state}")
