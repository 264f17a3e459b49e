"""Data models for calendar synchronization."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
import pytz


class EventStatus(str, Enum):
    """Remote event status."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class ResourceState(str, Enum):
    """Resource state announced by a push notification."""

    SYNC = "sync"  # Handshake sent right after a channel is created
    EXISTS = "exists"  # Watched resource changed
    NOT_EXISTS = "not_exists"  # Watched resource was deleted


class Frequency(str, Enum):
    """Recurrence frequency."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EndType(str, Enum):
    """How a recurrence ends."""

    NEVER = "never"
    COUNT = "count"
    DATE = "date"


class UpsertOutcome(str, Enum):
    """Outcome of writing one remote event into the local store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


# Event types that describe availability rather than actual events
STATUS_EVENT_TYPES = frozenset({"workingLocation", "focusTime", "outOfOffice"})


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Return ``dt`` as an aware UTC datetime (naive values are assumed UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt.astimezone(pytz.UTC)


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class RemoteEvent(BaseModel):
    """One item of a remote events listing.

    Cancelled items returned by an incremental listing usually carry nothing
    but their id, so every field except ``id`` is optional.
    """

    id: str = Field(..., description="Remote event ID")
    status: EventStatus = Field(EventStatus.CONFIRMED)
    summary: str = Field("(No title)", description="Event title")
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None)
    start: Optional[datetime] = Field(None)
    end: Optional[datetime] = Field(None)
    all_day: bool = Field(False)
    event_type: Optional[str] = Field(None, description="Remote event type, e.g. 'default' or 'focusTime'")
    updated: Optional[datetime] = Field(None, description="Remote last-modified timestamp")
    recurring_event_id: Optional[str] = Field(None)
    attendees: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator('start', 'end', 'updated', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @model_validator(mode='after')
    def end_not_before_start(self):
        """Zero-length events are legal remotely, inverted ones are not."""
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError(
                f'End time ({self.end}) must not be before start time ({self.start}) '
                f'for event {self.id}'
            )
        return self

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    @property
    def is_status_event(self) -> bool:
        """Working location, focus time and out-of-office blocks are not events."""
        return self.event_type in STATUS_EVENT_TYPES


class EventPage(BaseModel):
    """One page of a remote events listing."""

    items: List[RemoteEvent] = Field(default_factory=list)
    next_page_token: Optional[str] = Field(None)
    next_sync_token: Optional[str] = Field(None)


class WatchResponse(BaseModel):
    """Remote acknowledgement of a watch request."""

    channel_id: str
    resource_id: str
    expiration: Optional[datetime] = Field(None)


class SyncResult(BaseModel):
    """Result of one sync run for a calendar link."""

    calendar_link_id: str
    events_created: int = Field(0)
    events_updated: int = Field(0)
    events_deleted: int = Field(0)
    cursor: Optional[str] = Field(None, description="Sync cursor stored after this run")
    complete: bool = Field(True, description="False when pagination stopped at the page limit")
    error: Optional[str] = Field(None)
    coalesced: bool = Field(False, description="Skipped because a sync for this link was already running")

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.coalesced

    @property
    def total_changes(self) -> int:
        return self.events_created + self.events_updated + self.events_deleted

    def merge_counts(self, other: "SyncResult") -> "SyncResult":
        """Return ``other`` with this result's counts added to it."""
        return other.model_copy(update={
            'events_created': self.events_created + other.events_created,
            'events_updated': self.events_updated + other.events_updated,
            'events_deleted': self.events_deleted + other.events_deleted,
        })


class ChannelResult(BaseModel):
    """Result of a watch channel creation or renewal."""

    calendar_link_id: str
    success: bool
    channel_id: Optional[str] = Field(None)
    expiration: Optional[datetime] = Field(None)
    error: Optional[str] = Field(None)
    coalesced: bool = Field(False)


class WatchChannelInfo(BaseModel):
    """Read-only snapshot of a stored watch channel (never carries the secret)."""

    channel_id: str
    calendar_link_id: str
    resource_id: str
    expiration: datetime

    @field_validator('expiration', mode='before')
    @classmethod
    def ensure_timezone_aware(cls, v):
        return ensure_utc(v) if isinstance(v, datetime) else v


class ExtensionResult(BaseModel):
    """Result of a recurrence horizon extension run."""

    patterns_extended: int = Field(0)
    events_created: int = Field(0)
    patterns_failed: int = Field(0)


class PatternResult(BaseModel):
    """Outcome of creating a recurring pattern."""

    pattern_id: str
    events_created: int = Field(0, description="Occurrences materialized, anchor included")
    generated_until: datetime


class BatchSummary(BaseModel):
    """Aggregated outcome of a fan-out over independent entities."""

    total: int = Field(0)
    successful: int = Field(0)
    incomplete: int = Field(0)
    failed: int = Field(0)
    skipped: int = Field(0)
    errors: List[str] = Field(default_factory=list)


class CalendarLinkUpdate(BaseModel):
    """Body of a calendar link update request."""

    sync_enabled: bool = Field(..., alias='syncEnabled')


class SyncConfiguration(BaseModel):
    """Sync engine configuration."""

    sync_interval_minutes: int = Field(15, ge=1, description="Calendars synced longer ago than this are due")
    max_pages_per_run: int = Field(2, ge=1, description="Pages processed per sync call before pausing")
    page_size: int = Field(250, ge=1, le=2500)
    sync_past_days: int = Field(90, ge=0)
    sync_future_days: int = Field(365, ge=0)
    job_timeout_seconds: int = Field(120, ge=1, description="Ceiling for one calendar's scheduled sync")


class ChannelConfiguration(BaseModel):
    """Push channel configuration."""

    channel_ttl_hours: int = Field(168, ge=1)
    renewal_lookahead_minutes: int = Field(60, ge=1)
    webhook_path: str = Field("/api/webhooks/google-calendar")
    token_retention_days: int = Field(7, ge=0, description="Expired channels are purged after this many days")
    job_timeout_seconds: int = Field(60, ge=1)


class RecurrenceConfiguration(BaseModel):
    """Recurrence horizon configuration."""

    extension_threshold_days: int = Field(14, ge=0)
    extension_window_weeks: int = Field(8, ge=1)
    max_occurrences_per_batch: int = Field(365, ge=1)
    job_timeout_seconds: int = Field(300, ge=1, description="Hard wall-clock ceiling for one extension run")

    @model_validator(mode='after')
    def threshold_inside_window(self):
        if self.extension_threshold_days >= self.extension_window_weeks * 7:
            raise ValueError("extension_threshold_days must be shorter than the extension window")
        return self
