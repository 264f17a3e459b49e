"""Database models and operations for sync state management."""

from datetime import datetime, timedelta
from typing import List, Optional, Set
from uuid import uuid4

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, ForeignKey,
    Index, UniqueConstraint, and_, delete, event, or_, update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
from sqlalchemy.types import TypeDecorator

from .config import Settings
from .models import RemoteEvent, UpsertOutcome, WatchChannelInfo, ensure_utc, utcnow

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timestamp stored as naive UTC and always returned timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return ensure_utc(value)


class LinkedAccountDB(Base):
    """OAuth credentials of a remote calendar account."""

    __tablename__ = 'linked_accounts'

    id = Column(String(64), primary_key=True, default=_new_id)
    provider = Column(String(32), nullable=False, default='google')
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    access_token_expires_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)


class CalendarLinkDB(Base):
    """A remote calendar bound to a local family."""

    __tablename__ = 'calendar_links'

    id = Column(String(64), primary_key=True, default=_new_id)
    family_id = Column(String(64), nullable=False, index=True)
    account_id = Column(String(64), ForeignKey('linked_accounts.id', ondelete='CASCADE'), nullable=False)
    remote_calendar_id = Column(String(500), nullable=False)
    name = Column(String(255), nullable=False, default='')
    sync_enabled = Column(Boolean, nullable=False, default=True)

    # Incremental sync state, owned by the sync engine
    sync_cursor = Column(Text, nullable=True)        # Remote nextSyncToken
    pagination_token = Column(Text, nullable=True)   # Resume point of an interrupted pagination
    pagination_mode = Column(String(16), nullable=True)  # Listing the token belongs to: 'full' or 'incremental'
    last_synced_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    events = relationship("LocalEventDB", back_populates="calendar_link", cascade="all, delete-orphan",
                          passive_deletes=True)
    channel = relationship("WatchChannelDB", back_populates="calendar_link", uselist=False,
                           cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint('family_id', 'remote_calendar_id', name='uq_calendar_link_family_remote'),
        Index('idx_calendar_link_sync', 'sync_enabled', 'last_synced_at'),
    )


class RecurringPatternDB(Base):
    """A locally defined recurrence and how far it has been materialized."""

    __tablename__ = 'recurring_patterns'

    id = Column(String(64), primary_key=True, default=_new_id)
    family_id = Column(String(64), nullable=False, index=True)

    # Template copied onto each occurrence
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    all_day = Column(Boolean, nullable=False, default=False)
    duration_minutes = Column(Integer, nullable=False, default=60)

    # Rule
    starts_at = Column(UTCDateTime(), nullable=False)
    frequency = Column(String(10), nullable=False)   # 'daily', 'weekly', 'monthly', 'yearly'
    interval = Column(Integer, nullable=False, default=1)
    end_type = Column(String(10), nullable=False, default='never')  # 'never', 'count', 'date'
    end_count = Column(Integer, nullable=True)
    end_date = Column(UTCDateTime(), nullable=True)

    generated_until = Column(UTCDateTime(), nullable=False)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    occurrences = relationship("LocalEventDB", back_populates="recurring_pattern",
                               cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index('idx_recurring_pattern_horizon', 'generated_until'),
    )


class LocalEventDB(Base):
    """Local projection of a remote event, or a generated recurring occurrence."""

    __tablename__ = 'local_events'

    id = Column(String(64), primary_key=True, default=_new_id)
    family_id = Column(String(64), nullable=False, index=True)
    calendar_link_id = Column(String(64), ForeignKey('calendar_links.id', ondelete='CASCADE'), nullable=True)
    remote_event_id = Column(String(1024), nullable=True)

    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    all_day = Column(Boolean, nullable=False, default=False)
    event_type = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default='confirmed')
    remote_updated_at = Column(UTCDateTime(), nullable=True)

    recurring_pattern_id = Column(String(64), ForeignKey('recurring_patterns.id', ondelete='CASCADE'),
                                  nullable=True)
    occurrence_start = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    calendar_link = relationship("CalendarLinkDB", back_populates="events")
    recurring_pattern = relationship("RecurringPatternDB", back_populates="occurrences")

    __table_args__ = (
        UniqueConstraint('calendar_link_id', 'remote_event_id', name='uq_local_event_remote'),
        UniqueConstraint('recurring_pattern_id', 'occurrence_start', name='uq_local_event_occurrence'),
        Index('idx_local_event_start', 'family_id', 'start_time'),
    )


class WatchChannelDB(Base):
    """An active push notification subscription."""

    __tablename__ = 'watch_channels'

    id = Column(String(64), primary_key=True)  # Channel id sent to the remote
    calendar_link_id = Column(String(64), ForeignKey('calendar_links.id', ondelete='CASCADE'),
                              nullable=False, unique=True)
    resource_id = Column(String(255), nullable=False)
    token = Column(String(255), nullable=False)  # Verification secret, never exposed to users
    expiration = Column(UTCDateTime(), nullable=False)
    last_message_number = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    calendar_link = relationship("CalendarLinkDB", back_populates="channel")

    __table_args__ = (
        Index('idx_watch_channel_expiration', 'expiration'),
    )

    def to_info(self) -> WatchChannelInfo:
        return WatchChannelInfo(
            channel_id=self.id,
            calendar_link_id=self.calendar_link_id,
            resource_id=self.resource_id,
            expiration=self.expiration,
        )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Database manager for sync operations."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        is_sqlite = settings.database_url.startswith('sqlite')
        self.engine: Engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            # Background tasks and request handlers may run on different threads
            connect_args={'check_same_thread': False} if is_sqlite else {},
        )
        if is_sqlite:
            event.listen(self.engine, 'connect', _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    # Accounts

    def get_account(self, session: Session, account_id: str) -> Optional[LinkedAccountDB]:
        return session.get(LinkedAccountDB, account_id)

    def create_account(
        self,
        session: Session,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        account_id: Optional[str] = None,
        provider: str = 'google',
    ) -> LinkedAccountDB:
        account = LinkedAccountDB(
            id=account_id or _new_id(),
            provider=provider,
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=expires_at,
        )
        session.add(account)
        session.commit()
        return account

    def update_account_tokens(
        self,
        session: Session,
        account_id: str,
        access_token: str,
        expires_at: Optional[datetime],
        refresh_token: Optional[str] = None,
    ) -> None:
        values = {
            'access_token': access_token,
            'access_token_expires_at': expires_at,
            'updated_at': utcnow(),
        }
        if refresh_token:
            values['refresh_token'] = refresh_token
        session.execute(update(LinkedAccountDB).where(LinkedAccountDB.id == account_id).values(**values))
        session.commit()

    # Calendar links

    def create_calendar_link(
        self,
        session: Session,
        family_id: str,
        account_id: str,
        remote_calendar_id: str,
        name: str = '',
        sync_enabled: bool = True,
        link_id: Optional[str] = None,
    ) -> CalendarLinkDB:
        """Create a calendar link.

        Args:
            session: Database session
            family_id: Owning family
            account_id: Linked account holding the credentials
            remote_calendar_id: Calendar id on the remote service
            name: Display name
            sync_enabled: Whether scheduled syncs include this calendar
            link_id: Optional explicit id

        Returns:
            Created calendar link
        """
        link = CalendarLinkDB(
            id=link_id or _new_id(),
            family_id=family_id,
            account_id=account_id,
            remote_calendar_id=remote_calendar_id,
            name=name,
            sync_enabled=sync_enabled,
        )
        session.add(link)
        session.commit()
        return link

    def get_calendar_link(self, session: Session, link_id: str) -> Optional[CalendarLinkDB]:
        return session.get(CalendarLinkDB, link_id)

    def get_family_calendar_link(
        self, session: Session, family_id: str, link_id: str
    ) -> Optional[CalendarLinkDB]:
        return session.query(CalendarLinkDB).filter(
            CalendarLinkDB.id == link_id,
            CalendarLinkDB.family_id == family_id,
        ).first()

    def list_calendar_links(self, session: Session, enabled_only: bool = False) -> List[CalendarLinkDB]:
        query = session.query(CalendarLinkDB)
        if enabled_only:
            query = query.filter(CalendarLinkDB.sync_enabled.is_(True))
        return query.order_by(CalendarLinkDB.created_at).all()

    def delete_calendar_link(self, session: Session, link_id: str) -> bool:
        """Delete a link with its synced events and channel row."""
        link = session.get(CalendarLinkDB, link_id)
        if link is None:
            return False
        session.delete(link)
        session.commit()
        return True

    def set_sync_enabled(self, session: Session, link_id: str, enabled: bool) -> bool:
        """Toggle background sync of a link; False if it does not exist."""
        result = session.execute(
            update(CalendarLinkDB)
            .where(CalendarLinkDB.id == link_id)
            .values(sync_enabled=enabled, updated_at=utcnow())
        )
        session.commit()
        return result.rowcount > 0

    def get_calendars_needing_sync(self, session: Session, interval_minutes: int) -> List[CalendarLinkDB]:
        """Get enabled calendars that are due for a sync.

        Incomplete syncs (pagination token set) come first, then calendars
        never synced, then calendars synced longer ago than the interval.
        """
        threshold = utcnow() - timedelta(minutes=interval_minutes)
        due = session.query(CalendarLinkDB).filter(
            CalendarLinkDB.sync_enabled.is_(True),
            or_(
                CalendarLinkDB.pagination_token.isnot(None),
                CalendarLinkDB.last_synced_at.is_(None),
                CalendarLinkDB.last_synced_at < threshold,
            )
        ).all()
        return sorted(due, key=lambda link: (
            link.pagination_token is None,
            link.last_synced_at is not None,
            link.last_synced_at or link.created_at,
        ))

    def save_pagination_token(self, session: Session, link_id: str, page_token: str, mode: str) -> None:
        """Record the resume point of an interrupted pagination and the listing it belongs to (caller commits)."""
        session.execute(
            update(CalendarLinkDB)
            .where(CalendarLinkDB.id == link_id)
            .values(pagination_token=page_token, pagination_mode=mode, updated_at=utcnow())
        )

    def complete_sync(self, session: Session, link_id: str, cursor: str) -> None:
        """Store a fresh cursor and clear the pagination token (caller commits)."""
        now = utcnow()
        session.execute(
            update(CalendarLinkDB)
            .where(CalendarLinkDB.id == link_id)
            .values(
                sync_cursor=cursor, pagination_token=None, pagination_mode=None,
                last_synced_at=now, updated_at=now,
            )
        )

    def clear_sync_state(self, session: Session, link_id: str) -> None:
        """Forget cursor and pagination token so the next sync is a full one."""
        session.execute(
            update(CalendarLinkDB)
            .where(CalendarLinkDB.id == link_id)
            .values(sync_cursor=None, pagination_token=None, pagination_mode=None, updated_at=utcnow())
        )
        session.commit()

    # Local events

    def get_local_event(self, session: Session, link_id: str, remote_event_id: str) -> Optional[LocalEventDB]:
        return session.query(LocalEventDB).filter(
            LocalEventDB.calendar_link_id == link_id,
            LocalEventDB.remote_event_id == remote_event_id,
        ).first()

    def count_local_events(self, session: Session, link_id: Optional[str] = None) -> int:
        query = session.query(LocalEventDB)
        if link_id is not None:
            query = query.filter(LocalEventDB.calendar_link_id == link_id)
        return query.count()

    def upsert_remote_event(
        self,
        session: Session,
        link: CalendarLinkDB,
        remote: RemoteEvent,
    ) -> UpsertOutcome:
        """Write a remote event keyed by (calendar link, remote event id).

        The caller commits. Writing identical content reports UNCHANGED.
        """
        values = {
            'title': remote.summary or '(No title)',
            'description': remote.description,
            'location': remote.location,
            'start_time': ensure_utc(remote.start),
            'end_time': ensure_utc(remote.end),
            'all_day': remote.all_day,
            'event_type': remote.event_type,
            'status': remote.status.value,
            'remote_updated_at': ensure_utc(remote.updated),
        }
        existing = self.get_local_event(session, link.id, remote.id)
        if existing is None:
            session.add(LocalEventDB(
                family_id=link.family_id,
                calendar_link_id=link.id,
                remote_event_id=remote.id,
                **values
            ))
            # Flush so a repeated id later in the same page updates instead of inserting twice
            session.flush()
            return UpsertOutcome.CREATED

        if all(getattr(existing, key) == value for key, value in values.items()):
            return UpsertOutcome.UNCHANGED

        for key, value in values.items():
            setattr(existing, key, value)
        existing.updated_at = utcnow()
        return UpsertOutcome.UPDATED

    def delete_remote_event(self, session: Session, link_id: str, remote_event_id: str) -> bool:
        """Delete the local copy of a remote event; True when a row was removed (caller commits)."""
        result = session.execute(
            delete(LocalEventDB).where(
                LocalEventDB.calendar_link_id == link_id,
                LocalEventDB.remote_event_id == remote_event_id,
            )
        )
        return result.rowcount > 0

    # Watch channels

    def get_channel(self, session: Session, channel_id: str) -> Optional[WatchChannelDB]:
        return session.get(WatchChannelDB, channel_id)

    def get_channel_for_link(self, session: Session, link_id: str) -> Optional[WatchChannelDB]:
        return session.query(WatchChannelDB).filter(WatchChannelDB.calendar_link_id == link_id).first()

    def list_channels(self, session: Session) -> List[WatchChannelDB]:
        return session.query(WatchChannelDB).order_by(WatchChannelDB.expiration).all()

    def replace_channel(
        self,
        session: Session,
        link_id: str,
        channel_id: str,
        resource_id: str,
        token: str,
        expiration: datetime,
    ) -> Optional[WatchChannelInfo]:
        """Store a new channel for a link, removing the previous one.

        Returns:
            Snapshot of the replaced channel, if there was one
        """
        previous = self.get_channel_for_link(session, link_id)
        previous_info = previous.to_info() if previous else None
        if previous is not None:
            session.delete(previous)
            session.flush()
        session.add(WatchChannelDB(
            id=channel_id,
            calendar_link_id=link_id,
            resource_id=resource_id,
            token=token,
            expiration=expiration,
        ))
        session.commit()
        return previous_info

    def delete_channel(self, session: Session, channel_id: str) -> bool:
        result = session.execute(delete(WatchChannelDB).where(WatchChannelDB.id == channel_id))
        session.commit()
        return result.rowcount > 0

    def get_channels_expiring_before(self, session: Session, threshold: datetime) -> List[WatchChannelDB]:
        return session.query(WatchChannelDB).filter(
            WatchChannelDB.expiration < threshold
        ).order_by(WatchChannelDB.expiration).all()

    def get_links_without_active_channel(self, session: Session, now: datetime) -> List[CalendarLinkDB]:
        """Enabled links that have no channel, or only an expired one."""
        active: Set[str] = {
            row.calendar_link_id for row in session.query(WatchChannelDB.calendar_link_id).filter(
                WatchChannelDB.expiration > now
            )
        }
        return [
            link for link in self.list_calendar_links(session, enabled_only=True)
            if link.id not in active
        ]

    def advance_message_number(self, session: Session, channel_id: str, message_number: int) -> bool:
        """Record a notification's message number if it is newer than the last one seen.

        Returns:
            False for duplicate or out-of-order deliveries
        """
        result = session.execute(
            update(WatchChannelDB)
            .where(
                WatchChannelDB.id == channel_id,
                or_(
                    WatchChannelDB.last_message_number.is_(None),
                    WatchChannelDB.last_message_number < message_number,
                )
            )
            .values(last_message_number=message_number)
        )
        session.commit()
        return result.rowcount > 0

    def delete_channels_expired_before(self, session: Session, cutoff: datetime) -> int:
        result = session.execute(delete(WatchChannelDB).where(WatchChannelDB.expiration < cutoff))
        session.commit()
        return result.rowcount

    # Recurring patterns

    def create_recurring_pattern(self, session: Session, **fields) -> RecurringPatternDB:
        """Create a pattern together with its anchor occurrence.

        The horizon starts at the anchor, so later extensions generate
        everything after it.
        """
        fields.setdefault('id', _new_id())
        fields.setdefault('duration_minutes', 60)
        fields.setdefault('all_day', False)
        fields.setdefault('interval', 1)
        fields.setdefault('end_type', 'never')
        fields.setdefault('generated_until', fields.get('starts_at'))
        pattern = RecurringPatternDB(**fields)
        session.add(pattern)
        session.flush()

        anchor = ensure_utc(pattern.starts_at)
        if ensure_utc(pattern.generated_until) >= anchor:
            self.upsert_occurrence(session, pattern, anchor, anchor + timedelta(minutes=pattern.duration_minutes))
        session.commit()
        return pattern

    def get_patterns_due_for_extension(self, session: Session, threshold: datetime) -> List[RecurringPatternDB]:
        """Patterns whose horizon falls within the threshold and that may still produce occurrences."""
        return session.query(RecurringPatternDB).filter(
            RecurringPatternDB.generated_until <= threshold,
            or_(
                RecurringPatternDB.end_type != 'date',
                RecurringPatternDB.end_date.is_(None),
                RecurringPatternDB.end_date > RecurringPatternDB.generated_until,
            )
        ).order_by(RecurringPatternDB.generated_until).all()

    def upsert_occurrence(
        self,
        session: Session,
        pattern: RecurringPatternDB,
        start: datetime,
        end: datetime,
    ) -> bool:
        """Insert an occurrence keyed by (pattern, start); False if it already exists (caller commits)."""
        exists = session.query(LocalEventDB.id).filter(
            and_(
                LocalEventDB.recurring_pattern_id == pattern.id,
                LocalEventDB.occurrence_start == start,
            )
        ).first()
        if exists is not None:
            return False
        session.add(LocalEventDB(
            family_id=pattern.family_id,
            title=pattern.title,
            description=pattern.description,
            location=pattern.location,
            start_time=start,
            end_time=end,
            all_day=pattern.all_day,
            recurring_pattern_id=pattern.id,
            occurrence_start=start,
        ))
        session.flush()
        return True

    def set_pattern_horizon(self, session: Session, pattern_id: str, horizon: datetime) -> None:
        """Advance a pattern's generation horizon (caller commits)."""
        session.execute(
            update(RecurringPatternDB)
            .where(RecurringPatternDB.id == pattern_id)
            .values(generated_until=horizon, updated_at=utcnow())
        )

    def count_occurrences(self, session: Session, pattern_id: str) -> int:
        return session.query(LocalEventDB).filter(LocalEventDB.recurring_pattern_id == pattern_id).count()
