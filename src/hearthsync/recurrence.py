"""Recurrence rules and the horizon extender for locally generated occurrences."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .config import Settings
from .database import DatabaseManager, RecurringPatternDB
from .models import EndType, ExtensionResult, Frequency, PatternResult, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class RecurrenceRule(BaseModel):
    """A recurrence anchored at ``start``."""

    start: datetime
    frequency: Frequency
    interval: int = Field(1, ge=1)
    end_type: EndType = Field(EndType.NEVER)
    end_count: Optional[int] = Field(None, ge=1)
    end_date: Optional[datetime] = Field(None)

    @model_validator(mode='after')
    def check_end(self):
        if self.end_type == EndType.COUNT and self.end_count is None:
            raise ValueError("end_count is required when end_type is 'count'")
        if self.end_type == EndType.DATE and self.end_date is None:
            raise ValueError("end_date is required when end_type is 'date'")
        self.start = ensure_utc(self.start)
        self.end_date = ensure_utc(self.end_date)
        return self

    @classmethod
    def from_pattern(cls, pattern: RecurringPatternDB) -> "RecurrenceRule":
        return cls(
            start=pattern.starts_at,
            frequency=Frequency(pattern.frequency),
            interval=pattern.interval,
            end_type=EndType(pattern.end_type),
            end_count=pattern.end_count,
            end_date=pattern.end_date,
        )

    def step(self, index: int) -> relativedelta:
        """Offset of occurrence ``index`` from the anchor.

        Offsets are always taken from the anchor so month and year steps
        clamp to the last valid day without drifting (Jan 31 -> Feb 28 -> Mar 31).
        """
        n = index * self.interval
        if self.frequency == Frequency.DAILY:
            return relativedelta(days=n)
        if self.frequency == Frequency.WEEKLY:
            return relativedelta(weeks=n)
        if self.frequency == Frequency.MONTHLY:
            return relativedelta(months=n)
        return relativedelta(years=n)

    def occurrence(self, index: int) -> datetime:
        return self.start + self.step(index)

    def _first_index_after(self, after: datetime) -> int:
        """Lower bound for the first index whose occurrence falls after ``after``."""
        if after < self.start:
            return 0
        elapsed_days = (after - self.start).days
        approx_days = {
            Frequency.DAILY: 1,
            Frequency.WEEKLY: 7,
            Frequency.MONTHLY: 31,
            Frequency.YEARLY: 366,
        }[self.frequency] * self.interval
        return max(0, elapsed_days // approx_days - 1)

    def occurrences_between(self, after: datetime, until: datetime, limit: int) -> List[datetime]:
        """Occurrence starts in ``(after, until]`` honoring the end condition, at most ``limit``."""
        after = ensure_utc(after)
        until = ensure_utc(until)
        if self.end_type == EndType.DATE and self.end_date < until:
            until = self.end_date

        results: List[datetime] = []
        index = self._first_index_after(after)
        while len(results) < limit:
            if self.end_type == EndType.COUNT and index >= self.end_count:
                break
            start = self.occurrence(index)
            if start > until:
                break
            if start > after:
                results.append(start)
            index += 1
        return results


class PatternDefinition(BaseModel):
    """A new recurring pattern as submitted by a user.

    Accepts camelCase keys (``startsAt``, ``endCount``) as well as field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = Field(None)
    location: Optional[str] = Field(None, max_length=500)
    all_day: bool = Field(False, alias='allDay')
    starts_at: datetime = Field(..., alias='startsAt')
    duration_minutes: int = Field(60, ge=1, le=7 * 24 * 60, alias='durationMinutes')
    frequency: Frequency
    interval: int = Field(1, ge=1)
    end_type: EndType = Field(EndType.NEVER, alias='endType')
    end_count: Optional[int] = Field(None, ge=1, alias='endCount')
    end_date: Optional[datetime] = Field(None, alias='endDate')

    @model_validator(mode='after')
    def check_rule(self):
        rule = self.rule()
        if rule.end_type == EndType.DATE and rule.end_date < rule.start:
            raise ValueError("end_date must not be before starts_at")
        self.starts_at = rule.start
        self.end_date = rule.end_date
        return self

    def rule(self) -> RecurrenceRule:
        return RecurrenceRule(
            start=self.starts_at,
            frequency=self.frequency,
            interval=self.interval,
            end_type=self.end_type,
            end_count=self.end_count,
            end_date=self.end_date,
        )


class RecurrenceHorizonExtender:
    """Keeps materialized occurrences of recurring patterns a bounded window ahead of now."""

    def __init__(self, settings: Settings, db: DatabaseManager):
        self.settings = settings
        self.db = db
        self.logger = logger.getChild('extender')

    async def extend_recurring_events(self, now: Optional[datetime] = None) -> ExtensionResult:
        """Generate occurrences for patterns whose horizon is about to run out.

        Each pattern commits independently; a failing pattern is rolled back
        and counted without stopping the others.

        Args:
            now: Reference time (defaults to the current time)

        Returns:
            Extension counts
        """
        config = self.settings.recurrence_config
        now = ensure_utc(now) if now else utcnow()
        threshold = now + timedelta(days=config.extension_threshold_days)
        new_horizon = now + timedelta(weeks=config.extension_window_weeks)

        with self.db.get_session() as session:
            pattern_ids = [p.id for p in self.db.get_patterns_due_for_extension(session, threshold)]

        result = ExtensionResult()
        for pattern_id in pattern_ids:
            try:
                created = self._extend_pattern(pattern_id, new_horizon, config.max_occurrences_per_batch)
            except Exception as e:
                self.logger.error(f"Failed to extend recurring pattern {pattern_id}: {e}")
                result.patterns_failed += 1
            else:
                if created is not None:
                    result.patterns_extended += 1
                    result.events_created += created
            # Yield so a wall-clock ceiling around this run can take effect
            await asyncio.sleep(0)

        self.logger.info(
            f"Extended {result.patterns_extended} recurring patterns, "
            f"created {result.events_created} events, {result.patterns_failed} failed"
        )
        return result

    def create_pattern(
        self, family_id: str, definition: PatternDefinition, now: Optional[datetime] = None
    ) -> PatternResult:
        """Store a pattern and materialize its occurrences through the extension window.

        Args:
            family_id: Owning family
            definition: Validated pattern definition
            now: Reference time (defaults to the current time)

        Returns:
            Pattern id, occurrences created (anchor included) and the new horizon
        """
        config = self.settings.recurrence_config
        now = ensure_utc(now) if now else utcnow()

        with self.db.get_session() as session:
            pattern = self.db.create_recurring_pattern(
                session,
                family_id=family_id,
                title=definition.title,
                description=definition.description,
                location=definition.location,
                all_day=definition.all_day,
                duration_minutes=definition.duration_minutes,
                starts_at=definition.starts_at,
                frequency=definition.frequency.value,
                interval=definition.interval,
                end_type=definition.end_type.value,
                end_count=definition.end_count,
                end_date=definition.end_date,
            )
            pattern_id = pattern.id

        new_horizon = now + timedelta(weeks=config.extension_window_weeks)
        created = self._extend_pattern(pattern_id, new_horizon, config.max_occurrences_per_batch) or 0

        with self.db.get_session() as session:
            pattern = session.get(RecurringPatternDB, pattern_id)
            result = PatternResult(
                pattern_id=pattern_id,
                events_created=created + 1,
                generated_until=ensure_utc(pattern.generated_until),
            )
        self.logger.info(
            f"Created recurring pattern {pattern_id} for family {family_id} "
            f"with {result.events_created} occurrences"
        )
        return result

    def _extend_pattern(self, pattern_id: str, new_horizon: datetime, limit: int) -> Optional[int]:
        """Materialize one pattern up to ``new_horizon`` in a single transaction.

        Returns:
            Number of occurrences created, or None if the horizon was already there
        """
        with self.db.get_session() as session:
            try:
                pattern = session.get(RecurringPatternDB, pattern_id)
                if pattern is None or ensure_utc(pattern.generated_until) >= new_horizon:
                    return None

                rule = RecurrenceRule.from_pattern(pattern)
                duration = timedelta(minutes=pattern.duration_minutes)
                starts = rule.occurrences_between(pattern.generated_until, new_horizon, limit)

                created = 0
                for start in starts:
                    if self.db.upsert_occurrence(session, pattern, start, start + duration):
                        created += 1

                # A capped batch only covers up to its last occurrence
                horizon = starts[-1] if len(starts) >= limit else new_horizon
                self.db.set_pattern_horizon(session, pattern.id, horizon)
                session.commit()
                return created
            except Exception:
                session.rollback()
                raise
