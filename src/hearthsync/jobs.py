"""Scheduled jobs fanning out over calendars, channels and patterns."""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

from .channel_manager import ChannelManager
from .config import Settings
from .models import BatchSummary, ChannelResult, ExtensionResult, utcnow
from .recurrence import RecurrenceHorizonExtender
from .services.base import JobTimeoutError
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


async def run_bounded(
    items: Sequence[str],
    job: Callable[[str], Awaitable[Any]],
    timeout: float,
) -> List[Tuple[str, Any]]:
    """Run ``job`` for every item concurrently, each under its own timeout.

    Returns:
        (item, result or exception) pairs in input order
    """
    outcomes = await asyncio.gather(
        *(asyncio.wait_for(job(item), timeout=timeout) for item in items),
        return_exceptions=True,
    )
    return list(zip(items, outcomes))


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    return str(error) or type(error).__name__


class SyncJobs:
    """Entry points for the scheduler (cron endpoints and CLI)."""

    def __init__(
        self,
        settings: Settings,
        sync_engine: SyncEngine,
        channel_manager: ChannelManager,
        extender: RecurrenceHorizonExtender,
    ):
        self.settings = settings
        self.sync_engine = sync_engine
        self.channel_manager = channel_manager
        self.extender = extender
        self.logger = logger.getChild('jobs')

    async def sync_due_calendars(self) -> BatchSummary:
        """Incrementally sync every calendar that is due."""
        link_ids = [link.id for link in self.sync_engine.get_calendars_needing_sync()]
        self.logger.info(f"Syncing {len(link_ids)} due calendars")

        outcomes = await run_bounded(
            link_ids,
            self.sync_engine.perform_incremental_sync,
            self.settings.sync_config.job_timeout_seconds,
        )

        summary = BatchSummary(total=len(link_ids))
        for link_id, outcome in outcomes:
            if isinstance(outcome, BaseException):
                summary.failed += 1
                summary.errors.append(f"{link_id}: {_describe(outcome)}")
                self.logger.error(f"Scheduled sync of {link_id} failed: {_describe(outcome)}")
            elif outcome.coalesced:
                summary.skipped += 1
            elif outcome.error:
                summary.failed += 1
                summary.errors.append(f"{link_id}: {outcome.error}")
            elif not outcome.complete:
                summary.incomplete += 1
            else:
                summary.successful += 1
        return summary

    async def renew_expiring_channels(self) -> Dict[str, int]:
        """Recreate channels that expire within the renewal lookahead."""
        self.channel_manager.ensure_configured()
        channels = self.channel_manager.get_channels_needing_renewal()
        self.logger.info(f"Renewing {len(channels)} expiring channels")
        return await self._create_channels([c.calendar_link_id for c in channels], 'renewed')

    async def setup_missing_channels(self) -> Dict[str, int]:
        """Create channels for enabled calendars that have no active one."""
        self.channel_manager.ensure_configured()
        links = self.channel_manager.get_calendars_without_channel()
        self.logger.info(f"Creating channels for {len(links)} calendars")
        return await self._create_channels([link.id for link in links], 'created')

    async def _create_channels(self, link_ids: List[str], success_key: str) -> Dict[str, int]:
        outcomes = await run_bounded(
            link_ids,
            self.channel_manager.create_watch_channel,
            self.settings.channel_config.job_timeout_seconds,
        )
        succeeded = failed = 0
        for link_id, outcome in outcomes:
            if isinstance(outcome, ChannelResult) and outcome.success:
                succeeded += 1
            else:
                failed += 1
                reason = _describe(outcome) if isinstance(outcome, BaseException) else outcome.error
                self.logger.error(f"Channel setup for {link_id} failed: {reason or 'coalesced'}")
        return {success_key: succeeded, 'failed': failed}

    async def extend_recurring_events(self) -> ExtensionResult:
        """Extend recurring pattern horizons under a hard wall-clock ceiling.

        Raises:
            JobTimeoutError: If the run exceeds the configured ceiling
        """
        timeout = self.settings.recurrence_config.job_timeout_seconds
        try:
            return await asyncio.wait_for(self.extender.extend_recurring_events(), timeout=timeout)
        except asyncio.TimeoutError:
            raise JobTimeoutError(f"Recurring event extension exceeded {timeout}s")

    async def cleanup_expired_tokens(self) -> Dict[str, Any]:
        """Purge channels whose verification tokens expired beyond the retention period."""
        now = utcnow()
        retention = timedelta(days=self.settings.channel_config.token_retention_days)
        deleted = self.channel_manager.cleanup_expired_channels(retention, now=now)
        return {'deletedCount': deleted, 'cutoffDate': (now - retention).isoformat()}

    async def run(self, name: str) -> Any:
        """Run a job by its endpoint name."""
        jobs: Dict[str, Callable[[], Awaitable[Any]]] = {
            'sync-calendars': self.sync_due_calendars,
            'renew-channels': self.renew_expiring_channels,
            'setup-channels': self.setup_missing_channels,
            'extend-recurring-events': self.extend_recurring_events,
            'cleanup-tokens': self.cleanup_expired_tokens,
        }
        if name not in jobs:
            raise KeyError(name)
        return await jobs[name]()


JOB_NAMES = ('sync-calendars', 'renew-channels', 'setup-channels', 'extend-recurring-events', 'cleanup-tokens')
