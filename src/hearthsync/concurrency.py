"""Concurrency primitives shared by the sync components."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Hashable, Optional, Set, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class KeyedGuard:
    """Per-key mutual exclusion where a second caller is turned away instead of queued.

    All holders live on one event loop, so membership checks need no lock.
    """

    def __init__(self, name: str = 'guard'):
        self.name = name
        self._held: Set[Hashable] = set()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[bool]:
        """Try to take ``key``.

        Yields:
            True if acquired, False if another holder has it
        """
        if key in self._held:
            logger.debug(f"{self.name}: {key} already held, coalescing")
            yield False
            return
        self._held.add(key)
        try:
            yield True
        finally:
            self._held.discard(key)

    def is_held(self, key: Hashable) -> bool:
        return key in self._held


class TaskDispatcher:
    """Runs fire-and-forget coroutines while keeping references until they finish."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logger.getChild('dispatcher')

    def dispatch(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for running tasks; cancel whatever is left after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            self.logger.warning(f"Cancelled {len(still_running)} background tasks on shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)


class RateLimitResult(BaseModel):
    """Decision of a rate limiter check."""

    allowed: bool
    remaining: int
    reset_at: float  # Clock value at which the current window ends

    def retry_after(self, now: float) -> int:
        return max(1, int(self.reset_at - now + 0.999))


class FixedWindowRateLimiter:
    """Fixed-window request counter keyed by caller.

    Args:
        limit: Requests allowed per window
        window_seconds: Window length
        clock: Monotonic time source
    """

    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[Hashable, Tuple[int, float]] = {}

    def check(self, key: Hashable) -> RateLimitResult:
        now = self.clock()
        self._evict_expired(now)

        count, reset_at = self._windows.get(key, (0, now + self.window_seconds))
        if count >= self.limit:
            return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

        count += 1
        self._windows[key] = (count, reset_at)
        return RateLimitResult(allowed=True, remaining=self.limit - count, reset_at=reset_at)

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at <= now]
        for key in expired:
            del self._windows[key]
