"""
Fetch Coordination

Owns the live merged EPG, guards refreshes so only one runs at a time, and
keeps the running refresh task so it can be cancelled as a unit.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from epg_aggregator.services.cache_service import CacheStore
from epg_aggregator.services.epg_fetch_service import refresh_from_settings
from epg_aggregator.services.fetch_types import (
    ChannelNameIndex,
    FetchResult,
    ProgressSink,
    Schedule,
)


logger = logging.getLogger(__name__)

RefreshFunc = Callable[[ProgressSink], Awaitable[FetchResult]]


class FetchCoordinator:
    """
    Coordinates EPG refreshes and holds the current result.

    Uses an internal asyncio.Lock to ensure only one refresh runs at a time.
    Readers always see a complete schedule: the previous one until a refresh
    with at least one successful source replaces it.
    """

    def __init__(self, refresh_func: RefreshFunc | None = None):
        """Initialize the fetch coordinator with a lock."""
        self._fetch_lock = asyncio.Lock()
        self._refresh = refresh_func or refresh_from_settings
        self._task: asyncio.Task | None = None
        self.schedule: Schedule = {}
        self.channel_index: ChannelNameIndex = {}
        self.progress: float = 0.0
        self.updated_at: datetime | None = None
        self.last_result: dict | None = None

    async def load_cached(self, cache: CacheStore) -> bool:
        """
        Populate the live EPG from the cache file, before any network activity.

        Returns:
            True if a usable cache was found
        """
        cached = await cache.load()
        if cached is None:
            return False
        self.schedule, self.channel_index = cached
        self.updated_at = datetime.now(timezone.utc)
        return True

    async def execute(self) -> dict:
        """
        Run one refresh with concurrency protection.

        Returns:
            Refresh summary, or a skip/error response

        Raises:
            asyncio.CancelledError: If the refresh was cancelled
        """
        if self._fetch_lock.locked():
            logger.warning("EPG fetch already in progress, skipping this request")
            return {
                "status": "skipped",
                "message": "EPG fetch operation already in progress"
            }

        async with self._fetch_lock:
            self.progress = 0.0
            started_at = datetime.now(timezone.utc)
            try:
                result = await self._refresh(self._on_progress)
            except asyncio.CancelledError:
                logger.warning("EPG refresh cancelled")
                self.last_result = {
                    "status": "cancelled",
                    "started_at": started_at.isoformat(),
                }
                raise
            except Exception as exc:  # Catch-all to keep the service serving stale data
                logger.error("Unexpected error during EPG refresh: %s", exc, exc_info=True)
                self.last_result = {"status": "error", "error": str(exc)}
                return self.last_result

            summary = result.to_dict()
            if summary["sources_succeeded"]:
                self.schedule = result.schedule
                self.channel_index = result.channel_index
                self.updated_at = datetime.now(timezone.utc)
                status = "success"
            elif not result.sources:
                logger.warning("No EPG sources configured; keeping the previous EPG")
                status = "success"
            else:
                logger.warning("No source succeeded; keeping the previous EPG")
                status = "failed"

            self.progress = 1.0
            self.last_result = {
                "status": status,
                "started_at": started_at.isoformat(),
                "completed_at": datetime.now(timezone.utc).isoformat(),
                **summary,
            }
            return self.last_result

    def start_refresh(self) -> bool:
        """
        Start a refresh in the background.

        Returns:
            False if one is already running
        """
        if self.is_fetching():
            logger.warning("EPG fetch already in progress, not starting another")
            return False
        self._task = asyncio.create_task(self.execute(), name="epg-refresh")
        self._task.add_done_callback(self._log_task_outcome)
        return True

    async def wait(self) -> dict | None:
        """
        Wait for the background refresh (if any) to finish.

        Returns:
            Summary of the refresh that just ended, or None if none was running
        """
        task = self._task
        if task is None:
            return None
        await asyncio.wait([task])
        return self.last_result

    async def cancel(self) -> bool:
        """
        Cancel the running refresh and wait for it to unwind.

        Returns:
            True if a refresh was running
        """
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        await asyncio.wait([task])
        return True

    def is_fetching(self) -> bool:
        """
        Check if a fetch operation is currently in progress.

        Returns:
            True if fetch is running, False otherwise
        """
        return self._fetch_lock.locked() or (self._task is not None and not self._task.done())

    def _on_progress(self, value: float) -> None:
        self.progress = value

    @staticmethod
    def _log_task_outcome(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background EPG refresh failed: %s", exc, exc_info=exc)


# Global singleton instance
_coordinator: FetchCoordinator | None = None


def get_fetch_coordinator() -> FetchCoordinator:
    """
    Get or create the global fetch coordinator singleton.

    Returns:
        The global FetchCoordinator instance
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = FetchCoordinator()
    return _coordinator


def reset_fetch_coordinator(coordinator: FetchCoordinator | None = None) -> None:
    """
    Replace or clear the fetch coordinator (mainly for testing).

    WARNING: Only use this in test environments!
    """
    global _coordinator
    _coordinator = coordinator
