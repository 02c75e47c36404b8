"""
Streak Retention Service

Prunes song streaks that have not been played for the retention window.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any

from soundcapsule.api.events.analytics_events import (
    STREAKS_PRUNED,
    AnalyticsEventHub,
    emit_analytics_event,
)
from soundcapsule.app_settings import load_analytics_settings
from soundcapsule.db.analytics_store import AnalyticsStore, get_analytics_store
from soundcapsule.services.clock import Clock

logger = logging.getLogger(__name__)

DEFAULT_STREAK_RETENTION_DAYS = 30


class DataRetentionService:
    """
    Service for pruning stale streaks, on demand or on a timer.
    """

    def __init__(
        self,
        store: AnalyticsStore | None = None,
        clock: Clock | None = None,
        streak_days: int = DEFAULT_STREAK_RETENTION_DAYS,
        cleanup_interval_hours: float = 24.0,
        event_hub: AnalyticsEventHub | None = None,
    ):
        """
        Initialize the data retention service.

        Args:
            store: Analytics store to prune
            clock: Source of "now" and of date strings
            streak_days: Days without a play before a streak is deleted
            cleanup_interval_hours: Hours between automatic cleanup runs
            event_hub: Where to announce pruning
        """
        self.store = store or get_analytics_store()
        self.clock = clock or Clock()
        self.streak_days = streak_days
        self.cleanup_interval = cleanup_interval_hours * 3600  # Convert to seconds
        self.event_hub = event_hub

        self._running = False
        self._stop_event = threading.Event()
        self._cleanup_task: asyncio.Task | None = None
        self._cleanup_thread: threading.Thread | None = None
        self._last_cleanup: datetime | None = None
        self._cleanup_stats: dict[str, Any] = {}

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the background cleanup task."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        try:
            loop = asyncio.get_running_loop()
            self._cleanup_task = loop.create_task(self._periodic_cleanup())
        except RuntimeError:
            # No running event loop - start a background thread instead
            self._cleanup_thread = threading.Thread(
                target=self._sync_periodic_cleanup, daemon=True
            )
            self._cleanup_thread.start()

    def stop(self) -> None:
        """Stop the background cleanup task."""
        self._running = False
        self._stop_event.set()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=2.0)
            self._cleanup_thread = None

    def cutoff_date(self) -> str:
        """Oldest last-played date that is still retained."""
        return self.clock.date_days_ago(self.streak_days)

    def cleanup_old_streaks(self, user_id: int | None = None) -> int:
        """
        Delete streaks last played before the retention cutoff.

        Args:
            user_id: Limit to one user; None prunes every user

        Returns:
            Number of deleted streaks (0 if the store failed)
        """
        cutoff = self.cutoff_date()
        try:
            deleted = self.store.delete_streaks_played_before(cutoff, user_id=user_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error cleaning up old streaks: {exc}")
            return 0

        scope = f"user {user_id}" if user_id is not None else "all users"
        logger.info(f"Deleted {deleted} streaks not played since {cutoff} for {scope}")
        if deleted:
            emit_analytics_event(
                STREAKS_PRUNED,
                user_id=user_id,
                payload={"deleted": deleted, "cutoff_date": cutoff},
                hub=self.event_hub,
            )
        return deleted

    def run_full_cleanup(self) -> dict[str, int]:
        """
        Run all cleanup tasks.

        Returns:
            Dictionary with counts of deleted items
        """
        results = {"streaks_deleted": self.cleanup_old_streaks()}

        self._last_cleanup = datetime.now(timezone.utc)
        self._cleanup_stats = results

        logger.info(f"Cleanup complete: {results}")
        return results

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "retention_policy": {"streak_days": self.streak_days},
            "cleanup_interval_seconds": self.cleanup_interval,
            "last_cleanup": self._last_cleanup.isoformat() if self._last_cleanup else None,
            "last_cleanup_stats": self._cleanup_stats,
        }

    async def _periodic_cleanup(self) -> None:
        """Async periodic cleanup loop."""
        while self._running:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await asyncio.get_running_loop().run_in_executor(None, self.run_full_cleanup)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Periodic cleanup error: {e}")

    def _sync_periodic_cleanup(self) -> None:
        """Sync periodic cleanup loop for thread-based execution."""
        while self._running:
            if self._stop_event.wait(self.cleanup_interval):
                break
            try:
                self.run_full_cleanup()
            except Exception as e:
                logger.error(f"Periodic cleanup error: {e}")


# Singleton instance
_retention_service: DataRetentionService | None = None


def get_retention_service() -> DataRetentionService:
    """Get the singleton data retention service."""
    global _retention_service
    if _retention_service is None:
        settings = load_analytics_settings()
        _retention_service = DataRetentionService(
            clock=Clock(settings.timezone),
            streak_days=settings.streak_retention_days,
            cleanup_interval_hours=settings.cleanup_interval_hours,
        )
    return _retention_service


def configure_retention_service(
    service: DataRetentionService | None = None,
    streak_days: int | None = None,
    cleanup_interval_hours: float | None = None,
) -> DataRetentionService:
    """
    Install a retention service or adjust the singleton's policy.

    Args:
        service: Replacement instance
        streak_days: Days without a play before a streak is deleted
        cleanup_interval_hours: Hours between automatic cleanup runs

    Returns:
        Configured retention service
    """
    global _retention_service

    if service is not None:
        _retention_service = service
    service = get_retention_service()

    if streak_days is not None:
        service.streak_days = streak_days
    if cleanup_interval_hours is not None:
        service.cleanup_interval = cleanup_interval_hours * 3600

    return service
