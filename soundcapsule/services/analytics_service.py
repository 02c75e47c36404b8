"""
Analytics Service

Registry of per-user listening trackers. The playback source talks to this
module; it owns tracker lifetime (initialize on login, flush on logout and
on shutdown).
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError

from soundcapsule.api.events.analytics_events import AnalyticsEventHub
from soundcapsule.app_settings import AnalyticsSettings, load_analytics_settings
from soundcapsule.db.analytics_store import AnalyticsStore, get_analytics_store
from soundcapsule.db.models import ListeningSession, MonthlyAnalytics, Song
from soundcapsule.services.clock import Clock
from soundcapsule.services.data_retention import DataRetentionService, get_retention_service
from soundcapsule.services.listening_tracker import ListeningTracker
from soundcapsule.services.monthly_aggregator import MonthlyAggregator
from soundcapsule.services.streak_engine import StreakEngine

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Entry point for playback lifecycle calls, keyed by user."""

    def __init__(
        self,
        store: AnalyticsStore | None = None,
        settings: AnalyticsSettings | None = None,
        clock: Clock | None = None,
        event_hub: AnalyticsEventHub | None = None,
        retention: DataRetentionService | None = None,
    ) -> None:
        self.settings = settings or load_analytics_settings()
        self.store = store or get_analytics_store()
        self.clock = clock or Clock(self.settings.timezone)
        self.event_hub = event_hub
        self.retention = retention or DataRetentionService(
            store=self.store,
            clock=self.clock,
            streak_days=self.settings.streak_retention_days,
            cleanup_interval_hours=self.settings.cleanup_interval_hours,
            event_hub=event_hub,
        )
        self.streak_engine = StreakEngine(self.store, self.clock, event_hub)
        self.aggregator = MonthlyAggregator(self.store, self.clock, event_hub)

        self._trackers: dict[int, ListeningTracker] = {}
        self._lock = threading.Lock()

    # ==================== LIFECYCLE ====================

    def initialize_for_user(self, user_id: int) -> ListeningTracker:
        """
        Create (or return) the tracker for a user.

        The first initialization also prunes that user's stale streaks on the
        tracker's queue, ahead of any playback writes.
        """
        with self._lock:
            tracker = self._trackers.get(user_id)
            if tracker is not None and not tracker.stopped:
                return tracker

            tracker = ListeningTracker(
                user_id,
                self.store,
                clock=self.clock,
                settings=self.settings,
                streak_engine=self.streak_engine,
                aggregator=self.aggregator,
                event_hub=self.event_hub,
            )
            self._trackers[user_id] = tracker

        tracker.schedule(self.retention.cleanup_old_streaks, user_id)
        logger.info(f"Analytics initialized for user: {user_id}")
        return tracker

    def is_initialized(self, user_id: int) -> bool:
        tracker = self.get_tracker(user_id)
        return tracker is not None

    def get_tracker(self, user_id: int) -> ListeningTracker | None:
        with self._lock:
            tracker = self._trackers.get(user_id)
        if tracker is None or tracker.stopped:
            return None
        return tracker

    def _tracker_or_warn(self, user_id: int, action: str) -> ListeningTracker | None:
        tracker = self.get_tracker(user_id)
        if tracker is None:
            logger.warning(f"Cannot {action}: analytics not initialized for user {user_id}")
        return tracker

    def handle_user_logout(self, user_id: int) -> ListeningSession | None:
        """Flush the user's open session and drop their tracker."""
        with self._lock:
            tracker = self._trackers.pop(user_id, None)
        if tracker is None:
            return None
        finished = tracker.cleanup()
        logger.info(f"Analytics cleaned up for user {user_id}")
        return finished

    def shutdown(self) -> None:
        """Flush every open session; used on process exit."""
        with self._lock:
            trackers = list(self._trackers.items())
            self._trackers.clear()
        for user_id, tracker in trackers:
            try:
                tracker.cleanup()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error stopping tracker for user {user_id}: {exc}")
        logger.info(f"Analytics service stopped ({len(trackers)} trackers flushed)")

    # ==================== TRACKING ====================

    def start_tracking(self, user_id: int, song: Song) -> Future | None:
        tracker = self._tracker_or_warn(user_id, "start tracking")
        if tracker is None:
            return None
        return tracker.start_listening_session(song)

    def update_tracking_progress(
        self, user_id: int, position_ms: int, is_playing: bool
    ) -> Future | None:
        tracker = self._tracker_or_warn(user_id, "update progress")
        if tracker is None:
            return None
        return tracker.update_listening_progress(position_ms, is_playing)

    def pause_tracking(self, user_id: int) -> Future | None:
        tracker = self._tracker_or_warn(user_id, "pause tracking")
        if tracker is None:
            return None
        return tracker.pause_listening_session()

    def resume_tracking(self, user_id: int) -> Future | None:
        tracker = self._tracker_or_warn(user_id, "resume tracking")
        if tracker is None:
            return None
        return tracker.resume_listening_session()

    def end_tracking(self, user_id: int) -> ListeningSession | None:
        tracker = self._tracker_or_warn(user_id, "end tracking")
        if tracker is None:
            return None
        return tracker.end_listening_session()

    def get_current_month_listening_time(self, user_id: int) -> int:
        tracker = self.get_tracker(user_id)
        return tracker.current_month_listening_time if tracker is not None else 0

    # ==================== MAINTENANCE ====================

    def force_update_analytics(
        self, user_id: int, month: str | None = None
    ) -> MonthlyAnalytics | None:
        """Recompute a month summary, ordered after the user's pending writes."""
        tracker = self.get_tracker(user_id)
        if tracker is None:
            return self.aggregator.force_update(user_id, month)

        future = tracker.schedule(self.aggregator.force_update, user_id, month)
        if future is None:
            return None
        try:
            return future.result(timeout=self.settings.flush_timeout_seconds)
        except FutureTimeoutError:
            logger.error(f"Timed out refreshing analytics for user {user_id}")
            return None

    def cleanup_old_streaks(self, user_id: int | None = None) -> int:
        """Prune stale streaks; per-user runs are queued behind that user's writes."""
        tracker = self.get_tracker(user_id) if user_id is not None else None
        if tracker is None:
            return self.retention.cleanup_old_streaks(user_id)

        future = tracker.schedule(self.retention.cleanup_old_streaks, user_id)
        if future is None:
            return 0
        try:
            return future.result(timeout=self.settings.flush_timeout_seconds)
        except FutureTimeoutError:
            logger.error(f"Timed out cleaning up streaks for user {user_id}")
            return 0


# Singleton instance
_service: AnalyticsService | None = None
_service_lock = threading.Lock()


def get_analytics_service() -> AnalyticsService:
    """Get the singleton AnalyticsService instance."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                settings = load_analytics_settings()
                _service = AnalyticsService(
                    settings=settings,
                    retention=get_retention_service(),
                )
    return _service


def configure_analytics_service(service: AnalyticsService) -> AnalyticsService:
    """Replace the singleton service."""
    global _service
    with _service_lock:
        _service = service
    return service
