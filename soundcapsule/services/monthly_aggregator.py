"""
Monthly Aggregator

Recomputes the per-user, per-month summary row from the session store.
"""

from __future__ import annotations

import logging

from soundcapsule.api.events.analytics_events import (
    MONTHLY_ANALYTICS_UPDATED,
    AnalyticsEventHub,
    emit_analytics_event,
)
from soundcapsule.db.analytics_store import AnalyticsStore
from soundcapsule.db.models import MonthlyAnalytics, analytics_key
from soundcapsule.services.clock import Clock

logger = logging.getLogger(__name__)


class MonthlyAggregator:
    """Pure recomputation of MonthlyAnalytics; safe to call any number of times."""

    def __init__(
        self,
        store: AnalyticsStore,
        clock: Clock | None = None,
        event_hub: AnalyticsEventHub | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.event_hub = event_hub

    def compute(self, user_id: int, month: str) -> MonthlyAnalytics:
        """Build the summary row for (user, month) without writing it."""
        return MonthlyAnalytics(
            id=analytics_key(user_id, month),
            month=month,
            user_id=user_id,
            total_listening_time=self.store.get_total_listening_time(user_id, month),
            total_songs_played=self.store.get_session_count(user_id, month),
            unique_songs_count=self.store.get_unique_songs_count(user_id, month),
            unique_artists_count=self.store.get_unique_artists_count(user_id, month),
            last_updated=self.clock.now_ms(),
        )

    def recompute(self, user_id: int, month: str) -> MonthlyAnalytics | None:
        """
        Recompute and upsert the summary for one (user, month).

        Args:
            user_id: Owner of the sessions
            month: yyyy-MM taken from the session, not from the wall clock

        Returns:
            The stored row, or None if the store failed
        """
        try:
            analytics = self.compute(user_id, month)
            self.store.upsert_monthly_analytics(analytics)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error updating monthly analytics for {user_id}/{month}: {exc}")
            return None

        logger.debug(
            f"Updated monthly analytics for {month}: "
            f"{analytics.total_listening_time}ms, {analytics.unique_songs_count} songs, "
            f"{analytics.unique_artists_count} artists"
        )
        emit_analytics_event(
            MONTHLY_ANALYTICS_UPDATED,
            user_id=user_id,
            payload={"month": month, "total_listening_time": analytics.total_listening_time},
            hub=self.event_hub,
        )
        return analytics

    def force_update(self, user_id: int, month: str | None = None) -> MonthlyAnalytics | None:
        """Manual refresh; skipped when the month has no listening time yet."""
        month = month or self.clock.current_month()
        try:
            total = self.store.get_total_listening_time(user_id, month)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error force updating analytics for {user_id}/{month}: {exc}")
            return None

        if total <= 0:
            try:
                session_count = len(self.store.get_sessions_by_month(user_id, month))
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error reading sessions for {user_id}/{month}: {exc}")
                session_count = 0
            logger.warning(
                f"No listening time found for {month}, not updating analytics "
                f"({session_count} raw sessions)"
            )
            return None

        return self.recompute(user_id, month)
