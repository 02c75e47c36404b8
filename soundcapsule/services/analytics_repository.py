"""
Analytics Repository

Read-side queries over listening sessions, song streaks and monthly
summaries. Every read degrades to an empty/default value on failure.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any

from soundcapsule.app_settings import load_analytics_settings
from soundcapsule.db.analytics_store import AnalyticsStore, get_analytics_store
from soundcapsule.db.models import (
    ArtistStats,
    ListeningSession,
    MonthlyAnalytics,
    SongStats,
    SongStreak,
)
from soundcapsule.services.clock import Clock, month_display_name

logger = logging.getLogger(__name__)

ACTIVE_STREAK_MIN_DAYS = 2
DEFAULT_TOP_LIMIT = 5
TOP_STREAKS_LIMIT = 10


def format_listening_time(ms: int | None) -> str:
    """Format milliseconds as '{h}h {m}m', '{m}m' or '< 1m'."""
    total_minutes = (ms or 0) // (1000 * 60)
    hours = total_minutes // 60
    minutes = total_minutes % 60

    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return "< 1m"


@dataclass(frozen=True)
class MonthlyStatsSummary:
    total_listening_time: int
    top_artist: str | None
    top_song: str | None
    active_streaks_count: int
    total_songs: int
    total_artists: int

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total_listening_time_formatted"] = format_listening_time(
            self.total_listening_time
        )
        return data


EMPTY_SUMMARY = MonthlyStatsSummary(0, None, None, 0, 0, 0)


class AnalyticsRepository:
    """Query layer used by the UI/API and by the exporter."""

    def __init__(self, store: AnalyticsStore | None = None, clock: Clock | None = None) -> None:
        self.store = store or get_analytics_store()
        self.clock = clock or Clock()

    def _month(self, month: str | None) -> str:
        return month or self.clock.current_month()

    # ==================== MONTHLY ANALYTICS ====================

    def get_monthly_analytics(
        self, user_id: int, month: str | None = None
    ) -> MonthlyAnalytics | None:
        try:
            return self.store.get_monthly_analytics(user_id, self._month(month))
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting monthly analytics: {exc}")
            return None

    def get_current_month_analytics(self, user_id: int) -> MonthlyAnalytics | None:
        return self.get_monthly_analytics(user_id, self.clock.current_month())

    def get_all_monthly_analytics(self, user_id: int) -> list[MonthlyAnalytics]:
        try:
            return self.store.get_all_monthly_analytics(user_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting all monthly analytics: {exc}")
            return []

    def get_available_months(self, user_id: int) -> list[str]:
        """Distinct months with a summary row, oldest first."""
        return sorted({row.month for row in self.get_all_monthly_analytics(user_id)})

    def has_analytics_data(self, user_id: int) -> bool:
        analytics = self.get_current_month_analytics(user_id)
        return analytics is not None and analytics.total_listening_time > 0

    # ==================== RAW SESSION READS ====================

    def get_total_listening_time(self, user_id: int, month: str | None = None) -> int:
        try:
            return self.store.get_total_listening_time(user_id, self._month(month))
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting total listening time: {exc}")
            return 0

    def get_current_month_listening_time(self, user_id: int) -> int:
        return self.get_total_listening_time(user_id, self.clock.current_month())

    def get_unique_songs_count(self, user_id: int, month: str | None = None) -> int:
        try:
            return self.store.get_unique_songs_count(user_id, self._month(month))
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting unique songs count: {exc}")
            return 0

    def get_unique_artists_count(self, user_id: int, month: str | None = None) -> int:
        try:
            return self.store.get_unique_artists_count(user_id, self._month(month))
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting unique artists count: {exc}")
            return 0

    def get_listening_sessions(
        self, user_id: int, month: str | None = None
    ) -> list[ListeningSession]:
        try:
            return self.store.get_sessions_by_month(user_id, self._month(month))
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting listening sessions: {exc}")
            return []

    def get_listening_sessions_by_date(self, user_id: int, date: str) -> list[ListeningSession]:
        try:
            return self.store.get_sessions_by_date(user_id, date)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting listening sessions for {date}: {exc}")
            return []

    # ==================== TOP LISTS ====================

    def get_top_artists(
        self, user_id: int, month: str | None = None, limit: int = DEFAULT_TOP_LIMIT
    ) -> list[ArtistStats]:
        try:
            return self.store.get_top_artists(user_id, self._month(month), limit)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting top artists: {exc}")
            return []

    def get_current_month_top_artists(
        self, user_id: int, limit: int = DEFAULT_TOP_LIMIT
    ) -> list[ArtistStats]:
        return self.get_top_artists(user_id, self.clock.current_month(), limit)

    def get_top_songs(
        self, user_id: int, month: str | None = None, limit: int = DEFAULT_TOP_LIMIT
    ) -> list[SongStats]:
        try:
            return self.store.get_top_songs(user_id, self._month(month), limit)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting top songs: {exc}")
            return []

    def get_current_month_top_songs(
        self, user_id: int, limit: int = DEFAULT_TOP_LIMIT
    ) -> list[SongStats]:
        return self.get_top_songs(user_id, self.clock.current_month(), limit)

    # ==================== STREAKS ====================

    def get_song_streaks(self, user_id: int) -> list[SongStreak]:
        """Every streak row for the user, longest first."""
        try:
            return self.store.get_song_streaks(user_id, min_streak=1)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting song streaks: {exc}")
            return []

    def get_active_streaks(self, user_id: int) -> list[SongStreak]:
        """Streaks of at least two consecutive days."""
        try:
            return self.store.get_song_streaks(user_id, min_streak=ACTIVE_STREAK_MIN_DAYS)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting active streaks: {exc}")
            return []

    def get_top_streaks(self, user_id: int, limit: int = TOP_STREAKS_LIMIT) -> list[SongStreak]:
        try:
            return self.store.get_song_streaks(user_id, min_streak=1, limit=limit)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting top streaks: {exc}")
            return []

    # ==================== SUMMARY ====================

    def get_monthly_summary(self, user_id: int, month: str | None = None) -> MonthlyStatsSummary:
        month = self._month(month)
        logger.debug(f"Getting summary for user: {user_id}, month: {month}")
        try:
            analytics = self.get_monthly_analytics(user_id, month)
            top_artists = self.get_top_artists(user_id, month, 1)
            top_songs = self.get_top_songs(user_id, month, 1)
            active_streaks = self.get_active_streaks(user_id)

            return MonthlyStatsSummary(
                total_listening_time=analytics.total_listening_time if analytics else 0,
                top_artist=top_artists[0].artist_name if top_artists else None,
                top_song=top_songs[0].song_title if top_songs else None,
                active_streaks_count=len(active_streaks),
                total_songs=analytics.unique_songs_count if analytics else 0,
                total_artists=analytics.unique_artists_count if analytics else 0,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error getting monthly summary: {exc}")
            return EMPTY_SUMMARY

    def get_current_month_summary(self, user_id: int) -> MonthlyStatsSummary:
        return self.get_monthly_summary(user_id, self.clock.current_month())

    # ==================== FORMATTING ====================

    @staticmethod
    def format_listening_time(ms: int | None) -> str:
        return format_listening_time(ms)

    @staticmethod
    def get_month_display_name(month: str) -> str:
        return month_display_name(month)


# Singleton instance
_repository: AnalyticsRepository | None = None
_repository_lock = threading.Lock()


def get_analytics_repository() -> AnalyticsRepository:
    """Get the singleton AnalyticsRepository instance."""
    global _repository
    if _repository is None:
        with _repository_lock:
            if _repository is None:
                _repository = AnalyticsRepository(
                    clock=Clock(load_analytics_settings().timezone)
                )
    return _repository


def configure_analytics_repository(repository: AnalyticsRepository) -> AnalyticsRepository:
    """Replace the singleton repository."""
    global _repository
    with _repository_lock:
        _repository = repository
    return repository
