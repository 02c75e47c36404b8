"""
Streak Engine

Maintains the per-song "played N consecutive days" counter.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from soundcapsule.api.events.analytics_events import (
    STREAK_UPDATED,
    AnalyticsEventHub,
    emit_analytics_event,
)
from soundcapsule.db.analytics_store import AnalyticsStore
from soundcapsule.db.models import Song, SongStreak, streak_key
from soundcapsule.services.clock import Clock, parse_date

logger = logging.getLogger(__name__)

# Day gap reported for dates that cannot be parsed; always forces a reset
MALFORMED_DATE_GAP = 2**31 - 1


def days_between(earlier: str, later: str) -> int:
    """Calendar-day difference ``later - earlier`` between two yyyy-MM-dd strings."""
    try:
        return (parse_date(later) - parse_date(earlier)).days
    except (TypeError, ValueError) as exc:
        logger.error(f"Could not compare dates {earlier!r} and {later!r}: {exc}")
        return MALFORMED_DATE_GAP


def next_streak_value(current_streak: int, days_difference: int) -> int:
    """Streak after a play `days_difference` days after the last one."""
    if days_difference == 1:
        return current_streak + 1
    if days_difference == 0:
        return current_streak
    return 1


class StreakEngine:
    """Applies one play (song, date) to the song's streak row."""

    def __init__(
        self,
        store: AnalyticsStore,
        clock: Clock | None = None,
        event_hub: AnalyticsEventHub | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.event_hub = event_hub

    def record_play(self, user_id: int, song: Song, current_date: str) -> SongStreak | None:
        """
        Update the streak for a song played on `current_date`.

        Args:
            user_id: Owner of the streak
            song: The song that started playing
            current_date: yyyy-MM-dd of the play

        Returns:
            The upserted streak, or None if the store failed
        """
        key = streak_key(user_id, song.is_online, song.id, song.online_id)
        now = self.clock.now_ms()

        try:
            existing = self.store.get_song_streak(key)

            if existing is None:
                streak = SongStreak(
                    id=key,
                    song_id=song.id,
                    song_title=song.title,
                    artist_name=song.artist,
                    current_streak=1,
                    last_played_date=current_date,
                    user_id=user_id,
                    is_online=song.is_online,
                    online_id=song.online_id,
                    created_at=now,
                    updated_at=now,
                )
                logger.debug(f"Created new streak for: {song.title}")
            else:
                difference = days_between(existing.last_played_date, current_date)
                streak = replace(
                    existing,
                    current_streak=next_streak_value(existing.current_streak, difference),
                    last_played_date=current_date,
                    updated_at=now,
                )
                logger.debug(
                    f"Updated streak for {song.title}: {streak.current_streak} days "
                    f"(gap {difference})"
                )

            self.store.upsert_song_streak(streak)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error updating song streak {key}: {exc}")
            return None

        emit_analytics_event(
            STREAK_UPDATED,
            user_id=user_id,
            payload={"streak_id": key, "current_streak": streak.current_streak},
            hub=self.event_hub,
        )
        return streak
