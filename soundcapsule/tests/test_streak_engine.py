from __future__ import annotations

import unittest
from datetime import datetime, timezone

from soundcapsule.api.events.analytics_events import STREAK_UPDATED, AnalyticsEventHub
from soundcapsule.db.memory_store import InMemoryAnalyticsStore
from soundcapsule.db.models import Song, SongStreak, streak_key
from soundcapsule.services.clock import ManualClock
from soundcapsule.services.streak_engine import (
    MALFORMED_DATE_GAP,
    StreakEngine,
    days_between,
    next_streak_value,
)

USER_ID = 1
LOCAL_SONG = Song(id=7, title="Kucing Garong", artist="Trio Macan", duration_ms=180000)
ONLINE_SONG = Song(
    id=8, title="Meow", artist="Cat Band", duration_ms=200000, is_online=True, online_id=99
)


class FailingStreakStore(InMemoryAnalyticsStore):
    def upsert_song_streak(self, streak: SongStreak) -> None:
        raise RuntimeError("disk full")


class StreakMathTest(unittest.TestCase):
    def test_days_between_counts_calendar_days(self) -> None:
        self.assertEqual(days_between("2025-05-10", "2025-05-11"), 1)
        self.assertEqual(days_between("2025-05-10", "2025-05-10"), 0)
        self.assertEqual(days_between("2025-02-28", "2025-03-01"), 1)
        self.assertEqual(days_between("2025-05-10", "2025-05-08"), -2)

    def test_malformed_dates_force_a_reset(self) -> None:
        self.assertEqual(days_between("not-a-date", "2025-05-10"), MALFORMED_DATE_GAP)
        self.assertEqual(days_between(None, "2025-05-10"), MALFORMED_DATE_GAP)
        self.assertEqual(next_streak_value(9, MALFORMED_DATE_GAP), 1)

    def test_next_streak_value(self) -> None:
        self.assertEqual(next_streak_value(3, 1), 4)
        self.assertEqual(next_streak_value(3, 0), 3)
        self.assertEqual(next_streak_value(3, 2), 1)
        self.assertEqual(next_streak_value(3, -1), 1)


class StreakEngineTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryAnalyticsStore()
        self.clock = ManualClock.at(datetime(2025, 5, 10, 12, 0, tzinfo=timezone.utc))
        self.hub = AnalyticsEventHub()
        self.engine = StreakEngine(self.store, self.clock, self.hub)

    def _streak(self, song: Song = LOCAL_SONG) -> SongStreak | None:
        return self.store.get_song_streak(
            streak_key(USER_ID, song.is_online, song.id, song.online_id)
        )

    def test_first_play_creates_streak_of_one(self) -> None:
        streak = self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")

        self.assertIsNotNone(streak)
        self.assertEqual(streak.id, "streak_1_local_7")
        self.assertEqual(streak.current_streak, 1)
        self.assertEqual(streak.last_played_date, "2025-05-10")
        self.assertEqual(self._streak().current_streak, 1)

    def test_same_day_replay_keeps_streak(self) -> None:
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")

        self.assertEqual(self._streak().current_streak, 1)

        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-11")

        streak = self._streak()
        self.assertEqual(streak.current_streak, 2)
        self.assertEqual(streak.last_played_date, "2025-05-11")

    def test_consecutive_days_increment(self) -> None:
        for day in ("2025-05-10", "2025-05-11", "2025-05-12"):
            self.engine.record_play(USER_ID, LOCAL_SONG, day)

        streak = self._streak()
        self.assertEqual(streak.current_streak, 3)
        self.assertEqual(streak.last_played_date, "2025-05-12")

    def test_gap_resets_to_one(self) -> None:
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-11")
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-13")

        self.assertEqual(self._streak().current_streak, 1)

    def test_three_day_gap_resets_long_streak(self) -> None:
        for day in ("2025-05-10", "2025-05-11", "2025-05-12", "2025-05-13"):
            self.engine.record_play(USER_ID, LOCAL_SONG, day)
        self.assertEqual(self._streak().current_streak, 4)

        streak = self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-16")

        self.assertEqual(streak.current_streak, 1)
        self.assertEqual(self._streak().last_played_date, "2025-05-16")

    def test_stored_malformed_date_resets(self) -> None:
        self.store.upsert_song_streak(
            SongStreak(
                id="streak_1_local_7",
                song_id=7,
                song_title=LOCAL_SONG.title,
                artist_name=LOCAL_SONG.artist,
                current_streak=5,
                last_played_date="garbage",
                user_id=USER_ID,
            )
        )

        streak = self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")

        self.assertEqual(streak.current_streak, 1)

    def test_online_and_local_songs_use_distinct_keys(self) -> None:
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")
        self.engine.record_play(USER_ID, ONLINE_SONG, "2025-05-10")

        online = self._streak(ONLINE_SONG)
        self.assertEqual(online.id, "streak_1_online_99")
        self.assertTrue(online.is_online)
        self.assertEqual(len(self.store.get_song_streaks(USER_ID)), 2)

    def test_created_at_survives_updates(self) -> None:
        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")
        created_at = self._streak().created_at
        self.clock.advance_days(1)

        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-11")

        streak = self._streak()
        self.assertEqual(streak.created_at, created_at)
        self.assertGreater(streak.updated_at, created_at)

    def test_emits_streak_event(self) -> None:
        subscriber = self.hub.subscribe()

        self.engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10")

        event = subscriber.get_nowait()
        self.assertEqual(event.event_type, STREAK_UPDATED)
        self.assertEqual(event.user_id, USER_ID)
        self.assertEqual(event.payload["current_streak"], 1)

    def test_store_failure_is_swallowed(self) -> None:
        engine = StreakEngine(FailingStreakStore(), self.clock, self.hub)

        self.assertIsNone(engine.record_play(USER_ID, LOCAL_SONG, "2025-05-10"))


if __name__ == "__main__":
    unittest.main()
