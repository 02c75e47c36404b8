from __future__ import annotations

import unittest
from datetime import datetime, timezone

from soundcapsule.api.events.analytics_events import STREAKS_PRUNED, AnalyticsEventHub
from soundcapsule.db.memory_store import InMemoryAnalyticsStore
from soundcapsule.db.models import SongStreak
from soundcapsule.services.clock import ManualClock
from soundcapsule.services.data_retention import DataRetentionService


def _streak(song_id: int, last_played: str, user_id: int = 1) -> SongStreak:
    return SongStreak(
        id=f"streak_{user_id}_local_{song_id}",
        song_id=song_id,
        song_title=f"Song {song_id}",
        artist_name="Artist",
        current_streak=2,
        last_played_date=last_played,
        user_id=user_id,
    )


class FailingDeleteStore(InMemoryAnalyticsStore):
    def delete_streaks_played_before(self, cutoff_date: str, user_id: int | None = None) -> int:
        raise RuntimeError("connection refused")


class DataRetentionServiceTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryAnalyticsStore()
        # 2025-06-30 -> retention cutoff 2025-05-31
        self.clock = ManualClock.at(datetime(2025, 6, 30, 8, 0, tzinfo=timezone.utc))
        self.hub = AnalyticsEventHub()
        self.service = DataRetentionService(self.store, self.clock, event_hub=self.hub)

    def tearDown(self) -> None:
        self.service.stop()

    def test_cutoff_is_thirty_calendar_days(self) -> None:
        self.assertEqual(self.service.cutoff_date(), "2025-05-31")

    def test_boundary_days(self) -> None:
        self.store.upsert_song_streak(_streak(29, "2025-06-01"))  # 29 days ago
        self.store.upsert_song_streak(_streak(30, "2025-05-31"))  # 30 days ago
        self.store.upsert_song_streak(_streak(31, "2025-05-30"))  # 31 days ago

        deleted = self.service.cleanup_old_streaks()

        self.assertEqual(deleted, 1)
        self.assertIsNotNone(self.store.get_song_streak("streak_1_local_29"))
        self.assertIsNotNone(self.store.get_song_streak("streak_1_local_30"))
        self.assertIsNone(self.store.get_song_streak("streak_1_local_31"))

    def test_user_scoped_cleanup(self) -> None:
        self.store.upsert_song_streak(_streak(1, "2025-01-01", user_id=1))
        self.store.upsert_song_streak(_streak(1, "2025-01-01", user_id=2))

        self.assertEqual(self.service.cleanup_old_streaks(user_id=1), 1)
        self.assertIsNotNone(self.store.get_song_streak("streak_2_local_1"))

    def test_emits_event_when_something_was_pruned(self) -> None:
        subscriber = self.hub.subscribe()
        self.store.upsert_song_streak(_streak(1, "2025-01-01"))

        self.service.cleanup_old_streaks()

        event = subscriber.get_nowait()
        self.assertEqual(event.event_type, STREAKS_PRUNED)
        self.assertEqual(event.payload, {"deleted": 1, "cutoff_date": "2025-05-31"})

    def test_full_cleanup_records_status(self) -> None:
        self.store.upsert_song_streak(_streak(1, "2025-01-01"))

        results = self.service.run_full_cleanup()

        self.assertEqual(results, {"streaks_deleted": 1})
        status = self.service.get_status()
        self.assertEqual(status["last_cleanup_stats"], results)
        self.assertIsNotNone(status["last_cleanup"])
        self.assertEqual(status["retention_policy"], {"streak_days": 30})

    def test_store_failure_returns_zero(self) -> None:
        service = DataRetentionService(FailingDeleteStore(), self.clock, event_hub=self.hub)

        with self.assertLogs("soundcapsule.services.data_retention", level="ERROR"):
            self.assertEqual(service.cleanup_old_streaks(), 0)

    def test_background_thread_starts_and_stops(self) -> None:
        service = DataRetentionService(self.store, self.clock, cleanup_interval_hours=1.0)

        service.start()
        self.assertTrue(service.running)
        service.stop()

        self.assertFalse(service.running)


if __name__ == "__main__":
    unittest.main()
