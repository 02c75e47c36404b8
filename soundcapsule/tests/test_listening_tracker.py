from __future__ import annotations

import unittest
from datetime import datetime, timezone

from soundcapsule.api.events.analytics_events import (
    SESSION_ENDED,
    SESSION_STARTED,
    AnalyticsEventHub,
)
from soundcapsule.app_settings import AnalyticsSettings
from soundcapsule.db.memory_store import InMemoryAnalyticsStore
from soundcapsule.db.models import ListeningSession, Song
from soundcapsule.services.clock import ManualClock
from soundcapsule.services.listening_tracker import ListeningTracker, TrackerPhase

USER_ID = 1
SONG_A = Song(id=1, title="Song A", artist="Artist A", duration_ms=180_000)
SONG_B = Song(id=2, title="Song B", artist="Artist B", duration_ms=200_000)
START = datetime(2025, 5, 10, 12, 0, tzinfo=timezone.utc)


class FailingInsertStore(InMemoryAnalyticsStore):
    def insert_session(self, session: ListeningSession) -> int:
        raise RuntimeError("database is locked")


class FailingProgressStore(InMemoryAnalyticsStore):
    def update_session_progress(
        self, session_id: int, end_time: int, duration_listened: int
    ) -> bool:
        raise RuntimeError("database is locked")


class ListeningTrackerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryAnalyticsStore()
        self.clock = ManualClock.at(START)
        self.hub = AnalyticsEventHub()
        self.tracker = self._tracker(self.store)

    def tearDown(self) -> None:
        if not self.tracker.stopped:
            self.tracker.cleanup(timeout=5)

    def _tracker(self, store: InMemoryAnalyticsStore) -> ListeningTracker:
        return ListeningTracker(
            USER_ID,
            store,
            clock=self.clock,
            settings=AnalyticsSettings(),
            event_hub=self.hub,
        )

    def _tick(self, ms: int, position_ms: int, tracker: ListeningTracker | None = None) -> None:
        tracker = tracker or self.tracker
        self.clock.advance(ms)
        tracker.update_listening_progress(position_ms, is_playing=True)

    def _drain(self, tracker: ListeningTracker | None = None) -> None:
        self.assertTrue((tracker or self.tracker).drain(timeout=5))

    def test_start_inserts_open_session(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self._drain()

        state = self.tracker.state
        self.assertIs(state.phase, TrackerPhase.ACTIVE)
        session = self.store.get_session(state.session_id)
        self.assertEqual(session.song_title, "Song A")
        self.assertEqual(session.start_time, self.clock.now_ms())
        self.assertIsNone(session.end_time)
        self.assertEqual(session.duration_listened, 0)
        self.assertEqual(session.date, "2025-05-10")
        self.assertEqual(session.month, "2025-05")
        self.assertEqual(self.store.get_song_streak("streak_1_local_1").current_streak, 1)

    def test_progress_accumulates_and_end_persists(self) -> None:
        start_ms = self.clock.now_ms()
        self.tracker.start_listening_session(SONG_A)
        for position in (1000, 2000, 3000):
            self._tick(1000, position)
        self.clock.advance(1000)

        session = self.tracker.end_listening_session(timeout=5)

        self.assertEqual(session.duration_listened, 4000)
        self.assertEqual(session.end_time, start_ms + 4000)
        self.assertIs(self.tracker.state.phase, TrackerPhase.IDLE)
        analytics = self.store.get_monthly_analytics(USER_ID, "2025-05")
        self.assertEqual(analytics.total_listening_time, 4000)
        self.assertEqual(self.tracker.current_month_listening_time, 4000)

    def test_progress_persists_every_ten_seconds(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        for second in range(1, 10):
            self._tick(1000, second * 1000 + 500)
        self._drain()
        session_id = self.tracker.current_session_id
        self.assertEqual(self.store.get_session(session_id).duration_listened, 0)

        self._tick(1000, 10_500)
        self._drain()

        self.assertEqual(self.store.get_session(session_id).duration_listened, 10_000)

    def test_progress_persists_on_thirty_second_boundary(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self._tick(1000, 30_200)
        self._drain()

        session = self.store.get_session(self.tracker.current_session_id)
        self.assertEqual(session.duration_listened, 1000)

    def test_large_gaps_are_not_counted(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self._tick(6000, 6000)
        self._tick(1000, 7000)

        session = self.tracker.end_listening_session(timeout=5)

        self.assertEqual(session.duration_listened, 1000)

    def test_not_playing_ticks_are_ignored(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self.clock.advance(1000)
        self.assertIsNone(self.tracker.update_listening_progress(1000, is_playing=False))
        self._tick(1000, 2000)

        session = self.tracker.end_listening_session(timeout=5)

        self.assertEqual(session.duration_listened, 2000)

    def test_paused_time_is_excluded(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self._tick(2000, 2000)
        self.clock.advance(1000)
        self.tracker.pause_listening_session()
        self._drain()
        self.assertIs(self.tracker.state.phase, TrackerPhase.PAUSED)
        self.assertEqual(
            self.store.get_session(self.tracker.current_session_id).duration_listened, 3000
        )

        self._tick(60_000, 3000)
        self.tracker.resume_listening_session()
        self._tick(2000, 5000)

        session = self.tracker.end_listening_session(timeout=5)

        self.assertEqual(session.duration_listened, 5000)

    def test_end_while_paused_adds_nothing(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self._tick(2000, 2000)
        self.tracker.pause_listening_session()
        self.clock.advance(3000)

        session = self.tracker.end_listening_session(timeout=5)

        self.assertEqual(session.duration_listened, 2000)

    def test_starting_new_song_ends_previous_session(self) -> None:
        start_ms = self.clock.now_ms()
        self.tracker.start_listening_session(SONG_A)
        self._tick(2000, 2000)
        self.clock.advance(1000)
        self.tracker.start_listening_session(SONG_B)
        self._drain()

        sessions = self.store.get_sessions_by_month(USER_ID, "2025-05")
        self.assertEqual(len(sessions), 2)
        finished = next(s for s in sessions if s.song_id == SONG_A.id)
        self.assertEqual(finished.duration_listened, 3000)
        self.assertEqual(finished.end_time, start_ms + 3000)
        self.assertEqual(self.tracker.state.song, SONG_B)
        self.assertEqual(
            self.store.get_monthly_analytics(USER_ID, "2025-05").total_listening_time, 3000
        )

    def test_session_month_is_fixed_at_start(self) -> None:
        clock = ManualClock.at(datetime(2025, 5, 31, 23, 59, 58, tzinfo=timezone.utc))
        tracker = ListeningTracker(
            USER_ID, self.store, clock=clock, settings=AnalyticsSettings(), event_hub=self.hub
        )
        try:
            tracker.start_listening_session(SONG_A)
            for position in (1000, 2000, 3000):
                clock.advance(1000)
                tracker.update_listening_progress(position, is_playing=True)
            clock.advance(1000)

            session = tracker.end_listening_session(timeout=5)
        finally:
            tracker.cleanup(timeout=5)

        self.assertEqual(session.month, "2025-05")
        self.assertEqual(session.date, "2025-05-31")
        self.assertEqual(self.store.get_total_listening_time(USER_ID, "2025-05"), 4000)
        self.assertEqual(self.store.get_total_listening_time(USER_ID, "2025-06"), 0)
        self.assertEqual(
            self.store.get_song_streak("streak_1_local_1").last_played_date, "2025-05-31"
        )

    def test_cleanup_flushes_open_session(self) -> None:
        self.tracker.start_listening_session(SONG_A)
        self._tick(2000, 2000)
        self.clock.advance(1000)

        session = self.tracker.cleanup(timeout=5)

        self.assertEqual(session.duration_listened, 3000)
        self.assertTrue(self.tracker.stopped)
        self.assertEqual(
            self.store.get_monthly_analytics(USER_ID, "2025-05").total_listening_time, 3000
        )
        self.assertIsNone(self.tracker.start_listening_session(SONG_B))

    def test_end_without_session_returns_none(self) -> None:
        self.assertIsNone(self.tracker.end_listening_session(timeout=5))
        self.assertIsNone(self.store.get_monthly_analytics(USER_ID, "2025-05"))

    def test_emits_lifecycle_events(self) -> None:
        subscriber = self.hub.subscribe()
        self.tracker.start_listening_session(SONG_A)
        self._tick(1000, 1000)
        self.tracker.end_listening_session(timeout=5)

        types = []
        while not subscriber.empty():
            types.append(subscriber.get_nowait().event_type)
        self.assertIn(SESSION_STARTED, types)
        self.assertIn(SESSION_ENDED, types)
        self.assertLess(types.index(SESSION_STARTED), types.index(SESSION_ENDED))

    def test_failed_insert_leaves_tracker_idle(self) -> None:
        tracker = self._tracker(FailingInsertStore())
        try:
            tracker.start_listening_session(SONG_A)
            self._tick(1000, 1000, tracker)
            self._drain(tracker)

            self.assertIs(tracker.state.phase, TrackerPhase.IDLE)
            self.assertIsNone(tracker.end_listening_session(timeout=5))
        finally:
            tracker.cleanup(timeout=5)

    def test_failed_progress_write_keeps_accumulating(self) -> None:
        tracker = self._tracker(FailingProgressStore())
        try:
            tracker.start_listening_session(SONG_A)
            self._tick(1000, 30_000, tracker)
            self._tick(1000, 31_000, tracker)
            self._drain(tracker)

            self.assertIs(tracker.state.phase, TrackerPhase.ACTIVE)
            self.assertEqual(tracker.state.accumulated_ms, 2000)
        finally:
            tracker.cleanup(timeout=5)


if __name__ == "__main__":
    unittest.main()
