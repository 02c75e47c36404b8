from __future__ import annotations

import csv
import io
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from soundcapsule.db.memory_store import InMemoryAnalyticsStore
from soundcapsule.db.models import ListeningSession, SongStreak
from soundcapsule.services.analytics_exporter import (
    CSV_MIME_TYPE,
    AnalyticsExporter,
    DirectoryExportSink,
    report_filename,
)
from soundcapsule.services.analytics_repository import AnalyticsRepository
from soundcapsule.services.clock import ManualClock
from soundcapsule.services.monthly_aggregator import MonthlyAggregator

USER_ID = 1
BASE_MS = 1_746_878_400_000  # 2025-05-10 12:00 UTC


def _session(song_id: int, title: str, artist: str, duration: int) -> ListeningSession:
    return ListeningSession(
        song_id=song_id,
        song_title=title,
        artist_name=artist,
        start_time=BASE_MS + song_id,
        end_time=BASE_MS + song_id + duration,
        duration_listened=duration,
        total_duration=300_000,
        date="2025-05-10",
        month="2025-05",
        user_id=USER_ID,
    )


class RecordingSink:
    def __init__(self, location: str | None = "memory://report") -> None:
        self.location = location
        self.saved: list[tuple[str, str, str]] = []

    def save(self, content: str, filename: str, mime_type: str) -> str | None:
        self.saved.append((content, filename, mime_type))
        return self.location


class RecordingShare:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    def share(self, location: str, subject: str, text: str, mime_type: str) -> bool:
        self.calls.append(
            {"location": location, "subject": subject, "text": text, "mime_type": mime_type}
        )
        return True


class AnalyticsExporterTest(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryAnalyticsStore()
        self.clock = ManualClock.at(datetime(2025, 5, 20, 9, 0, tzinfo=timezone.utc))
        self.repository = AnalyticsRepository(self.store, self.clock)
        self.exporter = AnalyticsExporter(self.repository)

    def _seed(self) -> None:
        self.store.insert_session(_session(1, "Purr, Again", "The \"Cats\"", 3_661_000))
        self.store.insert_session(_session(2, "Hiss", "Dogs", 120_000))
        self.store.upsert_song_streak(
            SongStreak(
                id="streak_1_local_1",
                song_id=1,
                song_title="Purr, Again",
                artist_name="The \"Cats\"",
                current_streak=3,
                last_played_date="2025-05-10",
                user_id=USER_ID,
            )
        )
        self.store.upsert_song_streak(
            SongStreak(
                id="streak_1_local_2",
                song_id=2,
                song_title="Hiss",
                artist_name="Dogs",
                current_streak=1,
                last_played_date="2025-05-10",
                user_id=USER_ID,
            )
        )
        MonthlyAggregator(self.store, self.clock).recompute(USER_ID, "2025-05")

    def test_filename(self) -> None:
        self.assertEqual(report_filename("2025-05"), "purrytify_analytics_2025_05.csv")

    def test_report_sections(self) -> None:
        self._seed()

        content = self.exporter.build_csv_report(USER_ID, "2025-05")
        rows = list(csv.reader(io.StringIO(content)))

        self.assertEqual(rows[0], ["Purrytify Sound Capsule - 2025-05"])
        self.assertEqual(rows[1], [])
        self.assertEqual(rows[2], ["SUMMARY"])
        self.assertEqual(rows[3], ["Total Listening Time", "1h 3m"])
        self.assertEqual(rows[4], ["Unique Songs", "2"])
        self.assertEqual(rows[5], ["Unique Artists", "2"])
        self.assertEqual(rows[6], ["Active Streaks", "1"])
        self.assertEqual(rows[8], ["TOP ARTISTS"])
        self.assertEqual(rows[9], ["Rank", "Artist", "Listening Time", "Play Count"])
        self.assertEqual(rows[10], ["1", "The \"Cats\"", "1h 1m", "1"])
        self.assertEqual(rows[11], ["2", "Dogs", "2m", "1"])
        self.assertEqual(rows[13], ["TOP SONGS"])
        self.assertEqual(rows[15], ["1", "Purr, Again", "The \"Cats\"", "1h 1m", "1"])
        self.assertEqual(rows[18], ["DAY STREAKS (2+ DAYS)"])
        self.assertEqual(rows[20], ["Purr, Again", "The \"Cats\"", "3", "2025-05-10"])
        self.assertEqual(len(rows), 21)

    def test_fields_with_commas_and_quotes_are_quoted(self) -> None:
        self._seed()

        content = self.exporter.build_csv_report(USER_ID, "2025-05")

        self.assertIn('"Purr, Again","The ""Cats"""', content)

    def test_no_summary_means_no_report(self) -> None:
        sink = RecordingSink()

        self.assertIsNone(self.exporter.build_csv_report(USER_ID, "2025-05"))
        self.assertIsNone(self.exporter.export_to_csv(USER_ID, "2025-05", sink))
        self.assertEqual(sink.saved, [])

    def test_export_hands_report_to_sink(self) -> None:
        self._seed()
        sink = RecordingSink()

        result = self.exporter.export_current_month(USER_ID, sink)

        self.assertEqual(result.location, "memory://report")
        self.assertEqual(result.filename, "purrytify_analytics_2025_05.csv")
        content, filename, mime_type = sink.saved[0]
        self.assertEqual(filename, result.filename)
        self.assertEqual(mime_type, CSV_MIME_TYPE)
        self.assertTrue(content.startswith("Purrytify Sound Capsule - 2025-05"))

    def test_sink_failure_returns_none(self) -> None:
        self._seed()

        self.assertIsNone(self.exporter.export_to_csv(USER_ID, "2025-05", RecordingSink(None)))

    def test_directory_sink_writes_file(self) -> None:
        self._seed()
        with tempfile.TemporaryDirectory() as tmp:
            sink = DirectoryExportSink(Path(tmp) / "exports")

            result = self.exporter.export_to_csv(USER_ID, "2025-05", sink)

            path = Path(result.location)
            self.assertEqual(path.name, "purrytify_analytics_2025_05.csv")
            self.assertEqual(
                path.read_text(encoding="utf-8"),
                self.exporter.build_csv_report(USER_ID, "2025-05"),
            )

    def test_share_uses_same_content_and_subject(self) -> None:
        self._seed()
        sink = RecordingSink()
        share = RecordingShare()

        self.assertTrue(self.exporter.share_current_month(USER_ID, sink, share))

        call = share.calls[0]
        self.assertEqual(call["location"], "memory://report")
        self.assertEqual(call["subject"], "Purrytify Sound Capsule - 2025-05")
        self.assertEqual(call["mime_type"], CSV_MIME_TYPE)
        self.assertEqual(sink.saved[0][0], self.exporter.build_csv_report(USER_ID, "2025-05"))

    def test_share_without_data_fails(self) -> None:
        share = RecordingShare()

        self.assertFalse(self.exporter.share_analytics(USER_ID, "2025-05", RecordingSink(), share))
        self.assertEqual(share.calls, [])


if __name__ == "__main__":
    unittest.main()
