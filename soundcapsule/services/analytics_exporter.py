"""
Sound Capsule Export

Builds the monthly CSV report and hands it to an export sink. Writing the
file or opening a share sheet is the sink's business.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from soundcapsule.db.models import ArtistStats, MonthlyAnalytics, SongStats, SongStreak
from soundcapsule.services.analytics_repository import (
    AnalyticsRepository,
    format_listening_time,
)

logger = logging.getLogger(__name__)

CSV_MIME_TYPE = "text/csv"
REPORT_TOP_LIMIT = 10
REPORT_TITLE = "Purrytify Sound Capsule"


class ExportSink(Protocol):
    """Receives a finished report. Returns a location handle, or None on failure."""

    def save(self, content: str, filename: str, mime_type: str) -> str | None: ...


class ShareSink(Protocol):
    """Offers a saved report to the user (share sheet, e-mail, ...)."""

    def share(self, location: str, subject: str, text: str, mime_type: str) -> bool: ...


class DirectoryExportSink:
    """Writes reports into a local directory, creating it on first use."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def save(self, content: str, filename: str, mime_type: str) -> str | None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / filename
        path.write_text(content, encoding="utf-8")
        return str(path)


@dataclass(frozen=True)
class ExportResult:
    location: str
    filename: str
    mime_type: str = CSV_MIME_TYPE


def report_filename(month: str) -> str:
    return f"purrytify_analytics_{month.replace('-', '_')}.csv"


def report_title(month: str) -> str:
    return f"{REPORT_TITLE} - {month}"


def render_csv_report(
    month: str,
    analytics: MonthlyAnalytics,
    top_artists: list[ArtistStats],
    top_songs: list[SongStats],
    active_streaks: list[SongStreak],
) -> str:
    """Render the report text. Fields containing commas or quotes are quoted."""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")

    writer.writerow([report_title(month)])
    writer.writerow([])

    writer.writerow(["SUMMARY"])
    writer.writerow(["Total Listening Time", format_listening_time(analytics.total_listening_time)])
    writer.writerow(["Unique Songs", analytics.unique_songs_count])
    writer.writerow(["Unique Artists", analytics.unique_artists_count])
    writer.writerow(["Active Streaks", len(active_streaks)])
    writer.writerow([])

    writer.writerow(["TOP ARTISTS"])
    writer.writerow(["Rank", "Artist", "Listening Time", "Play Count"])
    for rank, artist in enumerate(top_artists[:REPORT_TOP_LIMIT], start=1):
        writer.writerow(
            [
                rank,
                artist.artist_name,
                format_listening_time(artist.total_duration),
                artist.play_count,
            ]
        )
    writer.writerow([])

    writer.writerow(["TOP SONGS"])
    writer.writerow(["Rank", "Song", "Artist", "Listening Time", "Play Count"])
    for rank, song in enumerate(top_songs[:REPORT_TOP_LIMIT], start=1):
        writer.writerow(
            [
                rank,
                song.song_title,
                song.artist_name,
                format_listening_time(song.total_duration),
                song.play_count,
            ]
        )
    writer.writerow([])

    writer.writerow(["DAY STREAKS (2+ DAYS)"])
    writer.writerow(["Song", "Artist", "Streak Days", "Last Played"])
    for streak in active_streaks:
        writer.writerow(
            [
                streak.song_title,
                streak.artist_name,
                streak.current_streak,
                streak.last_played_date,
            ]
        )

    return output.getvalue()


class AnalyticsExporter:
    """Generates Sound Capsule reports from the query layer."""

    def __init__(self, repository: AnalyticsRepository) -> None:
        self.repository = repository

    def build_csv_report(self, user_id: int, month: str) -> str | None:
        """Report text for (user, month), or None when the month has no summary."""
        analytics = self.repository.get_monthly_analytics(user_id, month)
        if analytics is None:
            logger.warning(f"No analytics data found for month {month}")
            return None

        return render_csv_report(
            month,
            analytics,
            self.repository.get_top_artists(user_id, month, REPORT_TOP_LIMIT),
            self.repository.get_top_songs(user_id, month, REPORT_TOP_LIMIT),
            self.repository.get_active_streaks(user_id),
        )

    def export_to_csv(self, user_id: int, month: str, sink: ExportSink) -> ExportResult | None:
        """
        Build the report and pass it to `sink`.

        Args:
            user_id: Whose analytics to export
            month: yyyy-MM
            sink: Collaborator that stores the content

        Returns:
            ExportResult with the sink's location, or None on any failure
        """
        logger.info(f"Exporting analytics to CSV for user {user_id}, month {month}")
        content = self.build_csv_report(user_id, month)
        if content is None:
            return None

        filename = report_filename(month)
        try:
            location = sink.save(content, filename, CSV_MIME_TYPE)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error exporting to CSV: {exc}")
            return None

        if not location:
            logger.error(f"Export sink did not store {filename}")
            return None

        logger.info(f"Analytics saved as {filename} at {location}")
        return ExportResult(location=location, filename=filename)

    def export_current_month(self, user_id: int, sink: ExportSink) -> ExportResult | None:
        return self.export_to_csv(user_id, self.repository.clock.current_month(), sink)

    def share_analytics(
        self, user_id: int, month: str, sink: ExportSink, share: ShareSink
    ) -> bool:
        """Export the month and hand the saved report to the share collaborator."""
        result = self.export_to_csv(user_id, month, sink)
        if result is None:
            logger.error("Failed to create shareable file")
            return False

        try:
            shared = share.share(
                result.location,
                subject=report_title(month),
                text=f"Here's my music analytics for {month} from Purrytify!",
                mime_type=result.mime_type,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error sharing analytics: {exc}")
            return False

        if shared:
            logger.info(f"Analytics share launched for {month}")
        return bool(shared)

    def share_current_month(self, user_id: int, sink: ExportSink, share: ShareSink) -> bool:
        return self.share_analytics(
            user_id, self.repository.clock.current_month(), sink, share
        )
