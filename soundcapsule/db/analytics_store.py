"""
Analytics Store

Persistence contract for listening sessions, song streaks and monthly
summaries, plus the Postgres implementation.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

from soundcapsule import app_settings
from soundcapsule.db.connection import database_url, get_connection
from soundcapsule.db.models import (
    ArtistStats,
    ListeningSession,
    MonthlyAnalytics,
    SongStats,
    SongStreak,
)

logger = logging.getLogger(__name__)


class StoreUnavailableError(RuntimeError):
    """Raised when the configured store backend cannot be constructed."""


class AnalyticsStore(ABC):
    """Storage for the three analytics record types.

    Upserts are keyed by the deterministic ids built in ``db.models`` so
    concurrent writers converge on one row.
    """

    # ==================== LISTENING SESSIONS ====================

    @abstractmethod
    def insert_session(self, session: ListeningSession) -> int:
        """Persist a new session and return its assigned id."""

    @abstractmethod
    def update_session_progress(
        self, session_id: int, end_time: int, duration_listened: int
    ) -> bool:
        """Set end_time/duration_listened. Returns False if the row is missing."""

    @abstractmethod
    def get_session(self, session_id: int) -> ListeningSession | None: ...

    @abstractmethod
    def get_sessions_by_month(self, user_id: int, month: str) -> list[ListeningSession]:
        """Sessions for (user, month), newest first."""

    @abstractmethod
    def get_sessions_by_date(self, user_id: int, date: str) -> list[ListeningSession]:
        """Sessions for (user, date), newest first."""

    # ==================== AGGREGATE READS ====================

    @abstractmethod
    def get_total_listening_time(self, user_id: int, month: str) -> int: ...

    @abstractmethod
    def get_session_count(self, user_id: int, month: str) -> int: ...

    @abstractmethod
    def get_unique_songs_count(self, user_id: int, month: str) -> int: ...

    @abstractmethod
    def get_unique_artists_count(self, user_id: int, month: str) -> int: ...

    @abstractmethod
    def get_top_artists(self, user_id: int, month: str, limit: int) -> list[ArtistStats]:
        """Artists by summed duration desc, ties by artist name."""

    @abstractmethod
    def get_top_songs(self, user_id: int, month: str, limit: int) -> list[SongStats]:
        """Songs by summed duration desc, ties by song identity."""

    # ==================== MONTHLY ANALYTICS ====================

    @abstractmethod
    def upsert_monthly_analytics(self, analytics: MonthlyAnalytics) -> None: ...

    @abstractmethod
    def get_monthly_analytics(self, user_id: int, month: str) -> MonthlyAnalytics | None: ...

    @abstractmethod
    def get_all_monthly_analytics(self, user_id: int) -> list[MonthlyAnalytics]:
        """All summary rows for a user, newest month first."""

    # ==================== SONG STREAKS ====================

    @abstractmethod
    def upsert_song_streak(self, streak: SongStreak) -> None: ...

    @abstractmethod
    def get_song_streak(self, streak_id: str) -> SongStreak | None: ...

    @abstractmethod
    def get_song_streaks(
        self, user_id: int, min_streak: int = 1, limit: int | None = None
    ) -> list[SongStreak]:
        """Streaks with current_streak >= min_streak, longest first."""

    @abstractmethod
    def delete_streaks_played_before(self, cutoff_date: str, user_id: int | None = None) -> int:
        """Delete streaks whose last_played_date < cutoff_date. Returns rows deleted."""


# Distinct-song identity, mirrors db.models.song_identity
_SONG_IDENTITY_SQL = (
    "CASE WHEN is_online AND online_id IS NOT NULL "
    "THEN 'online_' || online_id::text ELSE 'local_' || song_id::text END"
)

_SESSION_COLUMNS = """
    id, song_id, song_title, artist_name, start_time, end_time,
    duration_listened, total_duration, date, month, user_id,
    is_online, online_id
"""

_STREAK_COLUMNS = """
    id, song_id, song_title, artist_name, current_streak, last_played_date,
    user_id, is_online, online_id, created_at, updated_at
"""

_MONTHLY_COLUMNS = """
    id, month, user_id, total_listening_time, total_songs_played,
    unique_songs_count, unique_artists_count, last_updated
"""


def _row_to_session(row: tuple[Any, ...]) -> ListeningSession:
    return ListeningSession(
        id=row[0],
        song_id=row[1],
        song_title=row[2],
        artist_name=row[3],
        start_time=row[4],
        end_time=row[5],
        duration_listened=row[6],
        total_duration=row[7],
        date=row[8],
        month=row[9],
        user_id=row[10],
        is_online=bool(row[11]),
        online_id=row[12],
    )


def _row_to_streak(row: tuple[Any, ...]) -> SongStreak:
    return SongStreak(
        id=row[0],
        song_id=row[1],
        song_title=row[2],
        artist_name=row[3],
        current_streak=row[4],
        last_played_date=row[5],
        user_id=row[6],
        is_online=bool(row[7]),
        online_id=row[8],
        created_at=row[9],
        updated_at=row[10],
    )


def _row_to_monthly(row: tuple[Any, ...]) -> MonthlyAnalytics:
    return MonthlyAnalytics(
        id=row[0],
        month=row[1],
        user_id=row[2],
        total_listening_time=row[3],
        total_songs_played=row[4],
        unique_songs_count=row[5],
        unique_artists_count=row[6],
        last_updated=row[7],
    )


class PostgresAnalyticsStore(AnalyticsStore):
    """AnalyticsStore backed by the pooled Postgres connection."""

    def insert_session(self, session: ListeningSession) -> int:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO listening_sessions (
                        song_id, song_title, artist_name, start_time, end_time,
                        duration_listened, total_duration, date, month, user_id,
                        is_online, online_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        session.song_id,
                        session.song_title,
                        session.artist_name,
                        session.start_time,
                        session.end_time,
                        session.duration_listened,
                        session.total_duration,
                        session.date,
                        session.month,
                        session.user_id,
                        session.is_online,
                        session.online_id,
                    ),
                )
                session_id = cur.fetchone()[0]
            conn.commit()
        return int(session_id)

    def update_session_progress(
        self, session_id: int, end_time: int, duration_listened: int
    ) -> bool:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE listening_sessions
                    SET end_time = %s, duration_listened = %s
                    WHERE id = %s
                    """,
                    (end_time, duration_listened, session_id),
                )
                updated = cur.rowcount
            conn.commit()
        return updated > 0

    def get_session(self, session_id: int) -> ListeningSession | None:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM listening_sessions WHERE id = %s",
                    (session_id,),
                )
                row = cur.fetchone()
        return _row_to_session(row) if row else None

    def get_sessions_by_month(self, user_id: int, month: str) -> list[ListeningSession]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS}
                    FROM listening_sessions
                    WHERE user_id = %s AND month = %s
                    ORDER BY start_time DESC, id DESC
                    """,
                    (user_id, month),
                )
                rows = cur.fetchall()
        return [_row_to_session(row) for row in rows]

    def get_sessions_by_date(self, user_id: int, date: str) -> list[ListeningSession]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_SESSION_COLUMNS}
                    FROM listening_sessions
                    WHERE user_id = %s AND date = %s
                    ORDER BY start_time DESC, id DESC
                    """,
                    (user_id, date),
                )
                rows = cur.fetchall()
        return [_row_to_session(row) for row in rows]

    def _scalar(self, sql: str, params: tuple[Any, ...]) -> int:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def get_total_listening_time(self, user_id: int, month: str) -> int:
        return self._scalar(
            """
            SELECT COALESCE(SUM(duration_listened), 0)
            FROM listening_sessions
            WHERE user_id = %s AND month = %s
            """,
            (user_id, month),
        )

    def get_session_count(self, user_id: int, month: str) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM listening_sessions WHERE user_id = %s AND month = %s",
            (user_id, month),
        )

    def get_unique_songs_count(self, user_id: int, month: str) -> int:
        return self._scalar(
            f"""
            SELECT COUNT(DISTINCT {_SONG_IDENTITY_SQL})
            FROM listening_sessions
            WHERE user_id = %s AND month = %s
            """,
            (user_id, month),
        )

    def get_unique_artists_count(self, user_id: int, month: str) -> int:
        return self._scalar(
            """
            SELECT COUNT(DISTINCT artist_name)
            FROM listening_sessions
            WHERE user_id = %s AND month = %s
            """,
            (user_id, month),
        )

    def get_top_artists(self, user_id: int, month: str, limit: int) -> list[ArtistStats]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT artist_name,
                           SUM(duration_listened) AS total_duration,
                           COUNT(*) AS play_count
                    FROM listening_sessions
                    WHERE user_id = %s AND month = %s
                    GROUP BY artist_name
                    ORDER BY total_duration DESC, artist_name COLLATE "C" ASC
                    LIMIT %s
                    """,
                    (user_id, month, limit),
                )
                rows = cur.fetchall()
        return [
            ArtistStats(artist_name=row[0], total_duration=int(row[1]), play_count=int(row[2]))
            for row in rows
        ]

    def get_top_songs(self, user_id: int, month: str, limit: int) -> list[SongStats]:
        # Title/artist come from the most recent session of each song.
        # identity is a real column of the outer query so COLLATE can apply to it.
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT song_id, song_title, artist_name, total_duration,
                           play_count, is_online, online_id
                    FROM (
                        SELECT
                            (ARRAY_AGG(song_id ORDER BY start_time DESC, id DESC))[1] AS song_id,
                            (ARRAY_AGG(song_title ORDER BY start_time DESC, id DESC))[1] AS song_title,
                            (ARRAY_AGG(artist_name ORDER BY start_time DESC, id DESC))[1] AS artist_name,
                            SUM(duration_listened) AS total_duration,
                            COUNT(*) AS play_count,
                            BOOL_OR(is_online) AS is_online,
                            (ARRAY_AGG(online_id ORDER BY start_time DESC, id DESC))[1] AS online_id,
                            identity
                        FROM (
                            SELECT s.*, {_SONG_IDENTITY_SQL} AS identity
                            FROM listening_sessions s
                            WHERE s.user_id = %s AND s.month = %s
                        ) AS month_sessions
                        GROUP BY identity
                    ) AS songs
                    ORDER BY total_duration DESC, identity COLLATE "C" ASC
                    LIMIT %s
                    """,
                    (user_id, month, limit),
                )
                rows = cur.fetchall()
        return [
            SongStats(
                song_id=row[0],
                song_title=row[1],
                artist_name=row[2],
                total_duration=int(row[3]),
                play_count=int(row[4]),
                is_online=bool(row[5]),
                online_id=row[6],
            )
            for row in rows
        ]

    def upsert_monthly_analytics(self, analytics: MonthlyAnalytics) -> None:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO monthly_analytics ({_MONTHLY_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        total_listening_time = EXCLUDED.total_listening_time,
                        total_songs_played = EXCLUDED.total_songs_played,
                        unique_songs_count = EXCLUDED.unique_songs_count,
                        unique_artists_count = EXCLUDED.unique_artists_count,
                        last_updated = EXCLUDED.last_updated
                    """,
                    (
                        analytics.id,
                        analytics.month,
                        analytics.user_id,
                        analytics.total_listening_time,
                        analytics.total_songs_played,
                        analytics.unique_songs_count,
                        analytics.unique_artists_count,
                        analytics.last_updated,
                    ),
                )
            conn.commit()

    def get_monthly_analytics(self, user_id: int, month: str) -> MonthlyAnalytics | None:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_MONTHLY_COLUMNS}
                    FROM monthly_analytics
                    WHERE user_id = %s AND month = %s
                    """,
                    (user_id, month),
                )
                row = cur.fetchone()
        return _row_to_monthly(row) if row else None

    def get_all_monthly_analytics(self, user_id: int) -> list[MonthlyAnalytics]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_MONTHLY_COLUMNS}
                    FROM monthly_analytics
                    WHERE user_id = %s
                    ORDER BY month DESC
                    """,
                    (user_id,),
                )
                rows = cur.fetchall()
        return [_row_to_monthly(row) for row in rows]

    def upsert_song_streak(self, streak: SongStreak) -> None:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO song_streaks ({_STREAK_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        song_id = EXCLUDED.song_id,
                        song_title = EXCLUDED.song_title,
                        artist_name = EXCLUDED.artist_name,
                        current_streak = EXCLUDED.current_streak,
                        last_played_date = EXCLUDED.last_played_date,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        streak.id,
                        streak.song_id,
                        streak.song_title,
                        streak.artist_name,
                        streak.current_streak,
                        streak.last_played_date,
                        streak.user_id,
                        streak.is_online,
                        streak.online_id,
                        streak.created_at,
                        streak.updated_at,
                    ),
                )
            conn.commit()

    def get_song_streak(self, streak_id: str) -> SongStreak | None:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_STREAK_COLUMNS} FROM song_streaks WHERE id = %s",
                    (streak_id,),
                )
                row = cur.fetchone()
        return _row_to_streak(row) if row else None

    def get_song_streaks(
        self, user_id: int, min_streak: int = 1, limit: int | None = None
    ) -> list[SongStreak]:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {_STREAK_COLUMNS}
                    FROM song_streaks
                    WHERE user_id = %s AND current_streak >= %s
                    ORDER BY current_streak DESC, id COLLATE "C" ASC
                    LIMIT %s
                    """,
                    (user_id, min_streak, limit),
                )
                rows = cur.fetchall()
        return [_row_to_streak(row) for row in rows]

    def delete_streaks_played_before(self, cutoff_date: str, user_id: int | None = None) -> int:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM song_streaks
                    WHERE last_played_date COLLATE "C" < %s
                    AND (%s::bigint IS NULL OR user_id = %s::bigint)
                    """,
                    (cutoff_date, user_id, user_id),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted


# Singleton instance
_store: AnalyticsStore | None = None
_store_lock = threading.Lock()


def create_analytics_store(backend: str | None = None) -> AnalyticsStore:
    """Build a store for the configured backend ("postgres" or "memory")."""
    backend = (backend or app_settings.load_analytics_settings().store_backend).lower()
    if backend == app_settings.STORE_MEMORY:
        from soundcapsule.db.memory_store import InMemoryAnalyticsStore

        logger.warning("Using in-memory analytics store; data will not survive restarts")
        return InMemoryAnalyticsStore()
    if backend == app_settings.STORE_POSTGRES:
        if not database_url():
            raise StoreUnavailableError(
                "SOUNDCAPSULE_DATABASE_URL is not set; "
                "set it or use SOUNDCAPSULE_STORE=memory."
            )
        return PostgresAnalyticsStore()
    raise StoreUnavailableError(f"Unknown analytics store backend: {backend}")


def get_analytics_store() -> AnalyticsStore:
    """Get the singleton AnalyticsStore instance."""
    global _store
    if _store is not None:
        return _store
    with _store_lock:
        if _store is None:
            _store = create_analytics_store()
        return _store


def configure_analytics_store(store: AnalyticsStore) -> AnalyticsStore:
    """Replace the singleton store (tests, embedding)."""
    global _store
    with _store_lock:
        _store = store
    return store
