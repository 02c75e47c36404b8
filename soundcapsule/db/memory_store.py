"""In-process AnalyticsStore used for tests and database-less runs."""

from __future__ import annotations

import itertools
import threading
from collections import defaultdict
from dataclasses import replace

from soundcapsule.db.analytics_store import AnalyticsStore
from soundcapsule.db.models import (
    ArtistStats,
    ListeningSession,
    MonthlyAnalytics,
    SongStats,
    SongStreak,
)


def _newest_first(session: ListeningSession) -> tuple[int, int]:
    return (-session.start_time, -(session.id or 0))


class InMemoryAnalyticsStore(AnalyticsStore):
    """Thread-safe dict-backed store. Returned records are copies."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[int, ListeningSession] = {}
        self._streaks: dict[str, SongStreak] = {}
        self._monthly: dict[str, MonthlyAnalytics] = {}
        self._ids = itertools.count(1)

    # ==================== LISTENING SESSIONS ====================

    def insert_session(self, session: ListeningSession) -> int:
        with self._lock:
            session_id = next(self._ids)
            self._sessions[session_id] = replace(session, id=session_id)
            return session_id

    def update_session_progress(
        self, session_id: int, end_time: int, duration_listened: int
    ) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            self._sessions[session_id] = replace(
                session, end_time=end_time, duration_listened=duration_listened
            )
            return True

    def get_session(self, session_id: int) -> ListeningSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def _month_sessions(self, user_id: int, month: str) -> list[ListeningSession]:
        with self._lock:
            return [
                replace(s)
                for s in self._sessions.values()
                if s.user_id == user_id and s.month == month
            ]

    def get_sessions_by_month(self, user_id: int, month: str) -> list[ListeningSession]:
        return sorted(self._month_sessions(user_id, month), key=_newest_first)

    def get_sessions_by_date(self, user_id: int, date: str) -> list[ListeningSession]:
        with self._lock:
            sessions = [
                replace(s)
                for s in self._sessions.values()
                if s.user_id == user_id and s.date == date
            ]
        return sorted(sessions, key=_newest_first)

    # ==================== AGGREGATE READS ====================

    def get_total_listening_time(self, user_id: int, month: str) -> int:
        return sum(s.duration_listened for s in self._month_sessions(user_id, month))

    def get_session_count(self, user_id: int, month: str) -> int:
        return len(self._month_sessions(user_id, month))

    def get_unique_songs_count(self, user_id: int, month: str) -> int:
        return len({s.song_identity for s in self._month_sessions(user_id, month)})

    def get_unique_artists_count(self, user_id: int, month: str) -> int:
        return len({s.artist_name for s in self._month_sessions(user_id, month)})

    def get_top_artists(self, user_id: int, month: str, limit: int) -> list[ArtistStats]:
        totals: dict[str, int] = defaultdict(int)
        counts: dict[str, int] = defaultdict(int)
        for session in self._month_sessions(user_id, month):
            totals[session.artist_name] += session.duration_listened
            counts[session.artist_name] += 1

        ranked = sorted(totals, key=lambda name: (-totals[name], name))
        return [
            ArtistStats(artist_name=name, total_duration=totals[name], play_count=counts[name])
            for name in ranked[:limit]
        ]

    def get_top_songs(self, user_id: int, month: str, limit: int) -> list[SongStats]:
        grouped: dict[str, list[ListeningSession]] = defaultdict(list)
        for session in self._month_sessions(user_id, month):
            grouped[session.song_identity].append(session)

        stats: list[tuple[str, SongStats]] = []
        for identity, sessions in grouped.items():
            latest = min(sessions, key=_newest_first)
            stats.append(
                (
                    identity,
                    SongStats(
                        song_id=latest.song_id,
                        song_title=latest.song_title,
                        artist_name=latest.artist_name,
                        total_duration=sum(s.duration_listened for s in sessions),
                        play_count=len(sessions),
                        is_online=any(s.is_online for s in sessions),
                        online_id=latest.online_id,
                    ),
                )
            )

        stats.sort(key=lambda item: (-item[1].total_duration, item[0]))
        return [song for _, song in stats[:limit]]

    # ==================== MONTHLY ANALYTICS ====================

    def upsert_monthly_analytics(self, analytics: MonthlyAnalytics) -> None:
        with self._lock:
            self._monthly[analytics.id] = replace(analytics)

    def get_monthly_analytics(self, user_id: int, month: str) -> MonthlyAnalytics | None:
        with self._lock:
            for row in self._monthly.values():
                if row.user_id == user_id and row.month == month:
                    return replace(row)
        return None

    def get_all_monthly_analytics(self, user_id: int) -> list[MonthlyAnalytics]:
        with self._lock:
            rows = [replace(r) for r in self._monthly.values() if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.month, reverse=True)

    # ==================== SONG STREAKS ====================

    def upsert_song_streak(self, streak: SongStreak) -> None:
        with self._lock:
            existing = self._streaks.get(streak.id)
            if existing is not None:
                # created_at and identity columns are kept from the first insert
                streak = replace(
                    streak,
                    created_at=existing.created_at,
                    user_id=existing.user_id,
                    is_online=existing.is_online,
                    online_id=existing.online_id,
                )
            self._streaks[streak.id] = replace(streak)

    def get_song_streak(self, streak_id: str) -> SongStreak | None:
        with self._lock:
            streak = self._streaks.get(streak_id)
            return replace(streak) if streak else None

    def get_song_streaks(
        self, user_id: int, min_streak: int = 1, limit: int | None = None
    ) -> list[SongStreak]:
        with self._lock:
            rows = [
                replace(s)
                for s in self._streaks.values()
                if s.user_id == user_id and s.current_streak >= min_streak
            ]
        rows.sort(key=lambda s: (-s.current_streak, s.id))
        return rows if limit is None else rows[:limit]

    def delete_streaks_played_before(self, cutoff_date: str, user_id: int | None = None) -> int:
        with self._lock:
            doomed = [
                key
                for key, streak in self._streaks.items()
                if streak.last_played_date < cutoff_date
                and (user_id is None or streak.user_id == user_id)
            ]
            for key in doomed:
                del self._streaks[key]
            return len(doomed)
