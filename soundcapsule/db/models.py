"""
Listening analytics records.

Plain dataclasses shared by the stores, the services and the API layer.
All timestamps are epoch milliseconds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class Song:
    """What the playback source knows about the song being played."""

    id: int
    title: str
    artist: str
    duration_ms: int = 0
    is_online: bool = False
    online_id: int | None = None


@dataclass
class ListeningSession:
    song_id: int
    song_title: str
    artist_name: str
    start_time: int
    end_time: int | None
    duration_listened: int
    total_duration: int
    date: str
    month: str
    user_id: int
    is_online: bool = False
    online_id: int | None = None
    id: int | None = None

    @property
    def song_identity(self) -> str:
        return song_identity(self.is_online, self.song_id, self.online_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SongStreak:
    id: str
    song_id: int
    song_title: str
    artist_name: str
    current_streak: int
    last_played_date: str
    user_id: int
    is_online: bool = False
    online_id: int | None = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MonthlyAnalytics:
    id: str
    month: str
    user_id: int
    total_listening_time: int
    total_songs_played: int
    unique_songs_count: int
    unique_artists_count: int
    last_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ArtistStats:
    artist_name: str
    total_duration: int
    play_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SongStats:
    song_id: int
    song_title: str
    artist_name: str
    total_duration: int
    play_count: int
    is_online: bool = False
    online_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def song_identity(is_online: bool, song_id: int, online_id: int | None) -> str:
    """Distinct-song identity: online catalog id when available, else local id."""
    if is_online and online_id is not None:
        return f"online_{online_id}"
    return f"local_{song_id}"


def streak_key(user_id: int, is_online: bool, song_id: int, online_id: int | None) -> str:
    return f"streak_{user_id}_{song_identity(is_online, song_id, online_id)}"


def analytics_key(user_id: int, month: str) -> str:
    return f"analytics_{user_id}_{month}"
