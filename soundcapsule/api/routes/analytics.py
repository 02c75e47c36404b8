"""
Listening Analytics API Routes

Read-side endpoints over monthly summaries, top lists and song streaks.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from soundcapsule.services.analytics_repository import (
    DEFAULT_TOP_LIMIT,
    format_listening_time,
    get_analytics_repository,
)
from soundcapsule.services.analytics_service import get_analytics_service
from soundcapsule.services.clock import MONTH_FORMAT, month_display_name, parse_month

router = APIRouter()
logger = logging.getLogger(__name__)


class RefreshRequest(BaseModel):
    user_id: int
    month: str | None = None


class CleanupRequest(BaseModel):
    user_id: int | None = None


def resolve_month(month: str | None) -> str:
    """Validate and normalize a yyyy-MM query value, defaulting to the current month."""
    if month is None:
        return get_analytics_repository().clock.current_month()
    try:
        return parse_month(month).strftime(MONTH_FORMAT)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid month '{month}', expected YYYY-MM")


@router.get("/monthly")
async def get_monthly(
    user_id: int = Query(..., description="User whose analytics to read"),
    month: str | None = Query(None, description="YYYY-MM, defaults to the current month"),
) -> dict[str, Any]:
    """Stored monthly summary for a user, or null if none was computed yet."""
    month = resolve_month(month)
    analytics = get_analytics_repository().get_monthly_analytics(user_id, month)
    return {
        "month": month,
        "display_name": month_display_name(month),
        "analytics": analytics.to_dict() if analytics else None,
    }


@router.get("/months")
async def get_months(user_id: int = Query(...)) -> dict[str, Any]:
    """Months that have a summary row, oldest first."""
    months = get_analytics_repository().get_available_months(user_id)
    return {
        "months": [{"month": month, "display_name": month_display_name(month)} for month in months],
        "has_current_month_data": get_analytics_repository().has_analytics_data(user_id),
    }


@router.get("/top-artists")
async def get_top_artists(
    user_id: int = Query(...),
    month: str | None = Query(None),
    limit: int = Query(DEFAULT_TOP_LIMIT, ge=1, le=100, description="Max artists to return"),
) -> dict[str, Any]:
    month = resolve_month(month)
    artists = get_analytics_repository().get_top_artists(user_id, month, limit)
    return {
        "month": month,
        "artists": [
            {**artist.to_dict(), "total_duration_formatted": format_listening_time(artist.total_duration)}
            for artist in artists
        ],
    }


@router.get("/top-songs")
async def get_top_songs(
    user_id: int = Query(...),
    month: str | None = Query(None),
    limit: int = Query(DEFAULT_TOP_LIMIT, ge=1, le=100, description="Max songs to return"),
) -> dict[str, Any]:
    month = resolve_month(month)
    songs = get_analytics_repository().get_top_songs(user_id, month, limit)
    return {
        "month": month,
        "songs": [
            {**song.to_dict(), "total_duration_formatted": format_listening_time(song.total_duration)}
            for song in songs
        ],
    }


@router.get("/streaks")
async def get_streaks(
    user_id: int = Query(...),
    active_only: bool = Query(False, description="Only streaks of 2+ consecutive days"),
    limit: int | None = Query(None, ge=1, le=100),
) -> dict[str, Any]:
    """Song streaks, longest first."""
    repository = get_analytics_repository()
    if active_only:
        streaks = repository.get_active_streaks(user_id)
    elif limit is not None:
        streaks = repository.get_top_streaks(user_id, limit)
    else:
        streaks = repository.get_song_streaks(user_id)
    if limit is not None:
        streaks = streaks[:limit]
    return {"streaks": [streak.to_dict() for streak in streaks]}


@router.get("/summary")
async def get_summary(
    user_id: int = Query(...),
    month: str | None = Query(None),
) -> dict[str, Any]:
    """Headline numbers for the Sound Capsule card."""
    month = resolve_month(month)
    summary = get_analytics_repository().get_monthly_summary(user_id, month)
    return {"month": month, "display_name": month_display_name(month), **summary.to_dict()}


@router.get("/listening-time")
async def get_listening_time(
    user_id: int = Query(...),
    month: str | None = Query(None),
) -> dict[str, Any]:
    """Total listened time computed from raw sessions (not the stored summary)."""
    month = resolve_month(month)
    total = get_analytics_repository().get_total_listening_time(user_id, month)
    return {
        "month": month,
        "total_listening_time": total,
        "total_listening_time_formatted": format_listening_time(total),
    }


@router.post("/refresh")
def refresh_analytics(payload: RefreshRequest) -> dict[str, Any]:
    """Recompute a month summary if that month has any listening time."""
    month = resolve_month(payload.month)
    try:
        analytics = get_analytics_service().force_update_analytics(payload.user_id, month)
    except Exception as e:
        logger.exception("Failed to refresh analytics")
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "month": month,
        "updated": analytics is not None,
        "analytics": analytics.to_dict() if analytics else None,
    }


@router.post("/cleanup")
def cleanup_streaks(payload: CleanupRequest) -> dict[str, Any]:
    """Delete streaks whose last play is older than the retention window."""
    try:
        deleted = get_analytics_service().cleanup_old_streaks(payload.user_id)
    except Exception as e:
        logger.exception("Failed to clean up streaks")
        raise HTTPException(status_code=500, detail=str(e))
    return {"streaks_deleted": deleted}
