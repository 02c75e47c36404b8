"""
Playback Tracking API Routes

Endpoints the playback source calls as songs start, tick, pause and stop.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from soundcapsule.db.models import Song
from soundcapsule.services.analytics_service import get_analytics_service

router = APIRouter()
logger = logging.getLogger(__name__)


class UserRequest(BaseModel):
    user_id: int


class StartSessionRequest(UserRequest):
    song_id: int
    title: str
    artist: str
    duration_ms: int = Field(0, ge=0)
    is_online: bool = False
    online_id: int | None = None


class ProgressRequest(UserRequest):
    position_ms: int = Field(..., ge=0)
    is_playing: bool = True


@router.post("/start")
async def start_session(payload: StartSessionRequest) -> dict[str, Any]:
    """
    Start tracking a song.

    Called when a song starts playing. Initializes the user's tracker on
    first use; an open session for the user is ended first.
    """
    service = get_analytics_service()
    song = Song(
        id=payload.song_id,
        title=payload.title,
        artist=payload.artist,
        duration_ms=payload.duration_ms,
        is_online=payload.is_online,
        online_id=payload.online_id,
    )

    try:
        service.initialize_for_user(payload.user_id)
        queued = service.start_tracking(payload.user_id, song) is not None
    except Exception as e:
        logger.exception("Failed to start listening session")
        raise HTTPException(status_code=500, detail=str(e))

    if not queued:
        raise HTTPException(status_code=503, detail="Tracker is busy or stopped")
    return {"queued": True}


@router.post("/progress")
async def record_progress(payload: ProgressRequest) -> dict[str, Any]:
    """Periodic position tick from the player."""
    service = get_analytics_service()
    if not service.is_initialized(payload.user_id):
        raise HTTPException(status_code=409, detail="Analytics not initialized for user")

    future = service.update_tracking_progress(
        payload.user_id, payload.position_ms, payload.is_playing
    )
    return {"queued": future is not None}


@router.post("/pause")
async def pause_session(payload: UserRequest) -> dict[str, Any]:
    service = get_analytics_service()
    if not service.is_initialized(payload.user_id):
        raise HTTPException(status_code=409, detail="Analytics not initialized for user")
    return {"queued": service.pause_tracking(payload.user_id) is not None}


@router.post("/resume")
async def resume_session(payload: UserRequest) -> dict[str, Any]:
    service = get_analytics_service()
    if not service.is_initialized(payload.user_id):
        raise HTTPException(status_code=409, detail="Analytics not initialized for user")
    return {"queued": service.resume_tracking(payload.user_id) is not None}


@router.post("/end")
def end_session(payload: UserRequest) -> dict[str, Any]:
    """
    End the user's open session.

    Blocks until the session is persisted and the month summary recomputed.
    """
    service = get_analytics_service()
    if not service.is_initialized(payload.user_id):
        raise HTTPException(status_code=409, detail="Analytics not initialized for user")

    try:
        session = service.end_tracking(payload.user_id)
    except Exception as e:
        logger.exception("Failed to end listening session")
        raise HTTPException(status_code=500, detail=str(e))

    return {"session": session.to_dict() if session else None}


@router.post("/logout")
def logout(payload: UserRequest) -> dict[str, Any]:
    """Flush the open session and release the user's tracker."""
    service = get_analytics_service()
    try:
        session = service.handle_user_logout(payload.user_id)
    except Exception as e:
        logger.exception("Failed to clean up analytics on logout")
        raise HTTPException(status_code=500, detail=str(e))
    return {"session": session.to_dict() if session else None}
