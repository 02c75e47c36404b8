"""
Real-Time Listening Time

WebSocket endpoint that pushes a user's current-month listening time
whenever it changes.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from soundcapsule.services.analytics_repository import (
    format_listening_time,
    get_analytics_repository,
)
from soundcapsule.services.listening_feed import ListeningTimeFeed

router = APIRouter()
logger = logging.getLogger(__name__)

# Seconds between keep-alive messages while nothing changes
KEEPALIVE_SECONDS = 30.0

_connected_clients: set[WebSocket] = set()


def _listening_time_message(message_type: str, user_id: int, total: int) -> dict[str, Any]:
    return {
        "type": message_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "user_id": user_id,
        "month": get_analytics_repository().clock.current_month(),
        "total_listening_time": total,
        "total_listening_time_formatted": format_listening_time(total),
    }


@router.websocket("/live")
async def listening_time_live(websocket: WebSocket, user_id: int) -> None:
    """
    WebSocket endpoint for the live current-month listening time.

    Sends:
    - The current total on connect
    - One update per change while the user listens
    - A keep-alive message when nothing changed for a while
    """
    await websocket.accept()
    _connected_clients.add(websocket)
    loop = asyncio.get_running_loop()
    feed = ListeningTimeFeed(user_id, get_analytics_repository())

    try:
        initial = await loop.run_in_executor(None, feed.next_value)
        await websocket.send_json(_listening_time_message("initial", user_id, initial or 0))

        while True:
            total = await loop.run_in_executor(None, feed.next_value, KEEPALIVE_SECONDS)
            if total is None:
                await websocket.send_json(
                    {"type": "keepalive", "timestamp": datetime.now(timezone.utc).isoformat()}
                )
                continue
            await websocket.send_json(_listening_time_message("update", user_id, total))

    except WebSocketDisconnect:
        logger.debug("WebSocket client disconnected")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        feed.close()
        _connected_clients.discard(websocket)


@router.get("/clients")
async def get_connected_clients() -> dict[str, int]:
    """Get the number of connected WebSocket clients."""
    return {"connected_clients": len(_connected_clients)}
