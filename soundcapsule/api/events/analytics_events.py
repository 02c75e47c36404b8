from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

SESSION_STARTED = "session_started"
SESSION_PROGRESS = "session_progress"
SESSION_ENDED = "session_ended"
STREAK_UPDATED = "streak_updated"
MONTHLY_ANALYTICS_UPDATED = "monthly_analytics_updated"
STREAKS_PRUNED = "streaks_pruned"

# Events after which a user's listening-time totals may have changed
SESSION_EVENT_TYPES = {SESSION_STARTED, SESSION_PROGRESS, SESSION_ENDED}


@dataclass(frozen=True)
class AnalyticsEvent:
    """A write that happened in the analytics stores."""

    event_type: str
    timestamp: str
    user_id: int | None = None
    payload: dict[str, Any] | None = None


class AnalyticsEventHub:
    """Thread-safe broadcaster for analytics events."""

    def __init__(self) -> None:
        self._subscribers: set[queue.Queue[AnalyticsEvent]] = set()
        self._lock = threading.Lock()

    def subscribe(self, maxsize: int = 200) -> queue.Queue[AnalyticsEvent]:
        """Register a subscriber queue for events."""
        subscriber: queue.Queue[AnalyticsEvent] = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue[AnalyticsEvent]) -> None:
        """Remove a subscriber queue."""
        with self._lock:
            self._subscribers.discard(subscriber)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def emit(self, event: AnalyticsEvent) -> None:
        """Broadcast an event to all subscribers, dropping the oldest on overflow."""
        with self._lock:
            subscribers = list(self._subscribers)

        for subscriber in subscribers:
            try:
                subscriber.put_nowait(event)
            except queue.Full:
                try:
                    subscriber.get_nowait()
                    subscriber.put_nowait(event)
                except (queue.Empty, queue.Full):
                    continue


_event_hub: AnalyticsEventHub | None = None


def get_analytics_event_hub() -> AnalyticsEventHub:
    """Get the singleton AnalyticsEventHub instance."""
    global _event_hub
    if _event_hub is None:
        _event_hub = AnalyticsEventHub()
    return _event_hub


def emit_analytics_event(
    event_type: str,
    user_id: int | None = None,
    payload: dict[str, Any] | None = None,
    hub: AnalyticsEventHub | None = None,
) -> AnalyticsEvent:
    """Emit an analytics event to the hub."""
    event = AnalyticsEvent(
        event_type=event_type,
        user_id=user_id,
        payload=payload or None,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    (hub or get_analytics_event_hub()).emit(event)
    return event

