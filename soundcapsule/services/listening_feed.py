"""
Current-month listening time as a live view.

A feed yields the user's current-month total once on start and then again
every time a session write changes it. It is driven by analytics events,
so nothing is polled while the user is not listening.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Iterator

from soundcapsule.api.events.analytics_events import (
    SESSION_EVENT_TYPES,
    AnalyticsEventHub,
    get_analytics_event_hub,
)
from soundcapsule.services.analytics_repository import AnalyticsRepository

logger = logging.getLogger(__name__)

DEFAULT_WAIT_SECONDS = 0.5


class ListeningTimeFeed:
    """Iterator of current-month listening-time totals for one user."""

    def __init__(
        self,
        user_id: int,
        repository: AnalyticsRepository,
        event_hub: AnalyticsEventHub | None = None,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
    ) -> None:
        self.user_id = user_id
        self.repository = repository
        self.event_hub = event_hub or get_analytics_event_hub()
        self.wait_seconds = wait_seconds
        self._stop_event = threading.Event()
        # Subscribe before the first read so no write can slip between them
        self._subscriber: queue.Queue | None = self.event_hub.subscribe()
        self._last_value: int | None = None

    @property
    def last_value(self) -> int | None:
        return self._last_value

    def close(self) -> None:
        self._stop_event.set()
        if self._subscriber is not None:
            self.event_hub.unsubscribe(self._subscriber)
            self._subscriber = None

    def __enter__(self) -> "ListeningTimeFeed":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _read(self) -> int:
        # Month is recomputed per read so the feed rolls over at month end
        return self.repository.get_current_month_listening_time(self.user_id)

    def _is_relevant(self, event) -> bool:
        return event.user_id == self.user_id and event.event_type in SESSION_EVENT_TYPES

    def next_value(self, timeout: float | None = None) -> int | None:
        """
        Block until the total differs from the last emitted value.

        Args:
            timeout: Seconds to wait; None waits until closed

        Returns:
            The new total, or None on timeout/close
        """
        if self._last_value is None:
            self._last_value = self._read()
            return self._last_value

        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._stop_event.is_set():
            subscriber = self._subscriber
            if subscriber is None:
                return None
            wait = self.wait_seconds
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    return None
            try:
                event = subscriber.get(timeout=wait)
            except queue.Empty:
                continue

            if not self._is_relevant(event):
                continue

            total = self._read()
            if total != self._last_value:
                self._last_value = total
                logger.debug(f"Listening time for user {self.user_id} is now {total}ms")
                return total
        return None

    def __iter__(self) -> Iterator[int]:
        while True:
            value = self.next_value()
            if value is None:
                return
            yield value
