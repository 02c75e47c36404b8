"""
Listening Tracker

Turns playback lifecycle calls for one user into listening-session writes.

All session state lives in a single immutable ``TrackerState`` value that
is only replaced on the tracker's worker thread. Public methods capture the
event time on the calling thread and queue a message; the worker applies
messages in the order they were made.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from enum import Enum
from functools import partial
from typing import Any, Callable

from soundcapsule.api.events.analytics_events import (
    SESSION_ENDED,
    SESSION_PROGRESS,
    SESSION_STARTED,
    AnalyticsEventHub,
    emit_analytics_event,
)
from soundcapsule.app_settings import AnalyticsSettings
from soundcapsule.db.analytics_store import AnalyticsStore
from soundcapsule.db.models import ListeningSession, Song
from soundcapsule.services.clock import Clock
from soundcapsule.services.monthly_aggregator import MonthlyAggregator
from soundcapsule.services.streak_engine import StreakEngine
from soundcapsule.services.task_queue import QueueClosedError, SerialTaskQueue

logger = logging.getLogger(__name__)


class TrackerPhase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass(frozen=True)
class TrackerState:
    """Snapshot of the session being tracked."""

    phase: TrackerPhase = TrackerPhase.IDLE
    session_id: int | None = None
    song: Song | None = None
    month: str | None = None
    session_start_ms: int = 0
    last_update_ms: int = 0
    last_persist_ms: int = 0
    accumulated_ms: int = 0


IDLE_STATE = TrackerState()


class ListeningTracker:
    """Session recorder scoped to one user, backed by its own task queue."""

    def __init__(
        self,
        user_id: int,
        store: AnalyticsStore,
        clock: Clock | None = None,
        settings: AnalyticsSettings | None = None,
        streak_engine: StreakEngine | None = None,
        aggregator: MonthlyAggregator | None = None,
        event_hub: AnalyticsEventHub | None = None,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.settings = settings or AnalyticsSettings()
        self.clock = clock or Clock(self.settings.timezone)
        self.event_hub = event_hub
        self.streak_engine = streak_engine or StreakEngine(store, self.clock, event_hub)
        self.aggregator = aggregator or MonthlyAggregator(store, self.clock, event_hub)

        self._state = IDLE_STATE
        self._current_month_listening_time = 0
        self._queue = SerialTaskQueue(
            f"tracker-{user_id}", maxsize=self.settings.queue_size
        )
        self._queue.start()
        self._queue.submit(self._refresh_current_month_listening_time)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def current_session_id(self) -> int | None:
        return self._state.session_id

    @property
    def current_month_listening_time(self) -> int:
        """Last known total listened ms for the current month."""
        return self._current_month_listening_time

    @property
    def stopped(self) -> bool:
        return self._queue.closed

    # ------------------------------------------------------------------
    # Playback lifecycle (called from the playback source)
    # ------------------------------------------------------------------

    def start_listening_session(self, song: Song) -> Future | None:
        """Begin tracking `song`; any open session is ended first."""
        return self._queue.submit(self._handle_start, song, self.clock.now_ms())

    def update_listening_progress(self, position_ms: int, is_playing: bool) -> Future | None:
        if not is_playing:
            return None
        return self._queue.submit(self._handle_progress, position_ms, self.clock.now_ms())

    def pause_listening_session(self) -> Future | None:
        return self._queue.submit(self._handle_pause, self.clock.now_ms())

    def resume_listening_session(self) -> Future | None:
        return self._queue.submit(self._handle_resume, self.clock.now_ms())

    def end_listening_session(self, timeout: float | None = None) -> ListeningSession | None:
        """Flush and close the open session, blocking until it is persisted."""
        at = self.clock.now_ms()
        timeout = self.settings.flush_timeout_seconds if timeout is None else timeout
        try:
            return self._queue.call(self._finish_session, at, "ended", timeout=timeout)
        except QueueClosedError:
            logger.warning(f"Tracker for user {self.user_id} is stopped; nothing to end")
        except FutureTimeoutError:
            logger.error(f"Timed out ending listening session for user {self.user_id}")
        return None

    def cleanup(self, timeout: float | None = None) -> ListeningSession | None:
        """Cancel queued work, force-flush the open session and stop the tracker."""
        at = self.clock.now_ms()
        timeout = self.settings.flush_timeout_seconds if timeout is None else timeout
        try:
            finished = self._queue.close(
                final=partial(self._finish_session, at, "cleanup"), timeout=timeout
            )
        except FutureTimeoutError:
            logger.error(f"Timed out flushing session during cleanup for user {self.user_id}")
            return None
        logger.info(f"Listening tracker for user {self.user_id} stopped")
        return finished

    def schedule(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future | None:
        """Run other per-user work in order with this tracker's writes."""
        return self._queue.submit(fn, *args, **kwargs)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for everything queued so far."""
        return self._queue.drain(timeout=timeout)

    # ------------------------------------------------------------------
    # Worker-side handlers
    # ------------------------------------------------------------------

    def _guarded_delta(self, state: TrackerState, at: int) -> int:
        """Elapsed time since the last update, or 0 if it looks like a jump."""
        delta = at - state.last_update_ms
        if 0 < delta < self.settings.progress_guard_ms:
            return delta
        return 0

    def _handle_start(self, song: Song, at: int) -> int | None:
        if self._state.phase is not TrackerPhase.IDLE:
            logger.info(
                f"Switching songs; ending session {self._state.session_id} before "
                f"starting {song.title}"
            )
            self._finish_session(at, "switched")

        date = self.clock.date_string(at)
        month = self.clock.month_string(at)
        session = ListeningSession(
            song_id=song.id,
            song_title=song.title,
            artist_name=song.artist,
            start_time=at,
            end_time=None,
            duration_listened=0,
            total_duration=song.duration_ms,
            date=date,
            month=month,
            user_id=self.user_id,
            is_online=song.is_online,
            online_id=song.online_id,
        )

        try:
            session_id = self.store.insert_session(session)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error starting listening session for {song.title}: {exc}")
            return None

        self._state = TrackerState(
            phase=TrackerPhase.ACTIVE,
            session_id=session_id,
            song=song,
            month=month,
            session_start_ms=at,
            last_update_ms=at,
            last_persist_ms=at,
            accumulated_ms=0,
        )
        logger.info(f"Started listening session {session_id} for: {song.title}")

        self.streak_engine.record_play(self.user_id, song, date)

        emit_analytics_event(
            SESSION_STARTED,
            user_id=self.user_id,
            payload={"session_id": session_id, "song_id": song.id, "month": month},
            hub=self.event_hub,
        )
        return session_id

    def _handle_progress(self, position_ms: int, at: int) -> None:
        state = self._state
        if state.phase is not TrackerPhase.ACTIVE:
            return

        delta = self._guarded_delta(state, at)
        state = replace(
            state,
            accumulated_ms=state.accumulated_ms + delta,
            last_update_ms=at,
        )
        self._state = state

        if delta and self._persist_due(state, position_ms, at):
            self._persist(at)

    def _persist_due(self, state: TrackerState, position_ms: int, at: int) -> bool:
        if at - state.last_persist_ms >= self.settings.persist_interval_ms:
            return True
        return position_ms % self.settings.boundary_interval_ms < self.settings.boundary_window_ms

    def _handle_pause(self, at: int) -> None:
        state = self._state
        if state.phase is not TrackerPhase.ACTIVE:
            return

        self._state = replace(
            state,
            phase=TrackerPhase.PAUSED,
            accumulated_ms=state.accumulated_ms + self._guarded_delta(state, at),
            last_update_ms=at,
        )
        self._persist(at)
        logger.debug(f"Paused listening session {state.session_id}")

    def _handle_resume(self, at: int) -> None:
        state = self._state
        if state.phase is not TrackerPhase.PAUSED:
            return

        # Paused time is never counted
        self._state = replace(state, phase=TrackerPhase.ACTIVE, last_update_ms=at)
        logger.debug(f"Resumed listening session {state.session_id}")

    def _finish_session(self, at: int, reason: str) -> ListeningSession | None:
        state = self._state
        if state.phase is TrackerPhase.IDLE:
            return None

        if state.phase is TrackerPhase.ACTIVE:
            state = replace(
                state,
                accumulated_ms=state.accumulated_ms + self._guarded_delta(state, at),
                last_update_ms=at,
            )
            self._state = state

        self._persist(at)
        logger.info(
            f"Ended listening session {state.session_id} ({reason}) with "
            f"{state.accumulated_ms}ms listened"
        )

        self.aggregator.recompute(self.user_id, state.month)
        self._state = IDLE_STATE
        self._refresh_current_month_listening_time()

        emit_analytics_event(
            SESSION_ENDED,
            user_id=self.user_id,
            payload={
                "session_id": state.session_id,
                "duration_listened": state.accumulated_ms,
                "reason": reason,
            },
            hub=self.event_hub,
        )

        try:
            return self.store.get_session(state.session_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error reading back session {state.session_id}: {exc}")
            return None

    def _persist(self, at: int) -> bool:
        state = self._state
        try:
            self.store.update_session_progress(state.session_id, at, state.accumulated_ms)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error saving progress for session {state.session_id}: {exc}")
            return False

        self._state = replace(state, last_persist_ms=at)
        self._refresh_current_month_listening_time()
        emit_analytics_event(
            SESSION_PROGRESS,
            user_id=self.user_id,
            payload={"session_id": state.session_id, "duration_listened": state.accumulated_ms},
            hub=self.event_hub,
        )
        return True

    def _refresh_current_month_listening_time(self) -> None:
        try:
            self._current_month_listening_time = self.store.get_total_listening_time(
                self.user_id, self.clock.current_month()
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Error updating current month listening time: {exc}")
