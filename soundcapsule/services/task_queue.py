from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_PUT_TIMEOUT = 1.0
_FULL_RETRY_INTERVAL = 0.01

_STOP = object()


class QueueClosedError(RuntimeError):
    """Raised when waiting on work submitted to a closed queue."""


class SerialTaskQueue:
    """Bounded FIFO of callables executed one at a time on a worker thread.

    Work submitted from any thread runs in submission order. ``close`` drops
    whatever is still pending, runs one final callable, and stops the worker.
    """

    def __init__(
        self,
        name: str,
        maxsize: int = DEFAULT_QUEUE_SIZE,
        put_timeout: float = DEFAULT_PUT_TIMEOUT,
    ) -> None:
        self.name = name
        self.put_timeout = put_timeout
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._closed = False
        self._worker_thread: threading.Thread | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the worker thread."""
        with self._lock:
            if self._worker_thread and self._worker_thread.is_alive():
                return
            self._worker_thread = threading.Thread(
                target=self._run, name=f"task-queue-{self.name}", daemon=True
            )
            self._worker_thread.start()

    def _on_worker_thread(self) -> bool:
        return threading.current_thread() is self._worker_thread

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future | None:
        """Queue work without waiting. Returns None if the queue refused it."""
        future: Future = Future()
        item = (fn, args, kwargs, future)
        deadline = time.monotonic() + self.put_timeout
        while True:
            # The closed check and the put share the lock so nothing lands behind _STOP.
            with self._lock:
                if self._closed:
                    logger.warning(f"Queue {self.name} is closed; dropping {_task_name(fn)}")
                    return None
                try:
                    self._queue.put_nowait(item)
                    return future
                except queue.Full:
                    pass
            if time.monotonic() >= deadline:
                logger.warning(f"Queue {self.name} is full; dropping {_task_name(fn)}")
                return None
            time.sleep(_FULL_RETRY_INTERVAL)

    def call(
        self,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
        **kwargs: Any,
    ) -> Any:
        """Queue work and block until it has run, returning its result."""
        if self._on_worker_thread():
            return fn(*args, **kwargs)
        future = self.submit(fn, *args, **kwargs)
        if future is None:
            raise QueueClosedError(f"Queue {self.name} did not accept {_task_name(fn)}")
        return future.result(timeout=timeout)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until everything submitted so far has run."""
        try:
            self.call(_noop, timeout=timeout)
            return True
        except (QueueClosedError, CancelledError, FutureTimeoutError):
            return False

    def close(
        self,
        final: Callable[[], Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Cancel pending work, run `final` on the worker, then stop it."""
        with self._lock:
            if self._closed:
                return None
            self._closed = True

        self.start()

        cancelled = self._cancel_pending()
        if cancelled:
            logger.debug(f"Queue {self.name} cancelled {cancelled} pending task(s)")

        final_future: Future = Future()
        if final is not None:
            self._queue.put((final, (), {}, final_future))
        else:
            final_future.set_result(None)
        self._queue.put(_STOP)

        result = None
        try:
            result = final_future.result(timeout=timeout)
        finally:
            if self._worker_thread and not self._on_worker_thread():
                self._worker_thread.join(timeout=timeout)
                if not self._worker_thread.is_alive():
                    self._cancel_pending()
        return result

    def _cancel_pending(self) -> int:
        cancelled = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return cancelled
            if item is not _STOP:
                item[3].cancel()
                cancelled += 1

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            fn, args, kwargs, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Task {_task_name(fn)} failed on queue {self.name}: {exc}")
                future.set_exception(exc)


def _noop() -> None:
    return None


def _task_name(fn: Callable[..., Any]) -> str:
    return getattr(fn, "__name__", None) or getattr(getattr(fn, "func", None), "__name__", repr(fn))
