"""Thread-based sync scheduler.

Emits run-now signals to a callback at a fixed interval, or immediately on
``trigger()``. The callback receives the scheduler's cancellation event and
passes it on to ``SyncOrchestrator.sync_all`` so ``stop()`` can end a
running pass after its current page.

    start(run, interval)
       │
       ▼
    daemon thread:  wait(interval or trigger) ─▶ run(cancel_event) ─▶ wait ...
       │
    stop(): cancel_event.set(), wake, join
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from refspine.core.logging import get_logger
from refspine.core.timestamps import utc_now

log = get_logger(__name__)

RunCallback = Callable[[threading.Event], Any]


class SyncScheduler:
    """Daemon-thread trigger for sync passes.

    Example:
        >>> scheduler = SyncScheduler(lambda cancel: orchestrator.sync_all(source, cancel))
        >>> scheduler.start(interval_seconds=3600, run_immediately=True)
        >>> scheduler.trigger()   # run now
        >>> scheduler.stop()
    """

    name = "thread"

    def __init__(self, run: RunCallback, *, join_timeout: float = 30.0):
        self._run = run
        self._join_timeout = join_timeout
        self._cancel_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._run_count = 0
        self._failure_count = 0
        self._last_run: datetime | None = None
        self._last_error: str | None = None
        self._interval: float = 3600.0
        self._started = False

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    def start(self, interval_seconds: float = 3600.0, run_immediately: bool = False) -> None:
        if self._started:
            log.warning("scheduler.already_started")
            return

        self._interval = interval_seconds
        self._cancel_event.clear()
        self._wake_event.clear()
        if run_immediately:
            self._wake_event.set()

        self._thread = threading.Thread(target=self._loop, daemon=True, name="refspine-sync")
        self._thread.start()
        self._started = True
        log.info("scheduler.started", interval_seconds=interval_seconds)

    def trigger(self) -> None:
        """Ask for a run as soon as the current one (if any) finishes."""
        self._wake_event.set()

    def stop(self) -> None:
        """Cancel the running pass and wait for the thread to exit."""
        if not self._started:
            return
        self._cancel_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=self._join_timeout)
            if self._thread.is_alive():
                log.warning("scheduler.stop_timeout", timeout=self._join_timeout)
        self._started = False
        log.info("scheduler.stopped", runs=self._run_count)

    def _loop(self) -> None:
        while not self._cancel_event.is_set():
            self._wake_event.wait(self._interval)
            if self._cancel_event.is_set():
                break
            self._wake_event.clear()
            self._tick()

    def _tick(self) -> None:
        with self._lock:
            self._run_count += 1
            self._last_run = utc_now()
        try:
            self._run(self._cancel_event)
        except Exception as exc:
            # a failed pass must not kill the schedule; the next tick retries
            with self._lock:
                self._failure_count += 1
                self._last_error = str(exc)
            log.exception("scheduler.run_failed", error=str(exc))

    def health(self) -> dict[str, Any]:
        with self._lock:
            return {
                "healthy": self.is_running,
                "name": self.name,
                "interval_seconds": self._interval,
                "run_count": self._run_count,
                "failure_count": self._failure_count,
                "last_run": self._last_run.isoformat() if self._last_run else None,
                "last_error": self._last_error,
            }


__all__ = ["SyncScheduler", "RunCallback"]
