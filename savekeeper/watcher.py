"""File watcher for Save Keeper.

Watches a single file through two independent sources: watchdog push
notifications on the file's directory, and a fixed-interval poll that
compares ``stat`` signatures. Every raw trigger from either source
restarts a debounce timer; only the timer's expiry reports a change, so
a burst of writes produces one ``changed`` callback.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from savekeeper.errors import SourceMissingError

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT = 5.0

# Opened / closed-without-write events come from our own reads
_WRITE_EVENTS = frozenset({
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
})


def _normalise(path: str | bytes | Path) -> str:
    return os.path.normcase(os.path.abspath(os.fsdecode(path)))


class WatcherState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


class Debouncer:
    """Cancelable one-shot timer.

    ``schedule()`` (re)starts the countdown, cancelling any pending one;
    the callback runs once, after the last schedule call has been quiet
    for ``delay`` seconds.
    """

    def __init__(self, delay: float, callback: Callable[[], None]):
        self._delay = max(0.0, delay)
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self._delay, self._fire)
            timer.daemon = True
            timer.name = "Debounce"
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _fire(self) -> None:
        with self._lock:
            # A timer replaced while it was expiring must not fire
            if self._timer is not threading.current_thread():
                return
            self._timer = None
        try:
            self._callback()
        except Exception:
            logger.exception("Error in debounced callback")


class TargetFileHandler(FileSystemEventHandler):
    """Watchdog handler that reports write events touching one file."""

    def __init__(self, target: Path, on_trigger: Callable[[str], None]):
        super().__init__()
        self._target = _normalise(target)
        self._on_trigger = on_trigger

    def _touches_target(self, event: FileSystemEvent) -> bool:
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and _normalise(p) == self._target for p in paths)

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Forward create/modify/move/delete/close-after-write on the target."""
        if event.is_directory or event.event_type not in _WRITE_EVENTS:
            return
        if self._touches_target(event):
            self._on_trigger(f"push:{event.event_type}")


class ChangeWatcher:
    """Debounced push + poll watcher for a single file.

    Usage:
        watcher = ChangeWatcher(path, on_changed, on_removed, on_watch_error)
        watcher.start()
        ...
        watcher.stop()

    Callbacks run on the watcher's timer and poll threads.
    """

    def __init__(
        self,
        path: str | Path,
        on_changed: Callable[[Path], None],
        on_removed: Callable[[Path], None] | None = None,
        on_watch_error: Callable[[str], None] | None = None,
        poll_interval_ms: int = 2000,
        debounce_ms: int = 1000,
    ):
        """Create a watcher; nothing is observed until ``start()``."""
        self.path = Path(path).absolute()
        self._on_changed = on_changed
        self._on_removed = on_removed
        self._on_watch_error = on_watch_error
        self._poll_interval = max(1, poll_interval_ms) / 1000.0
        self._debouncer = Debouncer(debounce_ms / 1000.0, self._on_quiet)
        self._handler = TargetFileHandler(self.path, self._trigger)
        self._observer: Any | None = None
        self._poll_thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._state = WatcherState.STOPPED
        self._last_signature: tuple[int, int, int] | None = None
        self._removal_reported = False

    # ---- lifecycle ----

    def start(self) -> None:
        """Begin observing. Raises SourceMissingError if the file is absent."""
        with self._lifecycle_lock:
            if self._state is not WatcherState.STOPPED:
                logger.debug("Watcher for %s already started.", self.path)
                return
            if not self.path.is_file():
                logger.error("Watched file does not exist: %s", self.path)
                raise SourceMissingError(f"Watched file does not exist: {self.path}")

            self._state = WatcherState.STARTING
            self._stop.clear()
            self._removal_reported = False
            try:
                self._last_signature = self._signature()
            except OSError:
                self._last_signature = None
            self._start_observer()
            self._poll_thread = threading.Thread(
                target=self._poll, daemon=True, name="ChangeWatcherPoll"
            )
            self._poll_thread.start()
            self._state = WatcherState.RUNNING
        logger.info(
            "Watching '%s' (poll=%.1fs, debounce=%.1fs, push=%s)",
            self.path,
            self._poll_interval,
            self._debouncer.delay,
            self._observer is not None,
        )

    def _start_observer(self) -> None:
        observer = Observer()
        try:
            observer.schedule(self._handler, str(self.path.parent), recursive=False)
            observer.start()
        except OSError as exc:
            logger.warning(
                "Push notifications unavailable for %s (%s); polling only.",
                self.path, exc,
            )
            self._report_error(f"Push notifications unavailable: {exc}")
            return
        self._observer = observer

    def stop(self) -> None:
        """Cancel pending timers and release observers. Safe to call twice."""
        with self._lifecycle_lock:
            if self._state is WatcherState.STOPPED:
                return
            self._stop.set()
            self._debouncer.cancel()
            current = threading.current_thread()

            observer = self._observer
            self._observer = None
            if observer is not None:
                observer.stop()
                if observer is not current:
                    observer.join(timeout=_JOIN_TIMEOUT)

            poll_thread = self._poll_thread
            self._poll_thread = None
            if poll_thread is not None and poll_thread is not current:
                poll_thread.join(timeout=_JOIN_TIMEOUT)

            self._state = WatcherState.STOPPED
        logger.info("Watcher for %s stopped.", self.path)

    # ---- status ----

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._state is WatcherState.RUNNING

    @property
    def has_push_source(self) -> bool:
        """Return whether OS notifications are feeding the watcher."""
        return self._observer is not None and self._observer.is_alive()

    # ---- internals ----

    def _signature(self) -> tuple[int, int, int] | None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_size, st.st_mtime_ns)

    def _poll(self) -> None:
        """Raise a trigger whenever the file's stat signature moves."""
        while not self._stop.wait(timeout=self._poll_interval):
            try:
                signature = self._signature()
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", self.path, exc)
                self._report_error(f"Cannot stat {self.path}: {exc}")
                continue
            if signature != self._last_signature:
                self._last_signature = signature
                self._trigger("poll")

    def _trigger(self, source: str) -> None:
        if self._stop.is_set():
            return
        logger.debug("Trigger from %s for %s", source, self.path)
        self._debouncer.schedule()

    def _on_quiet(self) -> None:
        """Debounce expiry: report the burst as a change or a removal."""
        if self._stop.is_set():
            return
        if not self.path.exists():
            if not self._removal_reported:
                self._removal_reported = True
                logger.warning("Watched file disappeared: %s", self.path)
                self._emit(self._on_removed, self.path)
            return
        self._removal_reported = False
        logger.debug("Change settled for %s", self.path)
        self._emit(self._on_changed, self.path)

    def _report_error(self, message: str) -> None:
        self._emit(self._on_watch_error, message)

    @staticmethod
    def _emit(callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Error in watcher callback %r", callback)
