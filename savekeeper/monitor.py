"""
Monitoring session controller for Save Keeper.

Ties together the change watcher, the content fingerprinter and the
backup store: each settled change is fingerprinted, and real changes
are archived and trimmed to the retention limit. Activity is reported
to a single listener object owned by the controller.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from savekeeper.backup_store import BackupRecord, BackupStore
from savekeeper.config import MonitorConfig
from savekeeper.errors import (
    AlreadyRunningError,
    NotFoundError,
    SaveKeeperError,
    SourceMissingError,
)
from savekeeper.fingerprint import ContentFingerprinter
from savekeeper.watcher import ChangeWatcher

logger = logging.getLogger(__name__)

# Error kinds passed to MonitorListener.on_error
ERROR_NOT_FOUND = "not_found"
ERROR_IO = "io_failure"
ERROR_WATCH = "watch_error"

# Session states
STATE_STOPPED = "stopped"
STATE_RUNNING = "running"
STATE_ERROR = "error"


class MonitorListener(Protocol):
    """Callback interface for whoever presents session activity."""

    def on_started(self, path: Path) -> None:
        """A session began watching *path*."""
        ...

    def on_stopped(self) -> None:
        """The session ended."""
        ...

    def on_changed(self, path: Path) -> None:
        """A burst of writes to *path* settled."""
        ...

    def on_backup_created(self, record: BackupRecord) -> None:
        """A new backup was written."""
        ...

    def on_error(self, kind: str, message: str) -> None:
        """Something failed; *kind* is one of the ``ERROR_*`` constants."""
        ...


class NullListener:
    """Listener that ignores every event."""

    def on_started(self, path: Path) -> None:
        pass

    def on_stopped(self) -> None:
        pass

    def on_changed(self, path: Path) -> None:
        pass

    def on_backup_created(self, record: BackupRecord) -> None:
        pass

    def on_error(self, kind: str, message: str) -> None:
        pass


@dataclass
class MonitorSession:
    """State of the active (or last) monitoring session."""
    source_path: Path
    last_digest: str | None = None
    state: str = STATE_STOPPED
    last_error: str = ""
    last_check: datetime | None = None
    backups_created: int = 0

    @property
    def running(self) -> bool:
        return self.state == STATE_RUNNING


@dataclass(frozen=True)
class MonitorStatus:
    """Snapshot of a controller for status displays."""
    running: bool
    state: str
    source_path: str = ""
    last_digest: str | None = None
    last_error: str = ""
    last_check: datetime | None = None
    backups_created: int = 0
    pending_recheck: bool = False


WatcherFactory = Callable[..., Any]


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, NotFoundError):
        return ERROR_NOT_FOUND
    return ERROR_IO


class MonitorController:
    """
    Start/stop-able backup session for one file.

    Parameters
    ----------
    listener : MonitorListener, optional
        Receives lifecycle, backup and error events.
    fingerprinter : ContentFingerprinter, optional
        Shared by change detection and the backup store.
    watcher_factory : callable, optional
        Builds the watcher; called with the same arguments as
        :class:`ChangeWatcher`.
    """

    def __init__(
        self,
        listener: MonitorListener | None = None,
        fingerprinter: ContentFingerprinter | None = None,
        watcher_factory: WatcherFactory = ChangeWatcher,
    ):
        self._listener: MonitorListener = listener or NullListener()
        self._fingerprinter = fingerprinter or ContentFingerprinter()
        self._watcher_factory = watcher_factory
        self._config: MonitorConfig | None = None
        self._store: BackupStore | None = None
        self._watcher: Any | None = None
        self._session: MonitorSession | None = None
        # Guards session state and the single-flight flags
        self._state_lock = threading.RLock()
        # Serialises captures (create + evict), forced or change-driven
        self._capture_lock = threading.Lock()
        self._check_in_flight = False
        self._recheck_pending = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: MonitorConfig) -> None:
        """Start a session for ``config.source_path``.

        Raises AlreadyRunningError, ConfigError, SourceMissingError, or
        IOFailureError if the archive cannot be prepared.
        """
        with self._state_lock:
            session = self._session
            if session is not None and session.running:
                raise AlreadyRunningError(f"Already monitoring {session.source_path}")
            config.validate()
            source = Path(config.source_path).absolute()
            if not source.is_file():
                logger.error("Cannot start monitoring: %s does not exist.", source)
                raise SourceMissingError(f"Source file does not exist: {source}")

            store = BackupStore(
                config.archive_path,
                fingerprinter=self._fingerprinter,
                record_duplicates=config.record_duplicates,
            )
            session = MonitorSession(source_path=source)
            # last_digest only names archived content; the initial capture sets it
            initial_digest = self._fingerprinter.digest(source)
            logger.info("Initial digest of %s: %s", source, initial_digest)

            watcher = self._watcher_factory(
                source,
                on_changed=self._handle_changed,
                on_removed=self._handle_removed,
                on_watch_error=self._handle_watch_error,
                poll_interval_ms=config.poll_interval_ms,
                debounce_ms=config.debounce_ms,
            )
            watcher.start()

            self._config = config
            self._store = store
            self._watcher = watcher
            self._session = session
            self._check_in_flight = False
            self._recheck_pending = False
            session.state = STATE_RUNNING

        logger.info("Monitoring started for %s", source)
        self._emit("on_started", source)
        self._capture(observed_digest=initial_digest)

    def stop(self) -> None:
        """Stop the session. Safe to call when not running."""
        ended, watcher = self._end_session(STATE_STOPPED, "")
        if not ended:
            return
        if watcher is not None:
            watcher.stop()
        logger.info("Monitoring stopped.")
        self._emit("on_stopped")

    def _end_session(self, state: str, error: str) -> tuple[bool, Any | None]:
        """Mark the session ended; returns ``(ended, detached_watcher)``."""
        with self._state_lock:
            session = self._session
            if session is None or not session.running:
                return False, None
            session.state = state
            session.last_error = error
            watcher = self._watcher
            self._watcher = None
        return True, watcher

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        session = self._session
        return session is not None and session.running

    @property
    def store(self) -> BackupStore | None:
        """Backup store of the current (or last) session."""
        return self._store

    @property
    def config(self) -> MonitorConfig | None:
        return self._config

    def status(self) -> MonitorStatus:
        """Return a snapshot of the session for status displays."""
        with self._state_lock:
            session = self._session
            if session is None:
                return MonitorStatus(running=False, state=STATE_STOPPED)
            return MonitorStatus(
                running=session.running,
                state=session.state,
                source_path=str(session.source_path),
                last_digest=session.last_digest,
                last_error=session.last_error,
                last_check=session.last_check,
                backups_created=session.backups_created,
                pending_recheck=self._recheck_pending,
            )

    # ------------------------------------------------------------------
    # Explicit triggers
    # ------------------------------------------------------------------

    def force_backup(self) -> bool:
        """Capture the source now, whatever its digest.

        Returns True when an attempt was made, including one that turned
        out to duplicate the latest backup; False if not running or the
        capture failed.
        """
        if not self.is_running:
            logger.info("Not monitoring; cannot force a backup.")
            return False
        logger.info("Forced backup requested.")
        ok, _ = self._capture()
        return ok

    def force_check(self) -> bool:
        """Run the change check now. Returns False if not running."""
        if not self.is_running:
            logger.info("Not monitoring; cannot check for changes.")
            return False
        self._request_check()
        return True

    # ------------------------------------------------------------------
    # Watcher callbacks
    # ------------------------------------------------------------------

    def _handle_changed(self, path: Path) -> None:
        if not self.is_running:
            return
        self._emit("on_changed", path)
        self._request_check()

    def _handle_removed(self, path: Path) -> None:
        message = f"Watched file was removed: {path}"
        logger.error(message)
        ended, watcher = self._end_session(STATE_ERROR, message)
        if not ended:
            return
        self._emit("on_error", ERROR_NOT_FOUND, message)
        if watcher is not None:
            watcher.stop()
        self._emit("on_stopped")

    def _handle_watch_error(self, message: str) -> None:
        logger.warning("Watch error: %s", message)
        with self._state_lock:
            if self._session is not None:
                self._session.last_error = message
        self._emit("on_error", ERROR_WATCH, message)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _request_check(self) -> None:
        """Run change checks single-flight.

        A request that arrives mid-check is folded into one more pass by
        the thread already checking.
        """
        with self._state_lock:
            if self._check_in_flight:
                self._recheck_pending = True
                return
            self._check_in_flight = True
        try:
            while True:
                self._check_for_change()
                with self._state_lock:
                    if not self._recheck_pending or not self.is_running:
                        break
                    self._recheck_pending = False
        finally:
            with self._state_lock:
                self._check_in_flight = False
                self._recheck_pending = False

    def _check_for_change(self) -> None:
        session = self._session
        if session is None or not session.running:
            return
        session.last_check = datetime.now(timezone.utc)
        try:
            digest = self._fingerprinter.digest(session.source_path)
        except SaveKeeperError as exc:
            if not session.source_path.exists():
                # The watcher reports the removal itself
                logger.debug("Source vanished before fingerprinting: %s", exc)
                return
            self._report_error(_error_kind(exc), f"Change check failed: {exc}")
            return

        if digest == session.last_digest:
            logger.debug("Content of %s unchanged; skipping.", session.source_path)
            return
        logger.info("Content of %s changed.", session.source_path)
        self._capture(observed_digest=digest)

    def _capture(self, observed_digest: str | None = None) -> tuple[bool, BackupRecord | None]:
        """Create a backup and apply retention.

        Returns ``(ok, record)``; ``record`` is None for empty or duplicate
        content. ``last_digest`` only moves when creation succeeded.
        """
        session = self._session
        store = self._store
        config = self._config
        if session is None or store is None or config is None:
            return False, None

        with self._capture_lock:
            try:
                record = store.create(session.source_path)
            except SaveKeeperError as exc:
                logger.error("Backup of %s failed: %s", session.source_path, exc)
                self._report_error(_error_kind(exc), f"Backup failed: {exc}")
                return False, None

            if record is not None:
                session.last_digest = record.content_digest
                session.backups_created += 1
                try:
                    store.evict_overflow(config.max_backups)
                except SaveKeeperError as exc:
                    logger.error("Retention cleanup failed: %s", exc)
                    self._report_error(ERROR_IO, f"Retention cleanup failed: {exc}")
            elif observed_digest is not None:
                session.last_digest = observed_digest

        if record is not None and session.running:
            self._emit("on_backup_created", record)
        return True, record

    def _report_error(self, kind: str, message: str) -> None:
        with self._state_lock:
            if self._session is not None:
                self._session.last_error = message
        self._emit("on_error", kind, message)

    def _emit(self, name: str, *args: Any) -> None:
        try:
            getattr(self._listener, name)(*args)
        except Exception:
            logger.exception("Error in listener callback %s", name)
