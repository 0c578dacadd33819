"""Tests for the debounced file watcher."""

import threading
import time
from types import SimpleNamespace

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from conftest import wait_until
from savekeeper.errors import SourceMissingError
from savekeeper.watcher import (
    ChangeWatcher,
    Debouncer,
    TargetFileHandler,
    WatcherState,
)


class _Recorder:
    def __init__(self):
        self.changed = []
        self.removed = []
        self.errors = []
        self._lock = threading.Lock()

    def on_changed(self, path):
        with self._lock:
            self.changed.append(path)

    def on_removed(self, path):
        with self._lock:
            self.removed.append(path)

    def on_watch_error(self, message):
        with self._lock:
            self.errors.append(message)


def _make_watcher(path, recorder, poll_interval_ms=50, debounce_ms=200):
    return ChangeWatcher(
        path,
        on_changed=recorder.on_changed,
        on_removed=recorder.on_removed,
        on_watch_error=recorder.on_watch_error,
        poll_interval_ms=poll_interval_ms,
        debounce_ms=debounce_ms,
    )


@pytest.fixture
def recorder():
    return _Recorder()


@pytest.fixture
def watcher(source_file, recorder):
    w = _make_watcher(source_file, recorder)
    yield w
    w.stop()


class TestDebouncer:
    """Tests for the cancelable one-shot timer."""

    def test_fires_once_after_quiet_period(self):
        fired = []
        debouncer = Debouncer(0.1, lambda: fired.append(time.monotonic()))

        for _ in range(5):
            debouncer.schedule()
            time.sleep(0.02)

        assert wait_until(lambda: len(fired) == 1, timeout=2)
        time.sleep(0.3)
        assert len(fired) == 1
        assert not debouncer.pending

    def test_reschedule_restarts_countdown(self):
        fired = []
        debouncer = Debouncer(0.2, lambda: fired.append(1))

        debouncer.schedule()
        time.sleep(0.15)
        debouncer.schedule()
        time.sleep(0.1)

        assert fired == []
        assert wait_until(lambda: fired == [1], timeout=2)

    def test_cancel_prevents_fire(self):
        fired = []
        debouncer = Debouncer(0.1, lambda: fired.append(1))

        debouncer.schedule()
        assert debouncer.pending
        debouncer.cancel()
        time.sleep(0.3)

        assert fired == []
        assert not debouncer.pending

    def test_callback_error_is_contained(self):
        calls = []

        def _boom():
            calls.append(1)
            raise RuntimeError("listener bug")

        debouncer = Debouncer(0.01, _boom)
        debouncer.schedule()

        assert wait_until(lambda: calls == [1], timeout=2)
        debouncer.schedule()
        assert wait_until(lambda: calls == [1, 1], timeout=2)


class TestTargetFileHandler:
    """Tests for the watchdog event filter."""

    def _handler(self, target):
        triggers = []
        return TargetFileHandler(target, triggers.append), triggers

    def test_modification_of_target(self, source_file):
        handler, triggers = self._handler(source_file)

        handler.dispatch(FileModifiedEvent(str(source_file)))

        assert triggers == ["push:modified"]

    def test_other_file_ignored(self, source_file):
        handler, triggers = self._handler(source_file)

        handler.dispatch(FileModifiedEvent(str(source_file.parent / "other.sav")))

        assert triggers == []

    def test_directory_event_ignored(self, source_file):
        handler, triggers = self._handler(source_file)

        handler.dispatch(DirModifiedEvent(str(source_file.parent)))

        assert triggers == []

    def test_atomic_replace_onto_target(self, source_file):
        handler, triggers = self._handler(source_file)

        handler.dispatch(FileMovedEvent(str(source_file) + ".tmp", str(source_file)))

        assert triggers == ["push:moved"]

    def test_deletion_of_target(self, source_file):
        handler, triggers = self._handler(source_file)

        handler.dispatch(FileDeletedEvent(str(source_file)))

        assert triggers == ["push:deleted"]

    def test_read_only_access_ignored(self, source_file):
        handler, triggers = self._handler(source_file)
        opened = SimpleNamespace(
            event_type="opened", src_path=str(source_file), is_directory=False
        )

        handler.on_any_event(opened)

        assert triggers == []


class TestChangeWatcher:
    """Tests for ChangeWatcher."""

    def test_start_missing_file_raises(self, tmp_path, recorder):
        w = _make_watcher(tmp_path / "missing.sav", recorder)

        with pytest.raises(SourceMissingError):
            w.start()
        assert w.state is WatcherState.STOPPED

    def test_start_and_stop(self, watcher):
        assert watcher.state is WatcherState.STOPPED

        watcher.start()
        assert watcher.is_running

        watcher.stop()
        assert watcher.state is WatcherState.STOPPED
        assert not watcher.is_running

    def test_stop_is_idempotent(self, watcher):
        watcher.stop()
        watcher.start()
        watcher.stop()
        watcher.stop()

        assert watcher.state is WatcherState.STOPPED

    def test_burst_produces_one_change(self, watcher, recorder, source_file):
        watcher.start()
        time.sleep(0.2)

        source_file.write_bytes(b"X1")
        source_file.write_bytes(b"X22")
        source_file.write_bytes(b"X")

        assert wait_until(lambda: len(recorder.changed) >= 1, timeout=3)
        time.sleep(0.6)
        assert recorder.changed == [source_file.absolute()]
        assert recorder.removed == []

    def test_separate_bursts_produce_separate_changes(self, watcher, recorder, source_file):
        watcher.start()
        time.sleep(0.2)

        source_file.write_bytes(b"first")
        assert wait_until(lambda: len(recorder.changed) == 1, timeout=3)
        time.sleep(0.3)
        source_file.write_bytes(b"second!")
        assert wait_until(lambda: len(recorder.changed) == 2, timeout=3)

    def test_removal_reported_once(self, watcher, recorder, source_file):
        watcher.start()
        time.sleep(0.2)

        source_file.unlink()

        assert wait_until(lambda: len(recorder.removed) == 1, timeout=3)
        time.sleep(0.5)
        assert recorder.removed == [source_file.absolute()]
        assert recorder.changed == []

    def test_stop_cancels_pending_change(self, watcher, recorder, source_file):
        watcher.start()
        time.sleep(0.2)

        source_file.write_bytes(b"changed")
        time.sleep(0.1)
        watcher.stop()
        time.sleep(0.5)

        assert recorder.changed == []

    def test_poll_only_when_push_unavailable(self, source_file, recorder, monkeypatch):
        class _BrokenObserver:
            def schedule(self, *args, **kwargs):
                raise OSError("inotify watch limit reached")

        monkeypatch.setattr("savekeeper.watcher.Observer", _BrokenObserver)
        w = _make_watcher(source_file, recorder)
        try:
            w.start()
            assert w.is_running
            assert not w.has_push_source
            assert len(recorder.errors) == 1

            time.sleep(0.1)
            source_file.write_bytes(b"polled change")

            assert wait_until(lambda: len(recorder.changed) == 1, timeout=3)
        finally:
            w.stop()

    def test_stat_failure_reports_watch_error(self, watcher, recorder, monkeypatch):
        watcher.start()

        def _denied():
            raise PermissionError("permission denied")

        monkeypatch.setattr(watcher, "_signature", _denied)

        assert wait_until(lambda: len(recorder.errors) >= 1, timeout=3)
        assert watcher.is_running
        assert "permission denied" in recorder.errors[0]

    def test_callback_error_does_not_kill_watcher(self, source_file):
        seen = []

        def _bad_callback(path):
            seen.append(path)
            raise RuntimeError("boom")

        w = ChangeWatcher(source_file, on_changed=_bad_callback,
                          poll_interval_ms=50, debounce_ms=100)
        try:
            w.start()
            time.sleep(0.2)
            source_file.write_bytes(b"one")
            assert wait_until(lambda: len(seen) == 1, timeout=3)
            time.sleep(0.3)
            source_file.write_bytes(b"two!")
            assert wait_until(lambda: len(seen) == 2, timeout=3)
        finally:
            w.stop()
