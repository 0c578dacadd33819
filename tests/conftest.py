import threading
import time
from pathlib import Path

import pytest

from savekeeper.backup_store import BackupStore
from savekeeper.config import MonitorConfig


def wait_until(predicate, timeout=5.0, interval=0.05):
    """Poll *predicate* until it is truthy or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class RecordingListener:
    """MonitorListener that keeps every event it receives."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def _add(self, *event):
        with self._lock:
            self.events.append(event)

    def on_started(self, path):
        self._add("started", path)

    def on_stopped(self):
        self._add("stopped")

    def on_changed(self, path):
        self._add("changed", path)

    def on_backup_created(self, record):
        self._add("backup_created", record)

    def on_error(self, kind, message):
        self._add("error", kind, message)

    def of(self, name):
        with self._lock:
            return [e for e in self.events if e[0] == name]


class FakeWatcher:
    """Stands in for ChangeWatcher; tests fire its callbacks by hand."""

    instances = []

    def __init__(self, path, on_changed, on_removed=None, on_watch_error=None,
                 poll_interval_ms=2000, debounce_ms=1000):
        self.path = Path(path)
        self.on_changed = on_changed
        self.on_removed = on_removed
        self.on_watch_error = on_watch_error
        self.poll_interval_ms = poll_interval_ms
        self.debounce_ms = debounce_ms
        self.started = False
        self.stop_calls = 0
        FakeWatcher.instances.append(self)

    def start(self):
        self.started = True

    def stop(self):
        self.started = False
        self.stop_calls += 1

    @property
    def is_running(self):
        return self.started

    def fire_changed(self):
        self.on_changed(self.path)

    def fire_removed(self):
        self.on_removed(self.path)

    def fire_watch_error(self, message):
        self.on_watch_error(message)


@pytest.fixture
def archive_dir(tmp_path):
    return tmp_path / "archive"


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "saves" / "slot1.sav"
    path.parent.mkdir()
    path.write_bytes(b"AAAA")
    return path


@pytest.fixture
def store(archive_dir):
    return BackupStore(archive_dir)


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def fake_watcher():
    FakeWatcher.instances.clear()
    yield FakeWatcher
    FakeWatcher.instances.clear()


@pytest.fixture
def monitor_config(source_file, archive_dir):
    return MonitorConfig(
        source_path=str(source_file),
        archive_path=str(archive_dir),
        poll_interval_ms=500,
        debounce_ms=100,
        max_backups=5,
    )
