"""
Headless runner and archive maintenance commands for Save Keeper.

    python -m savekeeper run                 Watch the configured file (Ctrl-C to stop)
    python -m savekeeper backup              Back up the configured file once
    python -m savekeeper list                List backups, newest first
    python -m savekeeper restore ID [PATH]   Restore a backup (default: its original path)
    python -m savekeeper delete ID           Delete a backup
    python -m savekeeper stats               Show archive totals

Settings come from ``config.json`` in the application config directory.
"""

import logging
import logging.handlers
import signal
import sys
import threading
from pathlib import Path

from savekeeper import __app_name__, __version__
from savekeeper.backup_store import BackupRecord, BackupStore
from savekeeper.config import ConfigFile, MonitorConfig, get_log_path
from savekeeper.errors import RestoreRollbackError, SaveKeeperError
from savekeeper.monitor import STATE_ERROR, MonitorController

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: MonitorConfig, log_path: Path | None = None) -> None:
    """Configure rotating file log and stderr handler."""
    log_path = log_path or get_log_path()
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(_LOG_FORMAT)

    max_bytes = cfg.max_log_size_mb * 1024 * 1024
    fh = logging.handlers.RotatingFileHandler(
        str(log_path),
        maxBytes=max_bytes,
        backupCount=cfg.log_backup_count,
        encoding="utf-8",
    )
    fh.setLevel(level)
    fh.setFormatter(fmt)
    root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


class ConsoleListener:
    """Prints session activity for the foreground runner."""

    def on_started(self, path: Path) -> None:
        print(f"Watching {path}")

    def on_stopped(self) -> None:
        print("Monitoring stopped.")

    def on_changed(self, path: Path) -> None:
        logger.debug("Change settled: %s", path)

    def on_backup_created(self, record: BackupRecord) -> None:
        print(f"Backed up {record.original_file_name} as {record.id} ({record.size_bytes:,} bytes)")

    def on_error(self, kind: str, message: str) -> None:
        print(f"ERROR [{kind}]: {message}", file=sys.stderr)


def _open_store(cfg: MonitorConfig) -> BackupStore:
    return BackupStore(cfg.archive_path, record_duplicates=cfg.record_duplicates)


def _format_record(rec: BackupRecord) -> str:
    asset = f"  [{rec.supplementary_asset}]" if rec.supplementary_asset else ""
    return (
        f"{rec.id}  {rec.timestamp_str}  {rec.size_bytes:>12,}  "
        f"{rec.content_digest[:12]}  {rec.original_file_name}{asset}"
    )


# ======================================================================
# Commands
# ======================================================================

def _run_foreground(cfg: MonitorConfig) -> int:
    """Monitor until SIGINT/SIGTERM or until the watched file disappears."""
    finished = threading.Event()

    class _Listener(ConsoleListener):
        def on_stopped(self) -> None:
            super().on_stopped()
            finished.set()

    controller = MonitorController(listener=_Listener())
    controller.start(cfg)

    def _handler(sig, frame):
        finished.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    print(f"{__app_name__} running (press Ctrl-C to stop)…")
    while not finished.wait(timeout=1):
        pass
    status = controller.status()
    controller.stop()
    return 1 if status.state == STATE_ERROR else 0


def _cmd_backup(cfg: MonitorConfig) -> int:
    store = _open_store(cfg)
    record = store.create(cfg.source_path)
    if record is None:
        print("Nothing to back up (file empty or unchanged since the last backup).")
        return 0
    store.evict_overflow(cfg.max_backups)
    print(_format_record(record))
    return 0


def _cmd_list(cfg: MonitorConfig) -> int:
    records = _open_store(cfg).list()
    if not records:
        print("No backups.")
    for rec in records:
        print(_format_record(rec))
    return 0


def _cmd_restore(cfg: MonitorConfig, record_id: str, target: str | None = None) -> int:
    store = _open_store(cfg)
    record = store.get(record_id)
    destination = target or (record.source_path if record else cfg.source_path)
    store.restore(record_id, destination)
    print(f"Restored {record_id} to {destination}")
    return 0


def _cmd_delete(cfg: MonitorConfig, record_id: str) -> int:
    if _open_store(cfg).delete(record_id):
        print(f"Deleted {record_id}")
        return 0
    print(f"No backup with id {record_id}", file=sys.stderr)
    return 1


def _cmd_stats(cfg: MonitorConfig) -> int:
    stats = _open_store(cfg).stats()
    print(f"Backups:    {stats.total_backups}")
    print(f"Total size: {stats.total_size:,} bytes")
    if stats.oldest and stats.newest:
        print(f"Oldest:     {stats.oldest.astimezone():%Y-%m-%d %H:%M:%S}")
        print(f"Newest:     {stats.newest.astimezone():%Y-%m-%d %H:%M:%S}")
    return 0


# (handler, number of required args, number of optional args)
_COMMANDS = {
    "run": (_run_foreground, 0, 0),
    "backup": (_cmd_backup, 0, 0),
    "list": (_cmd_list, 0, 0),
    "restore": (_cmd_restore, 1, 1),
    "delete": (_cmd_delete, 1, 0),
    "stats": (_cmd_stats, 0, 0),
}

# Commands that need the watched file configured
_NEEDS_SOURCE = {"run", "backup"}


# ======================================================================
# CLI entry
# ======================================================================

def main(argv: list[str] | None = None, config_file: ConfigFile | None = None) -> int:
    """Dispatch a command; returns the process exit code."""
    args = list(sys.argv[1:] if argv is None else argv)
    cmd = args.pop(0) if args else ""

    if cmd not in _COMMANDS:
        _show_help()
        return 0 if cmd in ("", "help", "-h", "--help") else 2

    handler, required, optional = _COMMANDS[cmd]
    if not required <= len(args) <= required + optional:
        _show_help()
        return 2

    cfg = (config_file or ConfigFile()).config
    if cmd == "run":
        setup_logging(cfg)
        logger.info("%s %s starting.", __app_name__, __version__)
    if cmd in _NEEDS_SOURCE and not cfg.is_configured():
        print("ERROR: source_path is not configured.", file=sys.stderr)
        return 1

    try:
        return handler(cfg, *args)
    except RestoreRollbackError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        if exc.aside_path:
            print(f"       Original content kept at {exc.aside_path}", file=sys.stderr)
        return 1
    except SaveKeeperError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


def _show_help() -> None:
    print(f"{__app_name__} {__version__}")
    print()
    print("Usage:")
    print("  python -m savekeeper run                 Watch the configured file (Ctrl-C to stop)")
    print("  python -m savekeeper backup              Back up the configured file once")
    print("  python -m savekeeper list                List backups, newest first")
    print("  python -m savekeeper restore ID [PATH]   Restore a backup (default: original path)")
    print("  python -m savekeeper delete ID           Delete a backup")
    print("  python -m savekeeper stats               Show archive totals")


if __name__ == "__main__":
    sys.exit(main())
