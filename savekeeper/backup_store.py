"""
Backup archive for Save Keeper.

Owns one archive directory: byte-identical copies of the watched file
plus ``metadata.json``, the ledger naming which copies are live. Every
mutation reads the whole ledger, changes it, and writes it back under
one lock. The ledger is replaced atomically so a crash mid-write leaves
the previous version in place.

Restores copy the target aside first and roll it back if the restore
fails, so the target ends up either fully restored or untouched.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import secrets
import shutil
import tempfile
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from savekeeper.errors import (
    ArchiveMissingError,
    CopyFailedError,
    IOFailureError,
    LedgerWriteError,
    RecordNotFoundError,
    RestoreError,
    RestoreRollbackError,
    SaveKeeperError,
    SourceMissingError,
)
from savekeeper.fingerprint import ContentFingerprinter

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
_LEDGER_TMP_SUFFIX = ".tmp"
_RESTORE_ASIDE_SUFFIX = ".temp_backup"


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace(
        "+00:00", "Z"
    )


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class BackupRecord:
    """One archived copy of the watched file."""

    id: str
    original_file_name: str
    archive_file_name: str
    created_at: datetime
    size_bytes: int
    content_digest: str
    source_path: str
    supplementary_asset: str | None = None

    @property
    def timestamp_str(self) -> str:
        """Human-readable local time of the capture."""
        return self.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")

    def to_json(self) -> dict[str, Any]:
        """Return the ledger representation of this record."""
        return {
            "id": self.id,
            "originalFileName": self.original_file_name,
            "backupFileName": self.archive_file_name,
            "timestamp": _format_timestamp(self.created_at),
            "size": self.size_bytes,
            "hash": self.content_digest,
            "originalPath": self.source_path,
            "screenshot": self.supplementary_asset,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "BackupRecord":
        """Parse a ledger entry. Raises KeyError/TypeError/ValueError if malformed."""
        return cls(
            id=str(data["id"]),
            original_file_name=str(data["originalFileName"]),
            archive_file_name=str(data["backupFileName"]),
            created_at=_parse_timestamp(data["timestamp"]),
            size_bytes=int(data["size"]),
            content_digest=str(data["hash"]),
            source_path=str(data["originalPath"]),
            supplementary_asset=data.get("screenshot"),
        )


@dataclass(frozen=True)
class BackupStats:
    """Aggregate figures over the ledger."""
    total_backups: int = 0
    total_size: int = 0
    oldest: datetime | None = None
    newest: datetime | None = None


def newest_first(records: Iterable[BackupRecord]) -> list[BackupRecord]:
    """Sort *records* by ``created_at``, newest first.

    Records with equal timestamps keep ledger order reversed, so the one
    appended last counts as newest.
    """
    indexed = list(enumerate(records))
    indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
    return [rec for _, rec in indexed]


def select_retention(
    records: Iterable[BackupRecord], max_count: int
) -> tuple[list[BackupRecord], list[BackupRecord]]:
    """Split *records* into ``(keep, evict)``.

    ``keep`` holds the ``max_count`` newest records and ``evict`` the
    rest, both newest first.
    """
    if max_count < 1:
        raise ValueError(f"max_count must be >= 1 (got {max_count})")
    ordered = newest_first(records)
    return ordered[:max_count], ordered[max_count:]


def _discard(path: Path) -> None:
    """Delete *path*, logging rather than raising on failure."""
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not delete %s: %s", path, exc)


class BackupStore:
    """
    Archive directory plus its metadata ledger.

    Parameters
    ----------
    archive_dir : str or Path
        Directory holding the archive copies and ``metadata.json``.
        Created if absent.
    fingerprinter : ContentFingerprinter, optional
        Digest used for duplicate detection; SHA-256 by default.
    record_duplicates : bool
        If True, a capture identical to the latest backup still appends a
        ledger entry (its archive file is deleted straight away). If False
        the capture is dropped without touching the ledger.
    """

    def __init__(
        self,
        archive_dir: str | Path,
        fingerprinter: ContentFingerprinter | None = None,
        record_duplicates: bool = False,
    ):
        self.archive_dir = Path(archive_dir)
        self.metadata_path = self.archive_dir / METADATA_FILE
        self._fingerprinter = fingerprinter or ContentFingerprinter()
        self._record_duplicates = record_duplicates
        self._lock = threading.RLock()
        self._record_locks: dict[str, threading.Lock] = {}
        self._ensure_archive_dir()

    def _ensure_archive_dir(self) -> None:
        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create archive directory %s: %s", self.archive_dir, exc)
            raise IOFailureError(
                f"Cannot create archive directory {self.archive_dir}: {exc}"
            ) from exc
        if not self.metadata_path.exists():
            self._write_ledger([])
            logger.info("Created empty ledger at %s", self.metadata_path)

    # ---- ledger I/O ----

    def _read_ledger(self) -> list[BackupRecord]:
        """Return the ledger in stored order; a damaged ledger reads as empty."""
        if not self.metadata_path.exists():
            return []
        try:
            with open(self.metadata_path, encoding="utf-8") as fh:
                data = json.load(fh)
            entries = data["backups"]
            if not isinstance(entries, list):
                raise ValueError("'backups' is not a list")
            return [BackupRecord.from_json(entry) for entry in entries]
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Ledger %s is unreadable (%s); treating it as empty.",
                self.metadata_path, exc,
            )
            return []

    def _write_ledger(self, records: list[BackupRecord]) -> None:
        payload = {"backups": [rec.to_json() for rec in records]}
        tmp_path = self.metadata_path.with_name(METADATA_FILE + _LEDGER_TMP_SUFFIX)
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.metadata_path)
        except OSError as exc:
            logger.error("Failed to write ledger %s: %s", self.metadata_path, exc)
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise LedgerWriteError(f"Cannot write ledger: {exc}") from exc

    def _record_lock(self, record_id: str) -> threading.Lock:
        with self._lock:
            return self._record_locks.setdefault(record_id, threading.Lock())

    def _new_id(self, taken: set[str]) -> str:
        while True:
            record_id = f"backup_{int(time.time() * 1000)}_{secrets.token_hex(6)}"
            if record_id not in taken:
                return record_id

    # ---- queries ----

    def archive_path_for(self, record: BackupRecord) -> Path:
        """Return where *record*'s copy lives."""
        return self.archive_dir / record.archive_file_name

    def list(self) -> list[BackupRecord]:
        """Return every record, newest first."""
        with self._lock:
            return newest_first(self._read_ledger())

    def get(self, record_id: str) -> BackupRecord | None:
        """Return the record with *record_id*, or None."""
        with self._lock:
            for rec in self._read_ledger():
                if rec.id == record_id:
                    return rec
        return None

    def latest(self) -> BackupRecord | None:
        """Return the most recently created record, or None."""
        ordered = self.list()
        return ordered[0] if ordered else None

    def stats(self) -> BackupStats:
        """Return totals and the oldest/newest capture times."""
        records = self.list()
        if not records:
            return BackupStats()
        return BackupStats(
            total_backups=len(records),
            total_size=sum(rec.size_bytes for rec in records),
            oldest=records[-1].created_at,
            newest=records[0].created_at,
        )

    def orphaned_files(self) -> list[Path]:
        """Return archive files that no ledger record references."""
        with self._lock:
            live = {rec.archive_file_name for rec in self._read_ledger()}
            internal = {METADATA_FILE, METADATA_FILE + _LEDGER_TMP_SUFFIX}
            return sorted(
                p for p in self.archive_dir.iterdir()
                if p.is_file() and p.name not in live and p.name not in internal
            )

    # ---- mutations ----

    def create(self, source_path: str | Path) -> BackupRecord | None:
        """Archive the current content of *source_path*.

        Returns the new record, or None when the source is empty or its
        content matches the latest backup (unless duplicates are recorded).

        Raises SourceMissingError, CopyFailedError, ReadError or
        LedgerWriteError. A copy left behind by a failed ledger write is an
        unreferenced orphan.
        """
        source = Path(source_path).absolute()
        try:
            source_size = source.stat().st_size
        except FileNotFoundError as exc:
            raise SourceMissingError(f"Source file does not exist: {source}") from exc
        except OSError as exc:
            raise CopyFailedError(f"Cannot stat {source}: {exc}") from exc
        if not source.is_file():
            raise SourceMissingError(f"Source is not a file: {source}")
        if source_size == 0:
            logger.info("Source %s is empty; nothing to back up.", source)
            return None

        with self._lock:
            record_id = self._new_id({rec.id for rec in self._read_ledger()})
        archive_name = f"{record_id}_{source.name}"
        archive_file = self.archive_dir / archive_name
        created_at = datetime.now(timezone.utc)

        try:
            self.archive_dir.mkdir(parents=True, exist_ok=True)
            logger.debug("Copying %s -> %s (%d bytes)", source, archive_file, source_size)
            shutil.copy2(source, archive_file)
        except FileNotFoundError as exc:
            _discard(archive_file)
            raise SourceMissingError(f"Source vanished during copy: {source}") from exc
        except OSError as exc:
            _discard(archive_file)
            logger.error("Copy failed for %s: %s", source, exc)
            raise CopyFailedError(f"Cannot copy {source}: {exc}") from exc

        try:
            digest = self._fingerprinter.digest(archive_file)
            size = archive_file.stat().st_size
        except (SaveKeeperError, OSError):
            _discard(archive_file)
            raise
        if size == 0:
            # Truncated between stat and copy
            _discard(archive_file)
            logger.info("Source %s was emptied during capture; skipping.", source)
            return None

        record = BackupRecord(
            id=record_id,
            original_file_name=source.name,
            archive_file_name=archive_name,
            created_at=created_at,
            size_bytes=size,
            content_digest=digest,
            source_path=str(source),
        )

        with self._lock:
            records = self._read_ledger()
            ordered = newest_first(records)
            previous = ordered[0] if ordered else None
            if previous is not None and previous.content_digest == digest:
                _discard(archive_file)
                if not self._record_duplicates:
                    logger.info(
                        "Content unchanged since backup %s; skipping.", previous.id
                    )
                    return None
                logger.info(
                    "Content unchanged since backup %s; recording attempt %s "
                    "without an archive copy.",
                    previous.id, record.id,
                )
            records.append(record)
            self._write_ledger(records)

        logger.info(
            "Created backup %s of %s (%d bytes, %s…)",
            record.id, source, record.size_bytes, digest[:12],
        )
        return record

    def evict_overflow(self, max_count: int) -> list[BackupRecord]:
        """Keep the *max_count* newest records and delete the rest.

        Returns the evicted records. Archive files that cannot be deleted
        are logged and skipped; they stay behind as orphans.
        """
        if max_count < 1:
            raise ValueError(f"max_count must be >= 1 (got {max_count})")
        with self._lock:
            records = self._read_ledger()
            if len(records) <= max_count:
                return []
            keep, evict = select_retention(records, max_count)
            keep_ids = {rec.id for rec in keep}
            # Ledger first: a crash after this leaves orphans, never dangling records
            self._write_ledger([rec for rec in records if rec.id in keep_ids])
            for rec in evict:
                self._record_locks.pop(rec.id, None)
            for rec in evict:
                path = self.archive_path_for(rec)
                try:
                    path.unlink()
                except FileNotFoundError:
                    logger.debug("Evicted backup %s had no archive file.", rec.id)
                except OSError as exc:
                    logger.warning(
                        "Could not delete evicted backup file %s: %s", path, exc
                    )
        logger.info("Evicted %d old backup(s); %d retained.", len(evict), len(keep))
        return evict

    def delete(self, record_id: str) -> bool:
        """Delete a record and its archive file.

        Returns False if no such record exists. Raises only LedgerWriteError.
        """
        with self._record_lock(record_id):
            with self._lock:
                records = self._read_ledger()
                target = next((rec for rec in records if rec.id == record_id), None)
                if target is None:
                    return False
                self._write_ledger([rec for rec in records if rec.id != record_id])
                _discard(self.archive_path_for(target))
                self._record_locks.pop(record_id, None)
        logger.info("Deleted backup %s.", record_id)
        return True

    def restore(self, record_id: str, target_path: str | Path) -> BackupRecord:
        """Copy backup *record_id* over *target_path*.

        If the target exists it is copied aside first; when the restore
        copy fails the aside copy is put back and RestoreError raised.
        RestoreRollbackError means the rollback failed too and the target's
        state is unknown (the aside copy is kept and named in the error).
        """
        target = Path(target_path)
        with self._record_lock(record_id):
            record = self.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"No backup with id {record_id}")
            archive_file = self.archive_path_for(record)
            if not archive_file.is_file():
                raise ArchiveMissingError(
                    f"Archive file for {record_id} is missing: {archive_file}"
                )

            if target.exists():
                self._restore_over(archive_file, target)
            else:
                try:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(archive_file, target)
                except OSError as exc:
                    _discard(target)
                    logger.error("Restore of %s to %s failed: %s", record_id, target, exc)
                    raise RestoreError(f"Cannot restore to {target}: {exc}") from exc

        logger.info("Restored backup %s to %s", record_id, target)
        return record

    def _restore_over(self, archive_file: Path, target: Path) -> None:
        try:
            fd, aside_name = tempfile.mkstemp(
                dir=target.parent, prefix=target.name + ".", suffix=_RESTORE_ASIDE_SUFFIX
            )
        except OSError as exc:
            raise RestoreError(f"Cannot set aside {target}: {exc}") from exc
        os.close(fd)
        aside = Path(aside_name)
        try:
            shutil.copy2(target, aside)
        except OSError as exc:
            _discard(aside)
            raise RestoreError(f"Cannot set aside {target}: {exc}") from exc

        try:
            shutil.copyfile(archive_file, target)
        except OSError as exc:
            logger.error("Restore copy to %s failed (%s); rolling back.", target, exc)
            try:
                shutil.copy2(aside, target)
            except OSError as rollback_exc:
                logger.critical(
                    "Rollback of %s failed: %s. Original content kept at %s",
                    target, rollback_exc, aside,
                )
                raise RestoreRollbackError(
                    f"Restore to {target} failed and rollback failed: {rollback_exc}",
                    aside_path=str(aside),
                ) from rollback_exc
            _discard(aside)
            raise RestoreError(f"Cannot restore to {target}: {exc}") from exc

        _discard(aside)

    def attach_supplementary_asset(self, record_id: str, asset_ref: str | None) -> bool:
        """Link *asset_ref* (e.g. a screenshot path) to a record.

        Best effort: returns False instead of raising when the record is
        gone or the ledger cannot be written.
        """
        try:
            with self._lock:
                records = self._read_ledger()
                for index, rec in enumerate(records):
                    if rec.id != record_id:
                        continue
                    if rec.supplementary_asset != asset_ref:
                        records[index] = replace(rec, supplementary_asset=asset_ref)
                        self._write_ledger(records)
                    logger.debug("Attached %s to backup %s", asset_ref, record_id)
                    return True
        except SaveKeeperError as exc:
            logger.warning("Could not attach asset to backup %s: %s", record_id, exc)
            return False
        logger.warning("No backup %s to attach an asset to.", record_id)
        return False
