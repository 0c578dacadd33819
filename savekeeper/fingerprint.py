"""Content fingerprinting for Save Keeper.

A fingerprint is the hex SHA-256 digest of a file's bytes. It decides
whether a detected change is a real change and whether a fresh capture
duplicates the latest backup.
"""

import hashlib
import logging
from pathlib import Path

from savekeeper.errors import ReadError

logger = logging.getLogger(__name__)

_HASH_CHUNK = 256 * 1024  # 256 KiB read chunks for hashing


class ContentFingerprinter:
    """Streams files through a hash and returns the hex digest."""

    def __init__(self, algorithm: str = "sha256", chunk_size: int = _HASH_CHUNK):
        # Fail at construction, not on the first file
        hashlib.new(algorithm)
        self.algorithm = algorithm
        self._chunk_size = chunk_size

    def digest(self, path: str | Path) -> str:
        """Return the hex digest of *path*.

        Raises :class:`ReadError` if the file cannot be opened or a read
        fails part-way; no digest is produced from a partial read.
        """
        h = hashlib.new(self.algorithm)
        try:
            with open(path, "rb") as fh:
                while chunk := fh.read(self._chunk_size):
                    h.update(chunk)
        except OSError as exc:
            logger.debug("Fingerprint failed for %s: %s", path, exc)
            raise ReadError(f"Cannot read {path}: {exc}") from exc
        return h.hexdigest()
