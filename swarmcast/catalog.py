"""
Local catalog of shared files, keyed by SHA-256 content hash.

The catalog is filled by scanning a directory (and by completed downloads)
and read concurrently by the chunk server and by query handling.
"""

import hashlib
import logging
import os
import threading
from dataclasses import dataclass

from typing_extensions import Iterable

from .config import SHARED_EXTENSIONS

logger = logging.getLogger(__name__)

HASH_BLOCK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class CatalogEntry:
    name: str
    size: int
    file_hash: str
    path: str


def compute_sha256(filepath: str) -> str:
    """Hex SHA-256 digest of a file, read in blocks."""
    digest = hashlib.sha256()
    with open(filepath, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


class Catalog:
    """Thread-safe map of content hash -> CatalogEntry."""

    def __init__(self, extensions: Iterable[str] = SHARED_EXTENSIONS):
        # An empty extension list shares every regular file
        self.extensions = tuple(e.lower() for e in extensions)
        self._entries: dict[str, CatalogEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def scan(self, directory: str) -> int:
        """Replace the catalog with the matching files in *directory*.

        Files that cannot be read are logged and skipped. Returns the
        number of entries indexed.
        """
        os.makedirs(directory, exist_ok=True)
        entries = {}
        for name in sorted(os.listdir(directory)):
            filepath = os.path.join(directory, name)
            if not os.path.isfile(filepath) or not self._wanted(name):
                continue
            try:
                entry = self._index(filepath)
            except OSError as e:
                logger.warning("Could not index %s: %s", filepath, e)
                continue
            entries[entry.file_hash] = entry
            logger.info("Indexed %s [%s]", entry.name, entry.file_hash)

        with self._lock:
            self._entries = entries
        return len(entries)

    def add_file(self, filepath: str, file_hash: str | None = None) -> CatalogEntry:
        """Register a single file, hashing it unless *file_hash* is given."""
        entry = self._index(filepath, file_hash)
        with self._lock:
            self._entries[entry.file_hash] = entry
        logger.info("Added %s [%s] to catalog", entry.name, entry.file_hash)
        return entry

    def get(self, file_hash: str) -> CatalogEntry | None:
        with self._lock:
            return self._entries.get(file_hash)

    def entries(self) -> list[CatalogEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.name.lower())

    def search(self, text: str) -> CatalogEntry | None:
        """First entry (by name) whose name contains *text*, ignoring case."""
        needle = text.lower()
        for entry in self.entries():
            if needle in entry.name.lower():
                return entry
        return None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _wanted(self, name: str) -> bool:
        return not self.extensions or name.lower().endswith(self.extensions)

    def _index(self, filepath: str, file_hash: str | None = None) -> CatalogEntry:
        return CatalogEntry(
            name=os.path.basename(filepath),
            size=os.path.getsize(filepath),
            file_hash=file_hash or compute_sha256(filepath),
            path=os.path.abspath(filepath),
        )
