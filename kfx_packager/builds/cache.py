"""Single-slot cache for the intermediate (Xen) container image.

This module handles:
- Looking up the cached intermediate image by cache key
- Atomically replacing the cached image after a fresh build
- Evicting the cached image for forced rebuilds
- Serializing writers with a file lock

The cache only ever holds the most recent build: storing a new entry
evicts the previous one regardless of its key. Readers see the old entry,
no entry, or the new entry, never a partially written file.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from kfx_packager.builds.cache_key import key_digest

logger = logging.getLogger(__name__)

ENTRY_PREFIX = "xen-intermediate-"
ENTRY_SUFFIX = ".tar.gz"
TMP_PREFIX = ".tmp-"
LOCK_NAME = ".store.lock"

GZIP_MAGIC = b"\x1f\x8b"


class CacheCorruptError(Exception):
    """Raised when a cache entry exists but cannot be used."""

    def __init__(self, path: Path, reason: str, code: str = "cache_corrupt") -> None:
        super().__init__(f"Corrupt cache entry {path}: {reason}")
        self.path = path
        self.reason = reason
        self.code = code


class CacheStoreError(Exception):
    """Raised when the cache location cannot be written."""

    def __init__(self, message: str, code: str = "cache_store_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class CacheEntry:
    """The cached intermediate artifact for one cache key."""

    key: str
    artifact_path: Path
    created_at: datetime
    size_bytes: int


class IntermediateCache(ABC):
    """Interface for the single-slot intermediate image cache.

    Implementations are opened once per orchestration run and closed at
    the end; they may also be used as context managers.
    """

    def open(self) -> None:
        """Prepare the cache for use."""

    def close(self) -> None:
        """Release any resources held by the cache."""

    def __enter__(self) -> IntermediateCache:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @abstractmethod
    def lookup(self, key: str) -> CacheEntry | None:
        """Return the entry for key, or None on a miss."""

    @abstractmethod
    def store(self, key: str, artifact_path: Path) -> CacheEntry:
        """Replace the cached entry with artifact_path under key.

        The artifact file is moved into the cache and must not be used
        by the caller afterwards.
        """

    @abstractmethod
    def evict_all(self) -> int:
        """Remove every entry, returning the number removed."""

    @abstractmethod
    def current(self) -> CacheEntry | None:
        """Return whatever entry is currently cached, if any."""

    @abstractmethod
    def writer_lock(self) -> AbstractContextManager[None]:
        """Return a context manager guarding the build-and-store path.

        The lock is re-entrant within a thread; store() and evict_all()
        take it themselves.
        """


class FileIntermediateCache(IntermediateCache):
    """On-disk cache holding one gzipped `docker save` tarball."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        # Threads of this process queue here; the flock covers other processes
        self._thread_lock = threading.RLock()
        self._lock_depth = 0

    def __repr__(self) -> str:
        return f"<FileIntermediateCache(cache_dir='{self.cache_dir}')>"

    def entry_path(self, key: str) -> Path:
        """Return the on-disk path for a cache key."""
        return self.cache_dir / f"{ENTRY_PREFIX}{key_digest(key)}{ENTRY_SUFFIX}"

    def _entries(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(
            p
            for p in self.cache_dir.iterdir()
            if p.name.startswith(ENTRY_PREFIX) and p.name.endswith(ENTRY_SUFFIX)
        )

    def _ensure_dir(self) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheStoreError(
                f"Cannot create cache directory {self.cache_dir}: {e}"
            ) from e

    def open(self) -> None:
        """Create the cache directory and drop leftovers of killed writers.

        Temporary files are only removed when no other writer holds the
        lock, so an in-flight store in another process is left alone.
        """
        self._ensure_dir()

        lock_file = self.cache_dir / LOCK_NAME
        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                logger.debug("Cache writer active, skipping stale file cleanup")
                return
            try:
                for stale in self.cache_dir.glob(f"{TMP_PREFIX}*"):
                    logger.info("Removing stale partial cache file %s", stale.name)
                    stale.unlink(missing_ok=True)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _check_entry(self, path: Path) -> None:
        """Cheap integrity check of a cached tarball.

        Raises:
            CacheCorruptError: If the file is empty or not gzip data.
        """
        with path.open("rb") as f:
            header = f.read(len(GZIP_MAGIC))
        if not header:
            raise CacheCorruptError(path, "empty file")
        if header != GZIP_MAGIC:
            raise CacheCorruptError(path, "not gzip data")

    def _make_entry(self, key: str, path: Path) -> CacheEntry:
        st = path.stat()
        return CacheEntry(
            key=key,
            artifact_path=path,
            created_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
            size_bytes=st.st_size,
        )

    def lookup(self, key: str) -> CacheEntry | None:
        """Look up the cached entry for key.

        Corrupt entries are removed and reported as a miss; unreadable
        ones are reported as a miss and left in place.

        Args:
            key: Cache key from compute_key().

        Returns:
            CacheEntry on a hit, None otherwise.
        """
        path = self.entry_path(key)
        try:
            self._check_entry(path)
            entry = self._make_entry(key, path)
        except FileNotFoundError:
            logger.debug("Cache miss for key %s", key[:23])
            return None
        except CacheCorruptError as e:
            logger.warning("%s; treating as cache miss", e)
            self.discard(path)
            return None
        except OSError as e:
            logger.warning("Unreadable cache entry %s (%s); treating as miss", path, e)
            return None

        logger.info("Cache hit for key %s (%d bytes)", key[:23], entry.size_bytes)
        return entry

    def discard(self, path: Path) -> None:
        """Remove one cache file, ignoring a concurrent removal."""
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove cache file %s: %s", path, e)

    def store(self, key: str, artifact_path: Path) -> CacheEntry:
        """Atomically replace the cached entry.

        The artifact is first moved to a temporary name inside the cache
        directory, synced, then renamed over the final name once every
        previous entry has been evicted.

        Args:
            key: Cache key the artifact was built from.
            artifact_path: Path to the gzipped image tarball.

        Returns:
            The new CacheEntry.

        Raises:
            CacheStoreError: If the cache directory cannot be written.
        """
        with self.writer_lock():
            return self._store_locked(key, artifact_path)

    def _store_locked(self, key: str, artifact_path: Path) -> CacheEntry:
        final_path = self.entry_path(key)

        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=TMP_PREFIX, suffix=ENTRY_SUFFIX, dir=self.cache_dir
            )
            os.close(fd)
        except OSError as e:
            raise CacheStoreError(f"Cache directory not writable: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            shutil.move(str(artifact_path), str(tmp_path))
            with tmp_path.open("rb") as f:
                os.fsync(f.fileno())

            for old in self._entries():
                if old != final_path:
                    logger.info("Evicting previous cache entry %s", old.name)
                    self.discard(old)

            os.replace(tmp_path, final_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise CacheStoreError(f"Failed to store cache entry: {e}") from e

        entry = self._make_entry(key, final_path)
        logger.info("Stored cache entry %s (%d bytes)", final_path.name, entry.size_bytes)
        return entry

    def evict_all(self) -> int:
        """Remove all cached entries."""
        with self.writer_lock():
            entries = self._entries()
            for path in entries:
                self.discard(path)
        if entries:
            logger.info("Evicted %d cache entr(ies)", len(entries))
        return len(entries)

    def current(self) -> CacheEntry | None:
        """Return the currently cached entry, if any."""
        for path in self._entries():
            digest = path.name[len(ENTRY_PREFIX) : -len(ENTRY_SUFFIX)]
            try:
                return self._make_entry(f"sha256:{digest}", path)
            except FileNotFoundError:
                continue
        return None

    @contextmanager
    def writer_lock(self) -> Iterator[None]:
        self._ensure_dir()
        with self._thread_lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return

            with cache_lock(self.cache_dir):
                self._lock_depth = 1
                try:
                    yield
                finally:
                    self._lock_depth = 0


@contextmanager
def cache_lock(cache_dir: Path) -> Iterator[None]:
    """Acquire the exclusive writer lock for a cache directory.

    Uses a file-based lock so builders in other threads or processes
    sharing the directory serialize on the build-and-store path.

    Args:
        cache_dir: Cache directory holding the lock file.

    Yields:
        None when lock is acquired.

    Raises:
        CacheStoreError: If the lock file cannot be created.
    """
    cache_dir.mkdir(parents=True, exist_ok=True)
    lock_file = cache_dir / LOCK_NAME

    logger.debug("Acquiring cache writer lock in %s", cache_dir)

    try:
        fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        raise CacheStoreError(f"Cannot open cache lock {lock_file}: {e}") from e
    lock_acquired = False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        lock_acquired = True
        logger.debug("Cache writer lock acquired")
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Cache writer lock released")
        os.close(fd)


__all__ = [
    "CacheCorruptError",
    "CacheEntry",
    "CacheStoreError",
    "FileIntermediateCache",
    "IntermediateCache",
    "cache_lock",
]
