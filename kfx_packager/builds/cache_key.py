"""Cache key computation for the intermediate build stage.

This module handles:
- Walking the tracked source paths in a deterministic order
- Hashing file content (not timestamps or other metadata)
- Producing a stable key for IntermediateCache lookups

Identical tracked content always yields the same key; any change to a
tracked file, including adding, removing or renaming one, yields a new key.
"""

from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Iterator, Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "2"

# Directory names never considered part of the tracked content
IGNORED_DIR_NAMES = frozenset({".git", ".hg", ".svn"})

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class InputUnavailableError(Exception):
    """Raised when a tracked source path is missing."""

    def __init__(self, path: Path, code: str = "input_unavailable") -> None:
        super().__init__(f"Tracked source path not found: {path}")
        self.path = path
        self.code = code


def _iter_tracked_files(path: Path) -> Iterator[Path]:
    """Yield files under path in sorted order, following directory links.

    Paths keep the name they were reached by. A directory whose real
    location was already walked is yielded once more as a link instead
    of being descended into, which stops link cycles.
    """
    if not path.is_dir():
        yield path
        return

    seen = {path.resolve()}
    for dirpath, dirnames, filenames in os.walk(path, followlinks=True):
        current = Path(dirpath)
        descend = []
        for name in sorted(dirnames):
            if name in IGNORED_DIR_NAMES:
                continue
            real = (current / name).resolve()
            if real in seen:
                yield current / name
                continue
            seen.add(real)
            descend.append(name)
        # Prune in place so os.walk descends deterministically
        dirnames[:] = descend
        for name in sorted(filenames):
            yield current / name


def _update_with_file(digest: "hashlib._Hash", file_path: Path) -> None:
    # Links to files are hashed by content; dangling links and links to
    # directories already walked by their target
    if file_path.is_symlink() and not file_path.is_file():
        target = os.readlink(file_path).encode("utf-8")
        digest.update(b"L")
        digest.update(len(target).to_bytes(8, "big"))
        digest.update(target)
        return

    digest.update(b"F")
    digest.update(file_path.stat().st_size.to_bytes(8, "big"))
    with file_path.open("rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            digest.update(chunk)


def compute_key(
    source_paths: Sequence[Path | str],
    root: Path | None = None,
) -> str:
    """Compute the cache key for a set of tracked source paths.

    Each file contributes its path relative to root and its content,
    both length-prefixed.

    Args:
        source_paths: Files or directories feeding the intermediate build.
        root: Base directory for relative source paths and for the
              relative names mixed into the digest. Defaults to cwd.

    Returns:
        Cache key as hex string (sha256:...).

    Raises:
        InputUnavailableError: If any source path does not exist.
    """
    if root is None:
        root = Path.cwd()

    resolved: list[Path] = []
    for source in source_paths:
        path = Path(source)
        if not path.is_absolute():
            path = root / path
        if not path.exists() and not path.is_symlink():
            raise InputUnavailableError(path)
        resolved.append(path)

    digest = hashlib.sha256()
    digest.update(f"kfx-cache-key:{CACHE_KEY_SCHEMA_VERSION}\n".encode())

    file_count = 0
    for path in sorted(resolved):
        for file_path in _iter_tracked_files(path):
            try:
                name = file_path.relative_to(root).as_posix()
            except ValueError:
                name = file_path.as_posix()
            encoded = name.encode("utf-8")
            digest.update(len(encoded).to_bytes(8, "big"))
            digest.update(encoded)
            _update_with_file(digest, file_path)
            file_count += 1

    key = f"sha256:{digest.hexdigest()}"
    logger.debug("Hashed %d tracked files into %s", file_count, key[:23])
    return key


def key_digest(key: str) -> str:
    """Return the bare hex digest of a cache key."""
    return key.split(":", 1)[-1]


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "InputUnavailableError",
    "compute_key",
    "key_digest",
]
