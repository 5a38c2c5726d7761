"""Artifact normalization and discovery.

This module handles:
- Decompressing artifacts that were gzipped upstream (``*.gz__``)
- Flattening per-target output directories into one directory
- Removing directories left empty afterwards
- Listing the final artifacts with size and checksum

Normalizing an already-normalized tree changes nothing.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import shutil
import zlib
from dataclasses import dataclass, field
from pathlib import Path

from kfx_packager.types import COMPRESSION_MARKER, ArtifactFile

logger = logging.getLogger(__name__)

# Default chunk size for hashing and decompression
CHUNK_SIZE = 64 * 1024  # 64KB

PARTIAL_PREFIX = ".partial-"


class DecompressionError(Exception):
    """Raised when a marked artifact cannot be decompressed."""

    def __init__(self, path: Path, reason: str, code: str = "decompression_error") -> None:
        super().__init__(f"Failed to decompress {path}: {reason}")
        self.path = path
        self.reason = reason
        self.code = code


@dataclass
class NormalizeReport:
    """What a normalize() pass did.

    Attributes:
        final_root: Directory holding the flattened artifacts.
        decompressed: Paths produced by decompressing marked files.
        moved: Destination paths of files moved into final_root.
        collisions: Files left in place because final_root already had
                    a file of the same name.
        diagnostics: Messages for files that could not be processed.
        artifacts: Artifacts directly under final_root after the pass.
    """

    final_root: Path
    decompressed: list[Path] = field(default_factory=list)
    moved: list[Path] = field(default_factory=list)
    collisions: list[Path] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    artifacts: list[ArtifactFile] = field(default_factory=list)


def compute_file_hash(file_path: Path, chunk_size: int = CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def is_compressed(path: Path, marker: str = COMPRESSION_MARKER) -> bool:
    """Return True if the filename carries the compression marker."""
    return path.name.endswith(marker) and len(path.name) > len(marker)


def decompress_artifact(path: Path, marker: str = COMPRESSION_MARKER) -> Path:
    """Replace a marked gzip artifact with its decompressed content.

    ``pkg.deb.gz__`` becomes ``pkg.deb``. Content is written to a
    temporary sibling first, so the marked file is left untouched on
    any failure.

    Args:
        path: Marked artifact.
        marker: Compression marker suffix.

    Returns:
        Path of the decompressed artifact.

    Raises:
        DecompressionError: If the content is not valid gzip data or
                            the unmarked name is already taken.
    """
    target = path.with_name(path.name[: -len(marker)])
    if target.exists():
        raise DecompressionError(path, f"{target.name} already exists")

    partial = path.with_name(f"{PARTIAL_PREFIX}{target.name}")
    try:
        with gzip.open(path, "rb") as src, partial.open("wb") as dst:
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
    except (OSError, EOFError, zlib.error) as e:
        partial.unlink(missing_ok=True)
        raise DecompressionError(path, str(e) or type(e).__name__) from e

    os.replace(partial, target)
    path.unlink()
    return target


def discover_artifacts(
    root: Path,
    marker: str = COMPRESSION_MARKER,
    with_hash: bool = True,
) -> list[ArtifactFile]:
    """List the artifact files directly under root.

    Args:
        root: Directory to scan (not recursive).
        marker: Compression marker suffix.
        with_hash: Compute SHA-256 for each file.

    Returns:
        ArtifactFile entries sorted by name.
    """
    if not root.is_dir():
        logger.warning("Artifact directory does not exist: %s", root)
        return []

    artifacts: list[ArtifactFile] = []
    for path in sorted(root.iterdir()):
        if not path.is_file() or path.name.startswith(PARTIAL_PREFIX):
            continue
        artifacts.append(
            ArtifactFile(
                path=path,
                size_bytes=path.stat().st_size,
                compressed=is_compressed(path, marker),
                sha256=compute_file_hash(path) if with_hash else None,
                marker=marker,
            )
        )
    return artifacts


def remove_empty_dirs(root: Path, keep: set[Path] | None = None) -> list[Path]:
    """Remove empty directories below root, deepest first.

    root itself and any directory in keep are never removed.

    Returns:
        The removed directories.
    """
    protected = {root, *(keep or set())}
    removed: list[Path] = []
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        current = Path(dirpath)
        if current in protected:
            continue
        if not any(current.iterdir()):
            current.rmdir()
            removed.append(current)
    return removed


class ArtifactNormalizer:
    """Flattens raw per-target build output into one directory."""

    def __init__(self, marker: str = COMPRESSION_MARKER) -> None:
        self.marker = marker

    def normalize(self, raw_root: Path, final_root: Path | None = None) -> NormalizeReport:
        """Normalize a raw output tree.

        Marked files are decompressed in place first; then every
        unmarked file is moved into final_root. On a name collision the
        file already in final_root (or moved there earlier in sorted
        order) is kept and the later one is left where it is.

        Args:
            raw_root: Root of the raw output tree.
            final_root: Flat output directory (defaults to raw_root).

        Returns:
            NormalizeReport describing the pass.

        Raises:
            FileNotFoundError: If raw_root does not exist.
        """
        if not raw_root.is_dir():
            raise FileNotFoundError(f"Raw output directory not found: {raw_root}")
        if final_root is None:
            final_root = raw_root
        final_root.mkdir(parents=True, exist_ok=True)
        report = NormalizeReport(final_root=final_root)

        marked = sorted(
            p
            for p in raw_root.rglob(f"*{self.marker}")
            if p.is_file() and is_compressed(p, self.marker)
        )
        for path in marked:
            try:
                restored = decompress_artifact(path, self.marker)
            except DecompressionError as e:
                logger.warning("%s; leaving it as-is", e)
                report.diagnostics.append(str(e))
                continue
            logger.info("Decompressed %s -> %s", path.name, restored.name)
            report.decompressed.append(restored)

        candidates = sorted(
            p
            for p in raw_root.rglob("*")
            if p.is_file()
            and not is_compressed(p, self.marker)
            and not p.name.startswith(PARTIAL_PREFIX)
        )
        for path in candidates:
            dest = final_root / path.name
            if path == dest:
                continue
            if dest.exists():
                # TODO: confirm whether colliding package names across
                # targets should fail the run instead of keeping the first
                logger.warning(
                    "Artifact name collision: keeping %s, leaving %s in place",
                    dest,
                    path,
                )
                report.collisions.append(path)
                continue
            shutil.move(str(path), str(dest))
            report.moved.append(dest)

        removed = remove_empty_dirs(raw_root, keep={final_root})
        if removed:
            logger.debug("Removed %d empty director(ies)", len(removed))

        report.artifacts = discover_artifacts(final_root, self.marker)
        logger.info(
            "Normalized %s: %d artifact(s), %d decompressed, %d moved",
            final_root,
            len(report.artifacts),
            len(report.decompressed),
            len(report.moved),
        )
        return report


__all__ = [
    "COMPRESSION_MARKER",
    "ArtifactNormalizer",
    "DecompressionError",
    "NormalizeReport",
    "compute_file_hash",
    "decompress_artifact",
    "discover_artifacts",
    "is_compressed",
    "remove_empty_dirs",
]
