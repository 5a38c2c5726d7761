"""Shared type definitions for kfx_packager.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

# Filename suffix for artifacts gzipped upstream because they exceeded
# the artifact upload size limit.
COMPRESSION_MARKER = ".gz__"


class BuildStatus(str, Enum):
    """Status of a single target build."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OrchestrationStatus(str, Enum):
    """Overall status of a multi-target run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


@dataclass
class ArtifactFile:
    """Information about one produced package file."""

    path: Path
    size_bytes: int
    compressed: bool
    sha256: str | None = None
    marker: str = COMPRESSION_MARKER

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def logical_name(self) -> str:
        """Name of the artifact once the compression marker is stripped."""
        name = self.path.name
        if self.compressed:
            return name[: -len(self.marker)]
        return name


__all__ = [
    "COMPRESSION_MARKER",
    "ArtifactFile",
    "BuildStatus",
    "OrchestrationStatus",
]
