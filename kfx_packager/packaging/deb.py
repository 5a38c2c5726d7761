"""Debian package generation.

This module handles:
- Rendering and parsing DEBIAN/control files
- Listing configuration files under etc/ for DEBIAN/conffiles
- Computing the Installed-Size of a staged tree
- Running dpkg-deb to produce the .deb archive
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_MAINTAINER = "Unmaintained <unmaintained@example.com>"

# Control fields in the order dpkg writes them
_FIELD_ORDER = (
    ("Package", "package"),
    ("Source", "source"),
    ("Version", "version"),
    ("Architecture", "architecture"),
    ("Maintainer", "maintainer"),
    ("Depends", "depends"),
    ("Conflicts", "conflicts"),
    ("Section", "section"),
    ("Priority", "priority"),
    ("Installed-Size", "installed_size"),
    ("Description", "description"),
)
_LIST_FIELDS = {"depends", "conflicts"}


class PackagingError(Exception):
    """Raised when a package cannot be produced."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "packaging_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class DebControl(BaseModel):
    """Contents of a DEBIAN/control file.

    Attributes:
        package: Binary package name.
        source: Source package name.
        version: Package version.
        architecture: dpkg architecture (e.g., 'amd64').
        maintainer: Maintainer name and address.
        depends: Dependency alternatives, one entry per relation.
        conflicts: Conflicting packages.
        section: Archive section.
        priority: Package priority.
        installed_size: Installed size in KiB.
        description: One-line description.
    """

    model_config = ConfigDict(extra="forbid")

    package: str
    source: str
    version: str
    architecture: str = "amd64"
    maintainer: str = DEFAULT_MAINTAINER
    depends: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    section: str = "admin"
    priority: str = "optional"
    installed_size: int = Field(default=0, ge=0)
    description: str = ""

    @field_validator("package", "source")
    @classmethod
    def validate_package_name(cls, v: str) -> str:
        """Validate Debian package name rules."""
        if len(v) < 2 or not v[0].isalnum() or v != v.lower():
            raise ValueError(f"invalid package name '{v}'")
        if any(not (c.isalnum() or c in "+-.") for c in v):
            raise ValueError(f"invalid package name '{v}'")
        return v

    def to_control(self) -> str:
        """Render the control file text (with trailing newline)."""
        lines: list[str] = []
        for label, attr in _FIELD_ORDER:
            value = getattr(self, attr)
            if attr in _LIST_FIELDS:
                if not value:
                    continue
                value = ", ".join(value)
            lines.append(f"{label}: {value}")
        return "\n".join(lines) + "\n"

    @classmethod
    def from_control(cls, text: str) -> DebControl:
        """Parse control file text.

        Unknown fields and continuation lines are ignored.

        Raises:
            pydantic.ValidationError: If required fields are missing.
        """
        attrs = {label.lower(): attr for label, attr in _FIELD_ORDER}
        data: dict[str, object] = {}
        for line in text.splitlines():
            if not line or line[0].isspace() or ":" not in line:
                continue
            label, _, value = line.partition(":")
            attr = attrs.get(label.strip().lower())
            if attr is None:
                continue
            value = value.strip()
            if attr in _LIST_FIELDS:
                data[attr] = [v.strip() for v in value.split(",") if v.strip()]
            elif attr == "installed_size":
                data[attr] = int(value)
            else:
                data[attr] = value
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: Path) -> DebControl:
        """Parse a control file from disk."""
        return cls.from_control(path.read_text(encoding="utf-8"))


def deb_file_name(package: str, version: str, distro_version: str, arch: str) -> str:
    """Return the conventional output name, e.g. kfx_1.0-22.04-amd64.deb."""
    return f"{package}_{version}-{distro_version}-{arch}.deb"


def dir_size_kb(path: Path) -> int:
    """Return the apparent size of a tree in KiB, rounded up."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            file_path = Path(dirpath) / name
            if not file_path.is_symlink():
                total += file_path.stat().st_size
    return (total + 1023) // 1024


def collect_conffiles(staged_dir: Path) -> list[str]:
    """List every file under etc/ as an absolute /etc path."""
    etc_dir = staged_dir / "etc"
    if not etc_dir.is_dir():
        return []
    return sorted(
        "/etc/" + p.relative_to(etc_dir).as_posix()
        for p in etc_dir.rglob("*")
        if p.is_file()
    )


def _write(path: Path, content: str | bytes, mode: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        path.write_text(content, encoding="utf-8")
    else:
        path.write_bytes(content)
    path.chmod(mode)


def build_deb(
    staged_dir: Path,
    control: DebControl,
    output_path: Path,
    postinst: str | bytes | None = None,
    postrm: str | bytes | None = None,
    dpkg_deb: str = "dpkg-deb",
    timeout: int | None = None,
) -> Path:
    """Produce a .deb archive from a staged filesystem tree.

    Writes DEBIAN/control (with Installed-Size computed from the tree
    when not set), DEBIAN/conffiles and the maintainer hook scripts,
    then runs ``dpkg-deb --build -z0``.

    Args:
        staged_dir: Root of the filesystem tree to package.
        control: Control metadata.
        output_path: Path of the .deb to write.
        postinst: Optional postinst script.
        postrm: Optional postrm script.
        dpkg_deb: dpkg-deb executable.
        timeout: Command timeout in seconds (None = no timeout).

    Returns:
        output_path.

    Raises:
        PackagingError: If the staged tree is missing or dpkg-deb fails.
    """
    if not staged_dir.is_dir():
        raise PackagingError(
            f"Staged directory does not exist: {staged_dir}", code="staged_dir_missing"
        )

    debian_dir = staged_dir / "DEBIAN"
    debian_dir.mkdir(exist_ok=True)

    if postinst is not None:
        _write(debian_dir / "postinst", postinst, 0o755)
    if postrm is not None:
        _write(debian_dir / "postrm", postrm, 0o755)

    conffiles = collect_conffiles(staged_dir)
    if conffiles:
        _write(debian_dir / "conffiles", "\n".join(conffiles) + "\n", 0o644)

    if control.installed_size == 0:
        control = control.model_copy(update={"installed_size": dir_size_kb(staged_dir)})
    _write(debian_dir / "control", control.to_control(), 0o644)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [dpkg_deb, "--root-owner-group", "--build", "-z0", str(staged_dir), str(output_path)]
    logger.info("Creating %s (%s %s)", output_path.name, control.package, control.version)
    logger.debug("Executing: %s", shlex.join(cmd))

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise PackagingError(
            f"dpkg-deb timed out after {timeout}s", exit_code=-1, code="timeout"
        ) from e
    except OSError as e:
        raise PackagingError(
            f"Failed to run dpkg-deb: {e}", code="execution_error"
        ) from e

    if result.returncode != 0:
        logger.error("Failed to build deb package: %s", result.stderr.strip())
        logger.error("Deb control file:\n%s", control.to_control())
        raise PackagingError(
            f"dpkg-deb failed: {result.stderr.strip()}",
            exit_code=result.returncode,
            code="dpkg_deb_failed",
        )

    logger.info("Created deb at %s", output_path)
    return output_path


__all__ = [
    "DEFAULT_MAINTAINER",
    "DebControl",
    "PackagingError",
    "build_deb",
    "collect_conffiles",
    "deb_file_name",
    "dir_size_kb",
]
