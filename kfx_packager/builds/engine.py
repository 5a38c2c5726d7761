"""Container engine capability interface.

This module handles:
- The ContainerEngine interface consumed by TargetBuilder
- DockerEngine, which drives the `docker` CLI with subprocess
- Appending engine output to per-target log files

TargetBuilder only talks to ContainerEngine, so the orchestration logic
can be exercised with a test double instead of a real engine.
"""

from __future__ import annotations

import contextlib
import gzip
import logging
import os
import re
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

LOADED_IMAGE_PATTERN = re.compile(r"^Loaded image(?: ID)?: (?P<ref>\S+)\s*$", re.M)


class BuildError(Exception):
    """Raised when a container engine operation fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class ContainerEngine(ABC):
    """Operations TargetBuilder needs from a container engine."""

    @abstractmethod
    def build_image(
        self,
        recipe: Path,
        tag: str,
        build_args: Mapping[str, str],
        context: Path,
        log_path: Path | None = None,
    ) -> str:
        """Build an image from a recipe and return its reference."""

    @abstractmethod
    def save_image(self, ref: str, dest: Path, log_path: Path | None = None) -> Path:
        """Serialize an image to a gzipped tarball at dest."""

    @abstractmethod
    def load_image(self, blob: Path, log_path: Path | None = None) -> str:
        """Load a serialized image and return its reference."""

    @abstractmethod
    def create_container(self, ref: str, log_path: Path | None = None) -> str:
        """Create (but do not start) a container, returning its ID."""

    @abstractmethod
    def copy_from_container(
        self,
        container_id: str,
        src: str,
        dest: Path,
        log_path: Path | None = None,
    ) -> list[Path]:
        """Copy a directory out of a container, returning the copied files."""

    @abstractmethod
    def remove_container(self, container_id: str, log_path: Path | None = None) -> None:
        """Remove a container."""


def list_files(root: Path) -> list[Path]:
    """Return all regular files under root in sorted order."""
    if not root.exists():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file())


@contextlib.contextmanager
def _open_log(log_path: Path | None) -> Iterator[IO[str]]:
    if log_path is None:
        with open(os.devnull, "w") as devnull:
            yield devnull
        return
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a") as log_file:
        yield log_file


class DockerEngine(ContainerEngine):
    """ContainerEngine backed by the docker command line client."""

    def __init__(self, binary: str = "docker", timeout: int | None = None) -> None:
        self.binary = binary
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"<DockerEngine(binary='{self.binary}', timeout={self.timeout})>"

    def _run(
        self,
        args: list[str],
        log_path: Path | None,
        code: str,
        capture: bool = False,
    ) -> str:
        """Run one engine command, appending its output to the log.

        Args:
            args: Arguments after the engine binary.
            log_path: Log file to append to (None = discard).
            code: Error code used if the command fails.
            capture: Return stdout instead of only logging it.

        Returns:
            Captured stdout if capture is set, otherwise an empty string.

        Raises:
            BuildError: If the command fails, times out or cannot start.
        """
        cmd = [self.binary, *args]
        cmd_str = shlex.join(cmd)
        logger.debug("Executing: %s", cmd_str)

        with _open_log(log_path) as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {datetime.now(timezone.utc).isoformat()}\n")
            log_file.flush()

            try:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE if capture else log_file,
                    stderr=log_file if capture else subprocess.STDOUT,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                log_file.write(f"\n# TIMEOUT after {self.timeout} seconds\n")
                raise BuildError(
                    f"{args[0]} timed out after {self.timeout} seconds",
                    exit_code=-1,
                    code="timeout",
                ) from e
            except OSError as e:
                raise BuildError(
                    f"Failed to execute {self.binary}: {e}",
                    code="execution_error",
                ) from e

            stdout = (result.stdout or "") if capture else ""
            if stdout:
                log_file.write(stdout)
            log_file.write(f"\n# Exit code: {result.returncode}\n")

        if result.returncode != 0:
            message = f"{self.binary} {args[0]} failed with exit code {result.returncode}"
            logger.error("%s. See log: %s", message, log_path)
            raise BuildError(message, exit_code=result.returncode, code=code)
        return stdout

    def build_image(
        self,
        recipe: Path,
        tag: str,
        build_args: Mapping[str, str],
        context: Path,
        log_path: Path | None = None,
    ) -> str:
        args = ["build", "-t", tag, "-f", str(recipe)]
        for name in sorted(build_args):
            args.extend(["--build-arg", f"{name}={build_args[name]}"])
        args.append(str(context))
        logger.info("Building image %s from %s", tag, recipe)
        self._run(args, log_path, code="build_error")
        return tag

    def save_image(self, ref: str, dest: Path, log_path: Path | None = None) -> Path:
        """Stream `docker save` through gzip into dest."""
        cmd = [self.binary, "save", ref]
        logger.info("Saving image %s to %s", ref, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)

        with _open_log(log_path) as log_file:
            log_file.write(f"# Command: {shlex.join(cmd)} | gzip > {dest}\n")
            log_file.flush()
            try:
                with subprocess.Popen(
                    cmd, stdout=subprocess.PIPE, stderr=log_file
                ) as proc:
                    assert proc.stdout is not None
                    with gzip.open(dest, "wb") as out:
                        shutil.copyfileobj(proc.stdout, out)
                    returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                dest.unlink(missing_ok=True)
                raise BuildError(
                    f"save timed out after {self.timeout} seconds",
                    exit_code=-1,
                    code="timeout",
                ) from e
            except OSError as e:
                dest.unlink(missing_ok=True)
                raise BuildError(f"Failed to save image {ref}: {e}", code="save_failed") from e
            log_file.write(f"# Exit code: {returncode}\n")

        if returncode != 0:
            dest.unlink(missing_ok=True)
            raise BuildError(
                f"{self.binary} save failed with exit code {returncode}",
                exit_code=returncode,
                code="save_failed",
            )
        return dest

    def load_image(self, blob: Path, log_path: Path | None = None) -> str:
        output = self._run(
            ["load", "-i", str(blob)], log_path, code="image_load_failed", capture=True
        )
        matches = LOADED_IMAGE_PATTERN.findall(output)
        if not matches:
            raise BuildError(
                f"Could not determine loaded image from output: {output.strip()!r}",
                code="image_load_failed",
            )
        ref = matches[-1]
        logger.info("Loaded image %s from %s", ref, blob.name)
        return ref

    def create_container(self, ref: str, log_path: Path | None = None) -> str:
        output = self._run(["create", ref], log_path, code="extract_failed", capture=True)
        container_id = output.strip().splitlines()[-1] if output.strip() else ""
        if not container_id:
            raise BuildError(f"No container ID returned for {ref}", code="extract_failed")
        return container_id

    def copy_from_container(
        self,
        container_id: str,
        src: str,
        dest: Path,
        log_path: Path | None = None,
    ) -> list[Path]:
        dest.mkdir(parents=True, exist_ok=True)
        # Trailing "/." copies the directory contents rather than the directory
        source = f"{container_id}:{src.rstrip('/')}/."
        self._run(["cp", source, str(dest)], log_path, code="extract_failed")
        return list_files(dest)

    def remove_container(self, container_id: str, log_path: Path | None = None) -> None:
        self._run(["rm", "-f", container_id], log_path, code="cleanup_failed")


__all__ = [
    "BuildError",
    "ContainerEngine",
    "DockerEngine",
    "list_files",
]
