"""Per-target build driver.

This module handles one distribution target end to end:
- Computing the cache key of the tracked Xen sources
- Reusing the cached intermediate image or building and caching it
- Building the final image for the target on top of the intermediate
- Copying the produced packages out of a temporary container
- Removing the temporary container whether or not extraction worked

Failures are reported in the returned BuildResult rather than raised,
except for cache store failures which abort the whole run.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from kfx_packager.builds.cache_key import InputUnavailableError, compute_key, key_digest
from kfx_packager.builds.engine import BuildError
from kfx_packager.types import BuildStatus

if TYPE_CHECKING:
    from kfx_packager.builds.cache import CacheEntry, IntermediateCache
    from kfx_packager.builds.engine import ContainerEngine
    from kfx_packager.config import Settings
    from kfx_packager.targets.schema import TargetSchema

logger = logging.getLogger(__name__)

# Proxy settings forwarded from the host into every container build
PROXY_VARIABLES = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "no_proxy",
)

DIAGNOSTIC_TAIL_LINES = 40


@dataclass
class BuildResult:
    """Outcome of building one target.

    Attributes:
        target: The target that was built.
        status: succeeded or failed.
        output_files: Files extracted from the final image, sorted.
        diagnostics: Error message and log tail when the build failed.
        cache_key: Key of the tracked sources, if it could be computed.
        cache_hit: Whether the intermediate image came from the cache.
        error_code: Machine-readable error code when failed.
        log_path: Per-target engine log.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    target: TargetSchema
    status: BuildStatus
    output_files: list[Path] = field(default_factory=list)
    diagnostics: str = ""
    cache_key: str | None = None
    cache_hit: bool = False
    error_code: str | None = None
    log_path: Path | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCEEDED


def proxy_build_args(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect proxy variables set in the environment as build args."""
    if environ is None:
        environ = os.environ
    return {name: environ[name] for name in PROXY_VARIABLES if environ.get(name)}


def read_log_tail(log_path: Path | None, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    """Return the last lines of a log file, or an empty string."""
    if log_path is None or not log_path.exists():
        return ""
    try:
        content = log_path.read_text(errors="replace").splitlines()
    except OSError:
        return ""
    return "\n".join(content[-lines:])


class TargetBuilder:
    """Builds the KF/x bundle for one target at a time.

    A single TargetBuilder may be shared by concurrent workers. The only
    state it keeps is the intermediate outcome of the current run, which
    workers read and write under the cache writer lock.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        cache: IntermediateCache,
        source_root: Path,
        tracked_sources: Sequence[str | Path],
        intermediate_recipe: Path,
        final_recipe: Path,
        staging_root: Path,
        log_dir: Path | None = None,
        intermediate_base_image: str = "ubuntu:jammy",
        container_output_dir: str = "/out/",
        tmp_dir: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.source_root = source_root
        self.tracked_sources = list(tracked_sources)
        self.intermediate_recipe = intermediate_recipe
        self.final_recipe = final_recipe
        self.staging_root = staging_root
        self.log_dir = log_dir
        self.intermediate_base_image = intermediate_base_image
        self.container_output_dir = container_output_dir
        self.tmp_dir = tmp_dir
        self.proxy_args = proxy_build_args(environ)
        # cache key -> built intermediate ref, or the error building it
        self._intermediates: dict[str, str | BuildError] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        engine: ContainerEngine,
        cache: IntermediateCache,
        staging_root: Path,
        log_dir: Path | None = None,
    ) -> TargetBuilder:
        """Create a builder configured from application settings."""
        return cls(
            engine=engine,
            cache=cache,
            source_root=settings.source_root,
            tracked_sources=settings.tracked_sources,
            intermediate_recipe=settings.resolve(settings.intermediate_recipe),
            final_recipe=settings.resolve(settings.final_recipe),
            staging_root=staging_root,
            log_dir=log_dir,
            intermediate_base_image=settings.intermediate_base_image,
            container_output_dir=settings.container_output_dir,
            tmp_dir=settings.tmp_dir,
        )

    def start_run(self) -> None:
        """Forget intermediate outcomes remembered from an earlier run."""
        self._intermediates.clear()

    def staging_dir(self, target: TargetSchema) -> Path:
        """Return the host directory receiving a target's raw output."""
        return self.staging_root / target.name

    def build(self, target: TargetSchema) -> BuildResult:
        """Build one target.

        Args:
            target: The distribution target to build.

        Returns:
            BuildResult describing success or failure.

        Raises:
            CacheStoreError: If the cache location cannot be written.
        """
        started_at = datetime.now(timezone.utc)
        log_path = self.log_dir / f"{target.name}.log" if self.log_dir else None
        result = BuildResult(
            target=target,
            status=BuildStatus.FAILED,
            log_path=log_path,
            started_at=started_at,
        )

        logger.info("Building target %s (%s)", target.name, target.base_image_ref)
        try:
            result.cache_key = compute_key(self.tracked_sources, root=self.source_root)
            intermediate_ref, result.cache_hit = self.prepare_intermediate(
                result.cache_key, log_path
            )
            final_ref = self._build_final(target, intermediate_ref, log_path)
            result.output_files = self._extract(target, final_ref, log_path)
        except (InputUnavailableError, BuildError) as e:
            result.error_code = e.code
            result.diagnostics = self._diagnostics(str(e), log_path)
            shutil.rmtree(self.staging_dir(target), ignore_errors=True)
            logger.error("Target %s failed: %s", target.name, e)
        else:
            result.status = BuildStatus.SUCCEEDED
            logger.info(
                "Target %s succeeded with %d file(s)%s",
                target.name,
                len(result.output_files),
                " (cached intermediate)" if result.cache_hit else "",
            )
        finally:
            result.finished_at = datetime.now(timezone.utc)

        return result

    def prepare_intermediate(self, key: str, log_path: Path | None) -> tuple[str, bool]:
        """Make the intermediate image available to the engine.

        The first builder to miss takes the writer lock and builds; any
        builder that missed concurrently waits on the lock and then finds
        the freshly stored entry instead of building again. The outcome is
        remembered for the run, so an image that could not be saved is
        reused from the engine and a failed build is not retried.

        Args:
            key: Cache key of the tracked sources.
            log_path: Per-target log file.

        Returns:
            Tuple of (intermediate image reference, is_cache_hit).

        Raises:
            BuildError: If the intermediate build fails.
            CacheStoreError: If the built image cannot be cached.
        """
        entry = self.cache.lookup(key)
        if entry is not None:
            ref = self._load(entry, log_path)
            if ref is not None:
                return ref, True

        with self.cache.writer_lock():
            entry = self.cache.lookup(key)
            if entry is not None:
                logger.info("Intermediate image was stored meanwhile, reusing it")
                ref = self._load(entry, log_path)
                if ref is not None:
                    return ref, True

            outcome = self._intermediates.get(key)
            if isinstance(outcome, BuildError):
                raise BuildError(str(outcome), exit_code=outcome.exit_code, code=outcome.code)
            if outcome is not None:
                logger.info("Reusing intermediate image %s built earlier in this run", outcome)
                return outcome, False

            try:
                ref = self._build_intermediate(key, log_path)
            except BuildError as e:
                self._intermediates[key] = e
                raise
            self._intermediates[key] = ref
            self._save_and_store(key, ref, log_path)
            return ref, False

    def _load(self, entry: CacheEntry, log_path: Path | None) -> str | None:
        """Load a cached image; a load failure evicts the entry.

        The entry is only evicted if it is still the cached one, so an
        entry stored meanwhile by another writer survives.
        """
        try:
            return self.engine.load_image(entry.artifact_path, log_path)
        except BuildError as e:
            logger.warning(
                "Cached intermediate %s could not be loaded (%s); rebuilding",
                entry.artifact_path.name,
                e,
            )
        with self.cache.writer_lock():
            if self.cache.current() == entry:
                self.cache.evict_all()
        return None

    def _build_intermediate(self, key: str, log_path: Path | None) -> str:
        tag = f"kfx-xen-intermediate:{key_digest(key)[:12]}"
        build_args = {"IMAGE": self.intermediate_base_image, **self.proxy_args}
        logger.info("Building intermediate image %s", tag)
        try:
            return self.engine.build_image(
                self.intermediate_recipe, tag, build_args, self.source_root, log_path
            )
        except BuildError as e:
            raise BuildError(
                f"Intermediate build failed: {e}",
                exit_code=e.exit_code,
                code="intermediate_build_failed",
            ) from e

    def _save_and_store(self, key: str, ref: str, log_path: Path | None) -> None:
        """Serialize the intermediate image and hand it to the cache.

        A failed save leaves the cache untouched; the build continues
        with the in-engine image.
        """
        work_dir = Path(tempfile.mkdtemp(prefix="kfx_intermediate_", dir=self.tmp_dir))
        try:
            try:
                blob = self.engine.save_image(
                    ref, work_dir / "intermediate.tar.gz", log_path
                )
            except BuildError as e:
                logger.warning("Could not save intermediate image for caching: %s", e)
                return
            self.cache.store(key, blob)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _build_final(
        self, target: TargetSchema, intermediate_ref: str, log_path: Path | None
    ) -> str:
        build_args = {
            "IMAGE": target.base_image_ref,
            "KFX_VERSION": target.version_label,
            "INTERMEDIATE": intermediate_ref,
            **self.proxy_args,
        }
        try:
            return self.engine.build_image(
                self.final_recipe, target.image_tag, build_args, self.source_root, log_path
            )
        except BuildError as e:
            raise BuildError(
                f"Final build failed: {e}",
                exit_code=e.exit_code,
                code="final_build_failed",
            ) from e

    def _extract(
        self, target: TargetSchema, final_ref: str, log_path: Path | None
    ) -> list[Path]:
        """Copy the output directory out of a throwaway container."""
        dest = self.staging_dir(target)
        shutil.rmtree(dest, ignore_errors=True)

        container_id = self.engine.create_container(final_ref, log_path)
        try:
            return self.engine.copy_from_container(
                container_id, self.container_output_dir, dest, log_path
            )
        finally:
            try:
                self.engine.remove_container(container_id, log_path)
            except BuildError as e:
                logger.warning("Failed to remove container %s: %s", container_id, e)

    def _diagnostics(self, message: str, log_path: Path | None) -> str:
        tail = read_log_tail(log_path)
        if not tail:
            return message
        return f"{message}\n--- last lines of {log_path} ---\n{tail}"


__all__ = [
    "PROXY_VARIABLES",
    "BuildResult",
    "TargetBuilder",
    "proxy_build_args",
    "read_log_tail",
]
