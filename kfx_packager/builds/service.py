"""Build service module.

This module provides the high-level packaging API:
- package_targets(): Main entry point - build targets and collect packages
- Output directory and run identifier management
- Build record persistence and queries
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from kfx_packager.builds.artifacts import ArtifactNormalizer, NormalizeReport
from kfx_packager.builds.builder import BuildResult, TargetBuilder
from kfx_packager.builds.cache import FileIntermediateCache
from kfx_packager.builds.engine import DockerEngine
from kfx_packager.builds.models import BuildRecord
from kfx_packager.builds.orchestrator import BuildMatrixOrchestrator, OrchestrationResult
from kfx_packager.config import get_settings
from kfx_packager.targets.service import get_known_targets, resolve_targets
from kfx_packager.types import BuildStatus

if TYPE_CHECKING:
    from kfx_packager.builds.cache import IntermediateCache
    from kfx_packager.builds.engine import ContainerEngine
    from kfx_packager.config import Settings

logger = logging.getLogger(__name__)

OUTPUT_DIR_PREFIX = "kfx-artifacts-"


@dataclass
class PackageRunResult:
    """Outcome of a full packaging run.

    Attributes:
        run_id: Identifier of the run (also names the log directory).
        output_dir: Directory holding the collected packages.
        orchestration: Per-target results and overall status.
        normalize_report: Normalization summary, or None when no target
                          succeeded.
    """

    run_id: str
    output_dir: Path
    orchestration: OrchestrationResult
    normalize_report: NormalizeReport | None = None

    @property
    def exit_code(self) -> int:
        return self.orchestration.exit_code


def new_run_id() -> str:
    """Return a sortable, unique run identifier."""
    now = datetime.now(timezone.utc)
    return f"{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"


def create_output_dir(settings: Settings) -> Path:
    """Create a fresh kfx-artifacts-XXXXXX temporary directory."""
    return Path(tempfile.mkdtemp(prefix=OUTPUT_DIR_PREFIX, dir=settings.tmp_dir))


def package_targets(
    requested: str | Sequence[str],
    output_dir: Path | None = None,
    settings: Settings | None = None,
    engine: ContainerEngine | None = None,
    cache: IntermediateCache | None = None,
    session: Session | None = None,
    version_label: str | None = None,
    force_rebuild: bool = False,
    max_workers: int | None = None,
) -> PackageRunResult:
    """Build the requested targets and collect their packages.

    This is the main entry point for the packaging pipeline. It:
    1. Validates the whole target request
    2. Builds every target, each into <output_dir>/<target name>
    3. Flattens and decompresses the succeeded targets' packages
       into output_dir
    4. Persists a BuildRecord per target if a session is given

    Args:
        requested: "all", a target name, or a sequence of names.
        output_dir: Destination directory (fresh temp dir if None).
        settings: Application settings.
        engine: Container engine (DockerEngine if None).
        cache: Intermediate cache (FileIntermediateCache if None).
        session: Optional database session for build records.
        version_label: Override for settings.version_label.
        force_rebuild: Evict the cached intermediate image first.
        max_workers: Override for settings.max_concurrent_builds.

    Returns:
        PackageRunResult for the run.

    Raises:
        TargetCatalogError: If the configured targets file is invalid.
        UnknownTargetError: If a requested target is unknown (before any
                            directory is created or build started).
        CacheStoreError: If the cache location is unwritable.
    """
    if settings is None:
        settings = get_settings()

    known = get_known_targets(settings, version_label)
    resolve_targets(requested, known)

    if output_dir is None:
        output_dir = create_output_dir(settings)
    output_dir.mkdir(parents=True, exist_ok=True)

    if engine is None:
        engine = DockerEngine(settings.engine_binary, timeout=settings.build_timeout)
    if cache is None:
        cache = FileIntermediateCache(settings.cache_dir)

    run_id = new_run_id()
    logger.info("Starting run %s, output directory %s", run_id, output_dir)

    if force_rebuild:
        with cache:
            cache.evict_all()

    builder = TargetBuilder.from_settings(
        settings,
        engine=engine,
        cache=cache,
        staging_root=output_dir,
        log_dir=settings.log_dir / run_id,
    )
    orchestrator = BuildMatrixOrchestrator(
        builder,
        known,
        max_workers=max_workers or settings.max_concurrent_builds,
    )
    orchestration = orchestrator.run(requested)

    for failed in orchestration.failed:
        shutil.rmtree(builder.staging_dir(failed.target), ignore_errors=True)

    report: NormalizeReport | None = None
    if orchestration.succeeded:
        report = ArtifactNormalizer().normalize(output_dir)
        for message in report.diagnostics:
            logger.warning("Normalization: %s", message)

    if session is not None:
        record_results(session, run_id, orchestration.results)

    return PackageRunResult(
        run_id=run_id,
        output_dir=output_dir,
        orchestration=orchestration,
        normalize_report=report,
    )


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def record_results(
    session: Session,
    run_id: str,
    results: Sequence[BuildResult],
) -> list[BuildRecord]:
    """Persist one BuildRecord per target result.

    Args:
        session: Database session.
        run_id: Run identifier shared by the records.
        results: Per-target build results.

    Returns:
        Created BuildRecord instances.
    """
    records: list[BuildRecord] = []
    for result in results:
        record = BuildRecord(
            run_id=run_id,
            target_name=result.target.name,
            base_image_ref=result.target.base_image_ref,
            version_label=result.target.version_label,
            status=result.status.value,
            cache_key=result.cache_key,
            is_cache_hit=result.cache_hit,
            error_type=result.error_code,
            error_message=result.diagnostics or None,
            output_files=[p.name for p in result.output_files],
            log_path=str(result.log_path) if result.log_path else None,
            started_at=_naive_utc(result.started_at),
            finished_at=_naive_utc(result.finished_at),
        )
        session.add(record)
        records.append(record)
    session.flush()
    return records


def list_builds(
    session: Session,
    target_name: str | None = None,
    status: BuildStatus | None = None,
    run_id: str | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters, newest first.

    Args:
        session: Database session.
        target_name: Filter by target codename.
        status: Filter by status.
        run_id: Filter by run.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)

    if target_name is not None:
        stmt = stmt.where(BuildRecord.target_name == target_name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    if run_id is not None:
        stmt = stmt.where(BuildRecord.run_id == run_id)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "OUTPUT_DIR_PREFIX",
    "PackageRunResult",
    "create_output_dir",
    "list_builds",
    "new_run_id",
    "package_targets",
    "record_results",
]
