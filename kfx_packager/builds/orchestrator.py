"""Multi-target build orchestration.

This module handles:
- Expanding a target request ("all" or names) into concrete targets
- Running TargetBuilder for each target, sequentially or in a pool
- Aggregating per-target results into an overall status

Targets are independent: a failing target never cancels its siblings.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from kfx_packager.builds.builder import BuildResult
from kfx_packager.builds.cache import CacheStoreError
from kfx_packager.targets.service import resolve_targets
from kfx_packager.types import BuildStatus, OrchestrationStatus

if TYPE_CHECKING:
    from kfx_packager.builds.builder import TargetBuilder
    from kfx_packager.targets.schema import TargetSchema

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationResult:
    """Aggregated outcome of a multi-target run."""

    status: OrchestrationStatus
    results: list[BuildResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[BuildResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> list[BuildResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def failed_targets(self) -> list[str]:
        return [r.target.name for r in self.failed]

    @property
    def exit_code(self) -> int:
        return 0 if self.status == OrchestrationStatus.SUCCESS else 1


def aggregate_status(results: Sequence[BuildResult]) -> OrchestrationStatus:
    """Derive the overall status from per-target results."""
    succeeded = sum(1 for r in results if r.succeeded)
    if results and succeeded == len(results):
        return OrchestrationStatus.SUCCESS
    if succeeded == 0:
        return OrchestrationStatus.TOTAL_FAILURE
    return OrchestrationStatus.PARTIAL_FAILURE


class BuildMatrixOrchestrator:
    """Fans one build out across distribution targets.

    The builder's cache is opened when a run starts and closed when it
    ends, so one orchestrator owns the cache lifecycle for its runs.
    """

    def __init__(
        self,
        builder: TargetBuilder,
        known_targets: Sequence[TargetSchema],
        max_workers: int = 1,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.builder = builder
        self.known_targets = list(known_targets)
        self.max_workers = max_workers

    def run(self, requested: str | Sequence[str]) -> OrchestrationResult:
        """Build every requested target and aggregate the results.

        Args:
            requested: "all", a target name, or a sequence of names.

        Returns:
            OrchestrationResult with per-target results in request order.

        Raises:
            UnknownTargetError: If any requested name is unknown; raised
                                before any build starts.
            CacheStoreError: If the cache location is unwritable.
        """
        targets = resolve_targets(requested, self.known_targets)
        logger.info(
            "Building %d target(s): %s",
            len(targets),
            ", ".join(t.name for t in targets),
        )

        with self.builder.cache:
            self.builder.start_run()
            if self.max_workers == 1 or len(targets) == 1:
                results = [self._build_one(t) for t in targets]
            else:
                workers = min(self.max_workers, len(targets))
                with ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix="kfx-build"
                ) as pool:
                    # map() preserves request order and re-raises worker errors
                    results = list(pool.map(self._build_one, targets))

        status = aggregate_status(results)
        outcome = OrchestrationResult(status=status, results=results)
        if outcome.failed:
            logger.warning(
                "%d of %d target(s) failed: %s",
                len(outcome.failed),
                len(results),
                ", ".join(outcome.failed_targets),
            )
        else:
            logger.info("All %d target(s) succeeded", len(results))
        return outcome

    def _build_one(self, target: TargetSchema) -> BuildResult:
        """Build one target, turning unexpected errors into a failed result."""
        started_at = datetime.now(timezone.utc)
        try:
            return self.builder.build(target)
        except CacheStoreError:
            raise
        except Exception as e:
            logger.exception("Unexpected error building %s", target.name)
            return BuildResult(
                target=target,
                status=BuildStatus.FAILED,
                diagnostics=f"Unexpected error: {e}",
                error_code="internal_error",
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )


__all__ = [
    "BuildMatrixOrchestrator",
    "OrchestrationResult",
    "aggregate_status",
]
