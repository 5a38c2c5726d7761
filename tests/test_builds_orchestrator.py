"""Tests for builds/orchestrator.py module.

Tests fan-out over targets, status aggregation and the shared cache.
"""

import pytest

from kfx_packager.builds.builder import BuildResult
from kfx_packager.builds.cache import CacheStoreError, FileIntermediateCache
from kfx_packager.builds.orchestrator import (
    BuildMatrixOrchestrator,
    OrchestrationResult,
    aggregate_status,
)
from kfx_packager.targets.schema import TargetSchema
from kfx_packager.targets.service import UnknownTargetError
from kfx_packager.types import BuildStatus, OrchestrationStatus

from conftest import MemoryIntermediateCache


def result_for(name: str, status: BuildStatus) -> BuildResult:
    target = TargetSchema(name=name, base_image_ref=f"img:{name}", version_label="1")
    return BuildResult(target=target, status=status)


class TestAggregateStatus:
    """Tests for aggregate_status function."""

    def test_all_succeeded(self):
        results = [result_for("a", BuildStatus.SUCCEEDED)] * 2
        assert aggregate_status(results) == OrchestrationStatus.SUCCESS

    def test_some_failed(self):
        results = [
            result_for("a", BuildStatus.SUCCEEDED),
            result_for("b", BuildStatus.FAILED),
        ]
        assert aggregate_status(results) == OrchestrationStatus.PARTIAL_FAILURE

    def test_all_failed(self):
        results = [result_for("a", BuildStatus.FAILED)]
        assert aggregate_status(results) == OrchestrationStatus.TOTAL_FAILURE

    def test_exit_code(self):
        ok = OrchestrationResult(status=OrchestrationStatus.SUCCESS)
        partial = OrchestrationResult(status=OrchestrationStatus.PARTIAL_FAILURE)
        assert ok.exit_code == 0
        assert partial.exit_code == 1


class TestOrchestratorRun:
    """Tests for BuildMatrixOrchestrator.run."""

    def test_single_target(self, make_builder, memory_cache, targets):
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        outcome = orchestrator.run("jammy")

        assert outcome.status == OrchestrationStatus.SUCCESS
        assert [r.target.name for r in outcome.results] == ["jammy"]
        assert outcome.exit_code == 0

    def test_all_targets_in_catalogue_order(self, make_builder, memory_cache, targets):
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        outcome = orchestrator.run("all")
        assert [r.target.name for r in outcome.results] == [
            "bionic",
            "focal",
            "jammy",
            "buster",
            "bullseye",
        ]
        assert outcome.status == OrchestrationStatus.SUCCESS

    def test_three_of_five_fail(self, make_builder, memory_cache, fake_engine, targets):
        """Failures are isolated: the other targets still succeed."""
        for name in ("bionic", "jammy", "bullseye"):
            fake_engine.fail_tags.add(f"kfx-builder-{name}:")
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)

        outcome = orchestrator.run("all")

        assert outcome.status == OrchestrationStatus.PARTIAL_FAILURE
        assert [r.target.name for r in outcome.succeeded] == ["focal", "buster"]
        assert outcome.failed_targets == ["bionic", "jammy", "bullseye"]
        assert outcome.exit_code != 0
        assert all(r.diagnostics for r in outcome.failed)

    def test_total_failure(self, make_builder, memory_cache, fake_engine, targets):
        fake_engine.fail_tags.add("kfx-xen-intermediate:")
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        outcome = orchestrator.run(["focal", "jammy"])
        assert outcome.status == OrchestrationStatus.TOTAL_FAILURE
        assert memory_cache.current() is None

    def test_unknown_target_no_engine_calls(self, make_builder, memory_cache, fake_engine, targets):
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        with pytest.raises(UnknownTargetError) as exc_info:
            orchestrator.run("warty")
        assert exc_info.value.names == ["warty"]
        assert fake_engine.calls == []
        assert memory_cache.open_calls == 0

    def test_unknown_among_known_fails_whole_request(
        self, make_builder, memory_cache, fake_engine, targets
    ):
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        with pytest.raises(UnknownTargetError):
            orchestrator.run(["jammy", "warty"])
        assert fake_engine.calls == []

    def test_cache_lifecycle(self, make_builder, memory_cache, targets):
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        orchestrator.run("focal")
        assert memory_cache.open_calls == 1
        assert memory_cache.close_calls == 1

    def test_sequential_intermediate_built_once(
        self, make_builder, memory_cache, fake_engine, targets
    ):
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        outcome = orchestrator.run("all")
        assert fake_engine.intermediate_builds == 1
        assert [r.cache_hit for r in outcome.results] == [False, True, True, True, True]

    def test_unexpected_error_becomes_failed_result(
        self, make_builder, memory_cache, fake_engine, targets
    ):
        def boom(*args, **kwargs):
            raise RuntimeError("engine exploded")

        fake_engine.create_container = boom
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        outcome = orchestrator.run("focal")

        assert outcome.status == OrchestrationStatus.TOTAL_FAILURE
        assert outcome.results[0].error_code == "internal_error"
        assert "engine exploded" in outcome.results[0].diagnostics

    def test_cache_store_error_aborts(self, make_builder, targets, tmp_path):
        class UnwritableCache(MemoryIntermediateCache):
            def store(self, key, artifact_path):
                raise CacheStoreError("read-only filesystem")

        orchestrator = BuildMatrixOrchestrator(
            make_builder(UnwritableCache(tmp_path / "ro")), targets
        )
        with pytest.raises(CacheStoreError):
            orchestrator.run("all")

    def test_unsaved_intermediate_built_once(
        self, make_builder, memory_cache, fake_engine, targets
    ):
        """A failed save does not make later targets rebuild the intermediate."""
        fake_engine.fail_save = True
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)

        outcome = orchestrator.run("all")

        assert outcome.status == OrchestrationStatus.SUCCESS
        assert fake_engine.intermediate_builds == 1
        assert memory_cache.current() is None

    def test_next_run_starts_fresh(self, make_builder, memory_cache, fake_engine, targets):
        fake_engine.fail_tags.add("kfx-xen-intermediate:")
        orchestrator = BuildMatrixOrchestrator(make_builder(memory_cache), targets)
        orchestrator.run("jammy")

        fake_engine.fail_tags.clear()
        outcome = orchestrator.run("jammy")

        assert outcome.status == OrchestrationStatus.SUCCESS
        assert fake_engine.intermediate_builds == 2

    def test_invalid_max_workers(self, make_builder, memory_cache, targets):
        with pytest.raises(ValueError):
            BuildMatrixOrchestrator(make_builder(memory_cache), targets, max_workers=0)


class TestConcurrentRun:
    """Tests for runs with a worker pool."""

    def test_single_intermediate_build(self, make_builder, memory_cache, fake_engine, targets):
        """Concurrent misses should build the intermediate image once."""
        fake_engine.build_delay = 0.05
        orchestrator = BuildMatrixOrchestrator(
            make_builder(memory_cache), targets, max_workers=5
        )
        outcome = orchestrator.run("all")

        assert outcome.status == OrchestrationStatus.SUCCESS
        assert fake_engine.intermediate_builds == 1
        assert memory_cache.stores == 1
        assert sum(1 for r in outcome.results if not r.cache_hit) == 1

    def test_intermediate_failure_not_repeated(
        self, make_builder, memory_cache, fake_engine, targets
    ):
        """Workers waiting on a failed intermediate build fail without rebuilding."""
        fake_engine.build_delay = 0.05
        fake_engine.fail_tags.add("kfx-xen-intermediate:")
        orchestrator = BuildMatrixOrchestrator(
            make_builder(memory_cache), targets, max_workers=5
        )

        outcome = orchestrator.run("all")

        assert outcome.status == OrchestrationStatus.TOTAL_FAILURE
        assert fake_engine.intermediate_builds == 1
        assert {r.error_code for r in outcome.results} == {"intermediate_build_failed"}
        assert fake_engine.count("build_image", "kfx-builder-") == 0

    def test_unsaved_intermediate_shared_by_workers(
        self, make_builder, memory_cache, fake_engine, targets
    ):
        fake_engine.build_delay = 0.05
        fake_engine.fail_save = True
        orchestrator = BuildMatrixOrchestrator(
            make_builder(memory_cache), targets, max_workers=5
        )

        outcome = orchestrator.run("all")

        assert outcome.status == OrchestrationStatus.SUCCESS
        assert fake_engine.intermediate_builds == 1

    def test_results_keep_request_order(self, make_builder, memory_cache, targets):
        orchestrator = BuildMatrixOrchestrator(
            make_builder(memory_cache), targets, max_workers=3
        )
        outcome = orchestrator.run(["bullseye", "bionic", "jammy"])
        assert [r.target.name for r in outcome.results] == ["bullseye", "bionic", "jammy"]

    def test_concurrent_with_file_cache(self, make_builder, fake_engine, targets, tmp_path):
        fake_engine.build_delay = 0.05
        cache = FileIntermediateCache(tmp_path / "cache")
        orchestrator = BuildMatrixOrchestrator(make_builder(cache), targets, max_workers=5)

        outcome = orchestrator.run("all")

        assert outcome.status == OrchestrationStatus.SUCCESS
        assert fake_engine.intermediate_builds == 1
        assert cache.current() is not None

    def test_concurrent_partial_failure(self, make_builder, memory_cache, fake_engine, targets):
        fake_engine.fail_tags.update({"kfx-builder-focal:", "kfx-builder-buster:"})
        orchestrator = BuildMatrixOrchestrator(
            make_builder(memory_cache), targets, max_workers=4
        )
        outcome = orchestrator.run("all")
        assert outcome.status == OrchestrationStatus.PARTIAL_FAILURE
        assert outcome.failed_targets == ["focal", "buster"]
