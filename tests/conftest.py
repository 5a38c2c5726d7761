"""Shared fixtures and test doubles.

FakeContainerEngine stands in for docker; MemoryIntermediateCache is a
single-slot cache whose index lives in memory.
"""

from __future__ import annotations

import gzip
import shutil
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest

from kfx_packager.builds.builder import TargetBuilder
from kfx_packager.builds.cache import CacheEntry, IntermediateCache
from kfx_packager.builds.cache_key import key_digest
from kfx_packager.builds.engine import BuildError, ContainerEngine, list_files
from kfx_packager.targets.service import default_targets

FINAL_TAG_PREFIX = "kfx-builder-"
INTERMEDIATE_TAG_PREFIX = "kfx-xen-intermediate:"


def default_outputs(target_name: str) -> dict[str, bytes]:
    """Files the fake final image of a target leaves under /out/."""
    return {
        f"kfx/kfx-{target_name}_amd64.deb.gz__": gzip.compress(
            f"kfx package for {target_name}".encode()
        ),
        f"xen/xen-{target_name}_amd64.deb": f"xen package for {target_name}".encode(),
    }


class FakeContainerEngine(ContainerEngine):
    """Records engine calls and simulates images with small files.

    Attributes:
        calls: (method, first argument) tuples in call order.
        fail_tags: Tag prefixes whose build_image raises BuildError.
        fail_save: Make save_image raise BuildError.
        fail_load: Make load_image raise BuildError.
        build_delay: Seconds each build_image call sleeps.
        outputs: Per-target files produced by the final image.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail_tags: set[str] = set()
        self.fail_save = False
        self.fail_load = False
        self.build_delay = 0.0
        self.outputs: dict[str, dict[str, bytes]] = {}
        self.build_args: dict[str, dict[str, str]] = {}
        self.live_containers: dict[str, str] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _record(self, method: str, arg: str) -> None:
        with self._lock:
            self.calls.append((method, arg))

    def count(self, method: str, prefix: str = "") -> int:
        return sum(1 for m, a in self.calls if m == method and a.startswith(prefix))

    @property
    def intermediate_builds(self) -> int:
        return self.count("build_image", INTERMEDIATE_TAG_PREFIX)

    def build_image(
        self,
        recipe: Path,
        tag: str,
        build_args: Mapping[str, str],
        context: Path,
        log_path: Path | None = None,
    ) -> str:
        self._record("build_image", tag)
        with self._lock:
            self.build_args[tag] = dict(build_args)
        if self.build_delay:
            time.sleep(self.build_delay)
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a") as f:
                f.write(f"building {tag}\n")
        if any(tag.startswith(prefix) for prefix in self.fail_tags):
            if log_path is not None:
                with log_path.open("a") as f:
                    f.write(f"error: build of {tag} failed\n")
            raise BuildError(f"build of {tag} failed", exit_code=1)
        return tag

    def save_image(self, ref: str, dest: Path, log_path: Path | None = None) -> Path:
        self._record("save_image", ref)
        if self.fail_save:
            raise BuildError("save failed", code="save_failed")
        dest.parent.mkdir(parents=True, exist_ok=True)
        with gzip.open(dest, "wb") as f:
            f.write(ref.encode())
        return dest

    def load_image(self, blob: Path, log_path: Path | None = None) -> str:
        self._record("load_image", str(blob))
        if self.fail_load:
            raise BuildError("load failed", code="image_load_failed")
        try:
            with gzip.open(blob, "rb") as f:
                return f.read().decode()
        except OSError as e:
            raise BuildError(str(e), code="image_load_failed") from e

    def create_container(self, ref: str, log_path: Path | None = None) -> str:
        self._record("create_container", ref)
        with self._lock:
            self._counter += 1
            container_id = f"ctr-{self._counter}"
            self.live_containers[container_id] = ref
        return container_id

    def copy_from_container(
        self,
        container_id: str,
        src: str,
        dest: Path,
        log_path: Path | None = None,
    ) -> list[Path]:
        self._record("copy_from_container", container_id)
        ref = self.live_containers[container_id]
        name = ref.split(":", 1)[0].removeprefix(FINAL_TAG_PREFIX)
        files = self.outputs.get(name, default_outputs(name))
        for rel, content in files.items():
            path = dest / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        return list_files(dest)

    def remove_container(self, container_id: str, log_path: Path | None = None) -> None:
        self._record("remove_container", container_id)
        with self._lock:
            self.live_containers.pop(container_id, None)


class MemoryIntermediateCache(IntermediateCache):
    """Single-slot cache keeping its index in memory.

    Stored blobs are moved into storage_dir so the engine can load them.
    """

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = storage_dir
        self.entry: CacheEntry | None = None
        self.stores = 0
        self.open_calls = 0
        self.close_calls = 0
        self._lock = threading.RLock()

    def open(self) -> None:
        self.open_calls += 1
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def close(self) -> None:
        self.close_calls += 1

    def lookup(self, key: str) -> CacheEntry | None:
        entry = self.entry
        if entry is not None and entry.key == key:
            return entry
        return None

    def store(self, key: str, artifact_path: Path) -> CacheEntry:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        dest = self.storage_dir / f"{key_digest(key)}.tar.gz"
        shutil.move(str(artifact_path), str(dest))
        previous = self.entry
        if previous is not None and previous.artifact_path != dest:
            previous.artifact_path.unlink(missing_ok=True)
        self.entry = CacheEntry(
            key=key,
            artifact_path=dest,
            created_at=datetime.now(timezone.utc),
            size_bytes=dest.stat().st_size,
        )
        self.stores += 1
        return self.entry

    def evict_all(self) -> int:
        entry, self.entry = self.entry, None
        if entry is None:
            return 0
        entry.artifact_path.unlink(missing_ok=True)
        return 1

    def current(self) -> CacheEntry | None:
        return self.entry

    @contextmanager
    def writer_lock(self) -> Iterator[None]:
        with self._lock:
            yield


@pytest.fixture
def source_root(tmp_path: Path) -> Path:
    """A source checkout with a small tracked xen/ tree."""
    root = tmp_path / "src"
    (root / "xen" / "tools").mkdir(parents=True)
    (root / "xen" / "Makefile").write_text("all:\n\t@echo xen\n")
    (root / "xen" / "tools" / "config.h").write_text("#define XEN 1\n")
    return root


@pytest.fixture
def fake_engine() -> FakeContainerEngine:
    return FakeContainerEngine()


@pytest.fixture
def memory_cache(tmp_path: Path) -> MemoryIntermediateCache:
    return MemoryIntermediateCache(tmp_path / "memcache")


@pytest.fixture
def targets():
    """The built-in five-target catalogue."""
    return default_targets("1.0.0")


@pytest.fixture
def make_builder(tmp_path: Path, source_root: Path, fake_engine: FakeContainerEngine):
    """Factory for a TargetBuilder wired to the fake engine."""

    def _make(cache: IntermediateCache, staging_root: Path | None = None) -> TargetBuilder:
        return TargetBuilder(
            engine=fake_engine,
            cache=cache,
            source_root=source_root,
            tracked_sources=["xen"],
            intermediate_recipe=source_root / "Dockerfile.xen",
            final_recipe=source_root / "Dockerfile",
            staging_root=staging_root or tmp_path / "out",
            log_dir=tmp_path / "logs",
            tmp_dir=tmp_path,
            environ={},
        )

    return _make
