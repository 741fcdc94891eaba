"""Tests for per-platform extraction planning and execution."""

import gzip
import os
import stat
from pathlib import Path

import pytest

from conftest import build_tar
from undock.cancel import CancelToken
from undock.errors import ExtractError, OperationCancelledError
from undock.extract.orchestrator import (
    ExtractionTask,
    LayerBlob,
    plan_tasks,
    run_task,
    run_tasks,
)
from undock.image import mediatypes
from undock.image.manifest import PlatformManifest
from undock.image.models import Descriptor
from undock.platforms import Platform

AMD64 = Platform("linux", "amd64")
ARMV7 = Platform("linux", "arm", "v7")


def _manifest(platform: Platform, *digests: str) -> PlatformManifest:
    return PlatformManifest(
        platform,
        tuple(
            Descriptor(mediaType=mediatypes.OCI_LAYER_GZIP, digest=d, size=1)
            for d in digests
        ),
    )


def _layer(tmp_path: Path, name: str, entries) -> LayerBlob:
    path = tmp_path / name
    path.write_bytes(gzip.compress(build_tar(entries)))
    return LayerBlob(digest=f"sha256:{name}", media_type="", path=path)


class TestPlanTasks:
    """Tests for plan_tasks function."""

    def test_single_platform_uses_dist(self, tmp_path):
        """A single platform should extract into dist itself."""
        digest = "sha256:" + "1" * 64
        manifests = [_manifest(AMD64, digest)]

        (task,) = plan_tasks(manifests, tmp_path / "dist", False, tmp_path)

        assert task.dest == tmp_path / "dist"
        assert task.layers[0].path == tmp_path / "blobs" / "sha256" / ("1" * 64)

    def test_per_platform_folders(self, tmp_path):
        """Several platforms should get their own folders."""
        manifests = [
            _manifest(AMD64, "sha256:" + "1" * 64),
            _manifest(ARMV7, "sha256:" + "2" * 64),
        ]

        tasks = plan_tasks(manifests, tmp_path / "dist", False, tmp_path)

        assert [t.dest.name for t in tasks] == ["linux_amd64", "linux_armv7"]

    def test_wrap(self, tmp_path):
        """wrap should merge every platform into dist."""
        manifests = [
            _manifest(AMD64, "sha256:" + "1" * 64),
            _manifest(ARMV7, "sha256:" + "2" * 64),
        ]

        tasks = plan_tasks(manifests, tmp_path / "dist", True, tmp_path)

        assert {t.dest for t in tasks} == {tmp_path / "dist"}

    def test_layer_order_kept(self, tmp_path):
        """Layers should keep manifest order."""
        digests = ["sha256:" + c * 64 for c in "abc"]

        (task,) = plan_tasks([_manifest(AMD64, *digests)], tmp_path, False, tmp_path)

        assert [layer.digest for layer in task.layers] == digests


class TestRunTasks:
    """Tests for run_task and run_tasks functions."""

    def test_layers_applied_in_order(self, tmp_path):
        """The last layer's version of a file should win."""
        layers = (
            _layer(tmp_path, "l1", [("file", "f", b"one", 0o644)]),
            _layer(tmp_path, "l2", [("file", "f", b"two", 0o644)]),
        )
        dest = tmp_path / "dist"

        run_task(ExtractionTask(AMD64, dest, layers), [], CancelToken())

        assert (dest / "f").read_bytes() == b"two"

    def test_concurrent_platforms(self, tmp_path):
        """Every platform should be extracted."""
        tasks = [
            ExtractionTask(
                AMD64,
                tmp_path / "amd64",
                (_layer(tmp_path, "a", [("file", "arch", b"amd64", 0o644)]),),
            ),
            ExtractionTask(
                ARMV7,
                tmp_path / "arm",
                (_layer(tmp_path, "b", [("file", "arch", b"armv7", 0o644)]),),
            ),
        ]

        run_tasks(tasks, [], CancelToken())

        assert (tmp_path / "amd64" / "arch").read_bytes() == b"amd64"
        assert (tmp_path / "arm" / "arch").read_bytes() == b"armv7"

    def test_failure_propagates(self, tmp_path):
        """A failing platform should fail the run with its error."""
        tasks = [
            ExtractionTask(
                AMD64,
                tmp_path / "ok",
                (_layer(tmp_path, "good", [("file", "f", b"x", 0o644)]),),
            ),
            ExtractionTask(
                ARMV7,
                tmp_path / "bad",
                (_layer(tmp_path, "bad", [("file", "../evil", b"x", 0o644)]),),
            ),
        ]
        token = CancelToken()

        with pytest.raises(ExtractError) as exc_info:
            run_tasks(tasks, [], token)

        assert exc_info.value.code == "path_traversal"
        assert not token.cancelled

    def test_cancelled_run(self, tmp_path):
        """A cancelled run should not extract anything."""
        token = CancelToken()
        token.cancel("interrupted")
        task = ExtractionTask(
            AMD64,
            tmp_path / "dist",
            (_layer(tmp_path, "l", [("file", "f", b"x", 0o644)]),),
        )

        with pytest.raises(OperationCancelledError):
            run_tasks([task], [], token)
        assert not (tmp_path / "dist" / "f").exists()

    def test_no_tasks(self):
        """An empty task list should do nothing."""
        run_tasks([], [], CancelToken())

    def test_directory_modes_after_last_layer(self, tmp_path):
        """A read-only directory should still receive later layers' files."""
        layers = (
            _layer(tmp_path, "l1", [("dir", "root", 0o550)]),
            _layer(tmp_path, "l2", [("file", "root/.profile", b"PS1=#\n", 0o644)]),
        )
        dest = tmp_path / "dist"

        run_task(ExtractionTask(AMD64, dest, layers), [], CancelToken())

        assert (dest / "root" / ".profile").read_bytes() == b"PS1=#\n"
        assert stat.S_IMODE((dest / "root").stat().st_mode) == 0o550


class TestSharedDestination:
    """Tests for platforms merged into one destination."""

    COUNT = 300

    def _entries(self):
        entries = [("dir", "usr", 0o555)]
        for i in range(self.COUNT):
            entries.append(("file", f"usr/f{i}", f"data{i}".encode(), 0o644))
            entries.append(("symlink", f"usr/l{i}", f"f{i}"))
        return entries

    def test_same_paths_from_every_task(self, tmp_path):
        """Tasks writing the same paths should all succeed, last writer winning."""
        layer = _layer(tmp_path, "shared", self._entries())
        platforms = [AMD64, ARMV7, Platform("linux", "arm64"), Platform("linux", "386")]

        for attempt in range(10):
            dest = tmp_path / f"dist{attempt}"
            tasks = [ExtractionTask(p, dest, (layer,)) for p in platforms]

            run_tasks(tasks, [], CancelToken())

            usr = dest / "usr"
            for i in range(self.COUNT):
                assert (usr / f"f{i}").read_bytes() == f"data{i}".encode()
                assert os.readlink(usr / f"l{i}") == f"f{i}"
            assert len(os.listdir(usr)) == 2 * self.COUNT
            assert stat.S_IMODE(usr.stat().st_mode) == 0o555

    def test_directory_modes_shared(self, tmp_path):
        """Directory modes should be applied once every task has finished."""
        dest = tmp_path / "dist"
        tasks = [
            ExtractionTask(
                AMD64,
                dest,
                (_layer(tmp_path, "a", [("dir", "ro", 0o555)]),),
            ),
            ExtractionTask(
                ARMV7,
                dest,
                (_layer(tmp_path, "b", [("file", "ro/arm", b"armv7", 0o644)]),),
            ),
        ]

        run_tasks(tasks, [], CancelToken())

        assert (dest / "ro" / "arm").read_bytes() == b"armv7"
        assert stat.S_IMODE((dest / "ro").stat().st_mode) == 0o555
