"""Per-platform extraction fan-out.

One task runs per resolved platform, all under one cancellation scope. The
first failing task cancels the others and its error is re-raised. Inside a
task, layers are applied strictly bottom layer first.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from undock.cancel import CancelToken
from undock.errors import OperationCancelledError
from undock.extract.blob import apply_dir_modes, extract_blob
from undock.image.manifest import PlatformManifest, layer_blob_path
from undock.log import get_logger
from undock.platforms import Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayerBlob:
    """A cached layer blob."""

    digest: str
    media_type: str
    path: Path


@dataclass(frozen=True)
class ExtractionTask:
    """Extraction of one platform's layers into one destination.

    Attributes:
        platform: Platform the layers belong to.
        dest: Destination directory.
        layers: Layer blobs, bottom layer first.
    """

    platform: Platform
    dest: Path
    layers: tuple[LayerBlob, ...]


def plan_tasks(
    manifests: list[PlatformManifest],
    dist: Path,
    wrap: bool,
    cache_dir: Path,
) -> list[ExtractionTask]:
    """Build one extraction task per platform.

    Without ``wrap`` and with more than one platform, each platform writes to
    ``<dist>/<os>_<architecture><variant>``; otherwise all write to ``dist``.
    """
    per_platform = not wrap and len(manifests) > 1
    tasks = []
    for manifest in manifests:
        dest = dist / manifest.platform.dirname() if per_platform else dist
        layers = tuple(
            LayerBlob(
                digest=layer.digest,
                media_type=layer.media_type,
                path=layer_blob_path(cache_dir, layer.digest),
            )
            for layer in manifest.layers
        )
        tasks.append(ExtractionTask(manifest.platform, dest, layers))
    return tasks


def run_task(
    task: ExtractionTask,
    includes: list[str],
    token: CancelToken,
    src: str = "",
    dir_modes: dict[str, int] | None = None,
) -> None:
    """Extract one platform's layers in order.

    Directory modes are applied after the last layer, unless ``dir_modes`` is
    given to collect them for the caller.
    """
    log = get_logger(__name__, src=src, platform=task.platform.format())
    task.dest.mkdir(mode=0o700, parents=True, exist_ok=True)
    pending: dict[str, int] = {} if dir_modes is None else dir_modes
    for layer in task.layers:
        token.raise_if_cancelled()
        blob_log = log.bind(media_type=layer.media_type, blob=layer.digest)
        blob_log.info("Extracting blob")
        extract_blob(layer.path, task.dest, includes, token, blob_log, pending)
    if dir_modes is None:
        apply_dir_modes(task.dest, pending)


def run_tasks(
    tasks: list[ExtractionTask],
    includes: list[str],
    token: CancelToken,
    src: str = "",
) -> None:
    """Run extraction tasks concurrently.

    Tasks sharing a destination share its directory modes, which are applied
    once every task has finished.

    Args:
        tasks: Tasks to run, one per platform.
        includes: Include paths passed to every blob extraction.
        token: Run-wide cancellation scope.
        src: Source string for log context.

    Raises:
        UndockError: The first task failure; remaining tasks are cancelled.
    """
    if not tasks:
        return
    scope = token.child()
    dir_modes: dict[Path, dict[str, int]] = {task.dest: {} for task in tasks}
    first_error: BaseException | None = None

    with ThreadPoolExecutor(
        max_workers=len(tasks), thread_name_prefix="undock-extract"
    ) as pool:
        futures = {
            pool.submit(
                run_task, task, includes, scope, src, dir_modes[task.dest]
            ): task
            for task in tasks
        }
        for future in as_completed(futures):
            error = future.exception()
            if error is None:
                continue
            task = futures[future]
            if first_error is None or (
                isinstance(first_error, OperationCancelledError)
                and not isinstance(error, OperationCancelledError)
                and not token.cancelled
            ):
                first_error = error
            logger.debug("Extraction for %s failed: %s", task.platform, error)
            scope.cancel(f"extraction for {task.platform} failed")

    if first_error is not None:
        raise first_error
    for dest, pending in dir_modes.items():
        apply_dir_modes(dest, pending)


__all__ = ["ExtractionTask", "LayerBlob", "plan_tasks", "run_task", "run_tasks"]
