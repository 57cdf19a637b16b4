"""End-to-end tests for :class:`tree_replicator.Replicator` on a live watchdog observer."""
from __future__ import annotations

import logging
import time
from pathlib import Path

import pytest

from tree_replicator import Batch, Replicator

SETTLE = 0.2


def wait_for(predicate, *, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def read_or_none(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None


@pytest.fixture()
def source(tmp_path: Path) -> Path:
    path = tmp_path / "tmp1"
    path.mkdir()
    return path


@pytest.fixture()
def target(tmp_path: Path) -> Path:
    return tmp_path / "tmp2"


@pytest.fixture()
def replicator_factory(source: Path, target: Path):
    created: list[Replicator] = []

    def factory(**kwargs) -> tuple[Replicator, list[Batch]]:
        batches: list[Batch] = []
        replicator = Replicator(
            source,
            target,
            settle_window=SETTLE,
            logger=logging.getLogger("tree_replicator.tests"),
            on_synced=batches.append,
            **kwargs,
        )
        created.append(replicator)
        return replicator, batches

    yield factory

    for replicator in created:
        replicator.stop()


def test_initial_sync_creates_empty_target(replicator_factory, target: Path) -> None:
    replicator, _ = replicator_factory()
    replicator.start()

    assert target.is_dir()
    assert list(target.iterdir()) == []
    assert replicator.is_running()


def test_initial_sync_copies_existing_tree(replicator_factory, source: Path, target: Path) -> None:
    (source / "docs").mkdir()
    (source / "docs" / "readme.txt").write_text("hi", encoding="utf-8")
    target.mkdir()
    (target / "stale.txt").touch()

    replicator, _ = replicator_factory()
    replicator.start()

    assert (target / "docs" / "readme.txt").read_text(encoding="utf-8") == "hi"
    assert not (target / "stale.txt").exists()


def test_replicate_file_creation(replicator_factory, source: Path, target: Path) -> None:
    replicator, batches = replicator_factory()
    replicator.start()

    (source / "a.txt").write_text("Hello", encoding="utf-8")

    assert wait_for(lambda: read_or_none(target / "a.txt") == "Hello")
    created_path = replicator.source_root / "a.txt"
    assert wait_for(lambda: any(created_path in b.to_create for b in batches))


def test_replicate_file_modification(replicator_factory, source: Path, target: Path) -> None:
    (source / "a.txt").write_text("Hello", encoding="utf-8")
    replicator, _ = replicator_factory()
    replicator.start()
    assert (target / "a.txt").read_text(encoding="utf-8") == "Hello"

    time.sleep(0.05)
    (source / "a.txt").write_text("World", encoding="utf-8")

    assert wait_for(lambda: read_or_none(target / "a.txt") == "World")


def test_replicate_file_deletion(replicator_factory, source: Path, target: Path) -> None:
    (source / "a.txt").write_text("Hello", encoding="utf-8")
    replicator, _ = replicator_factory()
    replicator.start()
    assert (target / "a.txt").exists()

    (source / "a.txt").unlink()

    assert wait_for(lambda: not (target / "a.txt").exists())
    assert target.is_dir()


def test_replicate_file_renaming(replicator_factory, source: Path, target: Path) -> None:
    (source / "a.txt").write_text("Hello", encoding="utf-8")
    replicator, _ = replicator_factory()
    replicator.start()

    (source / "a.txt").rename(source / "b.txt")

    assert wait_for(lambda: read_or_none(target / "b.txt") == "Hello" and not (target / "a.txt").exists())


def test_new_directory_is_watched_before_its_children(replicator_factory, source: Path, target: Path) -> None:
    replicator, _ = replicator_factory()
    replicator.start()

    (source / "sub").mkdir()
    (source / "sub" / "inner.txt").write_text("inside", encoding="utf-8")

    assert wait_for(lambda: read_or_none(target / "sub" / "inner.txt") == "inside")
    assert wait_for(lambda: replicator.source_root / "sub" in replicator.registry)

    # the new directory stays observed after its creation batch
    (source / "sub" / "later.txt").write_text("later", encoding="utf-8")
    assert wait_for(lambda: read_or_none(target / "sub" / "later.txt") == "later")


def test_deleted_directory_is_purged_and_unwatched(replicator_factory, source: Path, target: Path) -> None:
    (source / "sub").mkdir()
    (source / "sub" / "f.txt").touch()
    replicator, _ = replicator_factory()
    replicator.start()
    assert replicator.source_root / "sub" in replicator.registry

    (source / "sub" / "f.txt").unlink()
    (source / "sub").rmdir()

    assert wait_for(lambda: not (target / "sub").exists())
    assert wait_for(lambda: replicator.source_root / "sub" not in replicator.registry)


def test_ignored_files_are_not_replicated(replicator_factory, source: Path, target: Path) -> None:
    replicator, _ = replicator_factory(ignore_patterns=["*.tmp"])
    replicator.start()

    (source / "scratch.tmp").write_text("nope", encoding="utf-8")
    (source / "kept.txt").write_text("yes", encoding="utf-8")

    assert wait_for(lambda: read_or_none(target / "kept.txt") == "yes")
    assert not (target / "scratch.tmp").exists()


def test_stop_flushes_and_ends_workers(replicator_factory, source: Path) -> None:
    replicator, _ = replicator_factory()
    replicator.start()

    replicator.stop()

    assert not replicator.is_running()
    assert not replicator.sync_worker.is_alive()


def test_start_with_more_directories_than_inotify_instances(replicator_factory, source: Path, target: Path) -> None:
    for i in range(200):
        (source / f"dir{i:03}").mkdir()
    replicator, _ = replicator_factory()

    replicator.start()

    assert len(replicator.registry) == 201
    (source / "dir199" / "deep.txt").write_text("reached", encoding="utf-8")
    assert wait_for(lambda: read_or_none(target / "dir199" / "deep.txt") == "reached")


class StuckScheduler:
    """Observation worker that never finishes its final flush."""

    def __init__(self) -> None:
        self.stop_requested = False

    def is_alive(self) -> bool:
        return True

    def request_stop(self) -> None:
        self.stop_requested = True

    def join(self, timeout=None) -> None:
        pass


def test_stop_leaves_sync_worker_open_while_flush_is_pending(replicator_factory) -> None:
    replicator, _ = replicator_factory()
    replicator.scheduler = StuckScheduler()

    replicator.stop(timeout=0.01)

    assert replicator.scheduler.stop_requested
    assert not replicator.sync_worker.closed


def test_missing_source_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        Replicator(tmp_path / "missing", tmp_path / "dst")


def test_target_inside_source_is_rejected(source: Path) -> None:
    with pytest.raises(ValueError):
        Replicator(source, source / "mirror")
