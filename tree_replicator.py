# /tree_replicator.py
"""
Tree Replicator
- Keeps a target folder a one-way replica of a source folder.
- Full sync on startup (copy-if-changed by size/mtime, extras in target are removed).
- After that, every create, modify, delete and rename under the source is replayed
  onto the target.
- Raw watchdog notifications are collapsed per path into one net effect
  (create / modify / delete) and applied once the tree has been quiet for a settle window.
- Every directory is tracked in a watch registry (one shared recursive watchdog watch);
  a new directory is registered as soon as its creation is seen, before its children
  produce notifications.
- At most one sync pass runs at a time, on a dedicated worker; observing never waits for it.
- Optional gitignore-style patterns for paths to leave out.
- Styled console output:
  - COPY / SYNC green
  - PURGE orange
  - failures / errors red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  python tree_replicator.py /src /dst
  python tree_replicator.py /src /dst --settle-window 1.0 --ignore "*.tmp" --ignore ".git/"
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import os
import shutil
import stat
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from queue import Empty, Queue
from typing import Callable, NamedTuple, Optional, Sequence

from colorama import just_fix_windows_console
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import ObservedWatch

LOGGER_NAME = "tree_replicator"

# Seconds of quiet required before pending changes are synced.
SETTLE_WINDOW = 0.5


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "SYNC": Ansi.GREEN,
    "PURGE": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "WATCH": Ansi.LIGHT_BROWN,
    "UNWATCH": Ansi.LIGHT_BROWN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except ValueError:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if action and action in base:
            action_color = Ansi.RED if action.endswith("_FAIL") else ACTION_COLORS.get(action, "")
            if action_color:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "replicator") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else _is_real_dir(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    target_dir: Path
    log_dir: Path
    settle_window_sec: float
    ignore_patterns: tuple[str, ...] = ()


class _ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors with exit status 1."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    p = _ArgumentParser(
        prog="tree-replicator",
        description="Continuously replicate a source folder onto a target folder (one-way).",
    )
    p.add_argument("source", help="Folder to replicate (source).")
    p.add_argument("target", help="Folder kept equal to the source (target).")
    p.add_argument(
        "--settle-window",
        type=float,
        default=SETTLE_WINDOW,
        help="Seconds without filesystem activity before pending changes are synced.",
    )
    p.add_argument("--log-dir", type=str, default=".", help="Directory for log files.")
    p.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="gitignore-style pattern for paths to leave out (repeatable).",
    )
    args = p.parse_args(argv)
    if args.settle_window <= 0:
        p.error("--settle-window must be greater than zero")
    return args


def build_config(args: argparse.Namespace) -> AppConfig:
    return AppConfig(
        source_dir=Path(args.source),
        target_dir=Path(args.target),
        log_dir=Path(args.log_dir).expanduser(),
        settle_window_sec=float(args.settle_window),
        ignore_patterns=tuple(args.ignore),
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(source: Path, target: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    target = target.expanduser().resolve()

    if not source.is_dir():
        raise ValueError(f"Source folder does not exist or is not a folder: {source}")
    if source == target:
        raise ValueError("Source and target folders must be different.")
    if _is_subpath(target, source):
        raise ValueError("Target folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, target):
        raise ValueError("Source folder must NOT be inside target folder (it would be purged).")

    return source, target


# -------------------------
# Ignore + filesystem helpers
# -------------------------

class IgnoreMatcher:
    def __init__(self, source_root: Path, patterns: Sequence[str]):
        self.source_root = source_root
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)
        self.enabled = bool(patterns)

    def is_ignored(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        if not self.enabled:
            return False
        try:
            rel = path.relative_to(self.source_root)
        except ValueError:
            return True
        if not rel.parts:
            return False
        rel_posix = rel.as_posix()
        if is_dir is None:
            is_dir = _is_real_dir(path)
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def _is_real_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def walk_directories(root: Path, ignore: Optional[IgnoreMatcher] = None) -> list[Path]:
    """Return *root* and every directory beneath it, parents before children.

    Symlinked directories are not followed and ignored directories are not entered.
    Listing errors propagate as OSError.
    """
    found: list[Path] = []
    stack = [Path(root)]
    while stack:
        directory = stack.pop()
        found.append(directory)
        with os.scandir(directory) as entries:
            children = sorted(Path(e.path) for e in entries if e.is_dir(follow_symlinks=False))
        if ignore is not None:
            children = [c for c in children if not ignore.is_ignored(c, is_dir=True)]
        stack.extend(reversed(children))
    return found


def mirror_tree(
    source: Path,
    target: Path,
    logger: logging.Logger,
    ignore: Optional[IgnoreMatcher] = None,
) -> None:
    """Make *target* equal to *source*.

    Directories are mirrored recursively: the target is created if missing, target
    children absent from the source (or ignored) are purged, and every source child is
    mirrored in turn. Anything else is copied only when the target is missing or its
    size or modification time differ; symlinks are copied as links, never followed.

    Raises OSError, FileNotFoundError when *source* no longer exists.
    """
    src_st = source.lstat()

    if stat.S_ISDIR(src_st.st_mode):
        if not _is_real_dir(target):
            if os.path.lexists(target):
                purge_tree(target, logger)
            target.mkdir(parents=True, exist_ok=True)
            log_action(logger, "MKDIR", str(target), path=target, is_dir=True)

        wanted: dict[str, Path] = {}
        for child in source.iterdir():
            if ignore is not None and ignore.is_ignored(child):
                continue
            wanted[child.name] = child

        for existing in sorted(target.iterdir()):
            if existing.name not in wanted:
                purge_tree(existing, logger)

        for name in sorted(wanted):
            mirror_tree(wanted[name], target / name, logger, ignore)
        return

    try:
        dst_st = target.lstat()
    except FileNotFoundError:
        dst_st = None

    if dst_st is not None:
        if (
            not stat.S_ISDIR(dst_st.st_mode)
            and dst_st.st_size == src_st.st_size
            and dst_st.st_mtime_ns == src_st.st_mtime_ns
        ):
            return
        # copy2 writes through an existing link and into an existing directory
        if stat.S_ISDIR(dst_st.st_mode) or stat.S_ISLNK(dst_st.st_mode) or stat.S_ISLNK(src_st.st_mode):
            purge_tree(target, logger)

    ensure_parent(target)
    shutil.copy2(source, target, follow_symlinks=False)
    log_action(logger, "COPY", f"{source} -> {target}", path=target, is_dir=False)


def purge_tree(path: Path, logger: logging.Logger) -> None:
    """Delete *path* and everything beneath it, bottom-up.

    Best effort: entries that cannot be removed are logged and skipped.
    """
    if not os.path.lexists(path):
        logger.debug("PURGE | nothing at %s", path)
        return
    is_dir = _is_real_dir(path)
    if _purge_entry(path, logger):
        log_action(logger, "PURGE", str(path), path=path, is_dir=is_dir)


def _purge_entry(path: Path, logger: logging.Logger) -> bool:
    if _is_real_dir(path):
        try:
            children = list(path.iterdir())
        except OSError as e:
            log_action(logger, "PURGE_FAIL", f"cannot list {path} | {e}", path=path, is_dir=True, level=logging.WARNING)
            children = []
        for child in children:
            _purge_entry(child, logger)
        remove = path.rmdir
    else:
        remove = path.unlink

    try:
        remove()
    except FileNotFoundError:
        # removed by someone else in the meantime
        return True
    except OSError as e:
        log_action(logger, "PURGE_FAIL", f"failed to delete {path} | {e}", path=path, level=logging.WARNING)
        return False
    return True


# -------------------------
# Notifications
# -------------------------

class EventKind(Enum):
    """Raw notification kinds, one per path."""

    CREATED = auto()
    MODIFIED = auto()
    DELETED = auto()


class Notification(NamedTuple):
    kind: EventKind
    path: Path


class NotificationHandler(FileSystemEventHandler):
    """Forwards watchdog callbacks onto a queue as raw notifications.

    Runs on watchdog's threads, so it only enqueues. A move is forwarded as a
    deletion of the old path followed by a creation of the new one.
    """

    def __init__(self, queue: Queue, ignore: Optional[IgnoreMatcher] = None):
        super().__init__()
        self.queue = queue
        self.ignore = ignore

    def _put(self, kind: EventKind, raw_path, is_dir: bool) -> None:
        path = Path(os.fsdecode(raw_path))
        if self.ignore is not None and self.ignore.is_ignored(path, is_dir=is_dir):
            return
        self.queue.put(Notification(kind, path))

    def on_created(self, event):
        self._put(EventKind.CREATED, event.src_path, event.is_directory)

    def on_modified(self, event):
        self._put(EventKind.MODIFIED, event.src_path, event.is_directory)

    def on_deleted(self, event):
        self._put(EventKind.DELETED, event.src_path, event.is_directory)

    def on_moved(self, event):
        self._put(EventKind.DELETED, event.src_path, event.is_directory)
        self._put(EventKind.CREATED, event.dest_path, event.is_directory)


# -------------------------
# Watch registry
# -------------------------

@dataclass(frozen=True)
class DirectoryWatch:
    """Handle for one observed directory."""

    path: Path


class WatchRegistry:
    """Directories currently observed, one handle each.

    All directories share a single recursive watchdog watch on *root*, so the OS cost
    does not grow with the number of directories (one inotify instance on Linux, not
    one per directory). The registry keeps the per-directory bookkeeping: directory ->
    handle and back. The shared watch is scheduled with the first registration and
    unscheduled when the last directory is dropped. Owned by the observation worker.
    """

    def __init__(
        self,
        observer,
        handler: FileSystemEventHandler,
        root: Path,
        logger: logging.Logger,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.observer = observer
        self.handler = handler
        self.root = root
        self.logger = logger
        self.ignore = ignore
        self._observed: Optional[ObservedWatch] = None
        self._by_dir: dict[Path, DirectoryWatch] = {}
        self._by_watch: dict[DirectoryWatch, Path] = {}

    def register_tree(self, root: Path) -> list[Path]:
        """Watch *root* and every directory below it.

        Raises OSError on the first failure; directories registered before it stay
        registered.
        """
        directories = walk_directories(root, self.ignore)
        for directory in directories:
            self.register_one(directory)
        return directories

    def register_one(self, directory: Path) -> DirectoryWatch:
        if self._observed is None:
            self._observed = self.observer.schedule(self.handler, str(self.root), recursive=True)
        watch = DirectoryWatch(directory)
        self._by_dir[directory] = watch
        self._by_watch[watch] = directory
        log_action(self.logger, "WATCH", str(directory), path=directory, is_dir=True)
        return watch

    def unregister(self, watch: DirectoryWatch) -> None:
        directory = self._by_watch.pop(watch, None)
        if directory is None:
            return
        if self._by_dir.get(directory) == watch:
            del self._by_dir[directory]
        log_action(self.logger, "UNWATCH", str(directory), path=directory, is_dir=True)
        if not self._by_watch and self._observed is not None:
            observed, self._observed = self._observed, None
            try:
                self.observer.unschedule(observed)
            except KeyError:
                # already dropped by the observer (stopped, or the emitter died with the root)
                pass

    def resolve(self, watch: DirectoryWatch) -> Path:
        """Directory a watch handle stands for. KeyError for unknown handles."""
        return self._by_watch[watch]

    def lookup(self, directory: Path) -> Optional[DirectoryWatch]:
        return self._by_dir.get(directory)

    def discard_tree(self, directory: Path) -> int:
        """Unregister *directory* and every registered directory beneath it."""
        doomed = [
            watch
            for watch, watched in self._by_watch.items()
            if watched == directory or directory in watched.parents
        ]
        for watch in doomed:
            self.unregister(watch)
        return len(doomed)

    def is_empty(self) -> bool:
        return not self._by_watch

    def directories(self) -> list[Path]:
        return sorted(self._by_dir)

    def __len__(self) -> int:
        return len(self._by_watch)

    def __contains__(self, directory: object) -> bool:
        return directory in self._by_dir


# -------------------------
# Coalescing
# -------------------------

@dataclass(frozen=True)
class Batch:
    """Snapshot of the pending paths handed to one sync pass."""

    to_delete: frozenset[Path] = frozenset()
    to_create: frozenset[Path] = frozenset()
    to_modify: frozenset[Path] = frozenset()

    @property
    def total(self) -> int:
        return len(self.to_delete) + len(self.to_create) + len(self.to_modify)


def _add_or_discard(paths: set[Path], should_add: bool, path: Path) -> None:
    if should_add:
        paths.add(path)
    else:
        paths.discard(path)


class EventCoalescer:
    """Collapses raw notifications into one net effect per path.

    Applied per notification, in arrival order:
      - DELETED                            -> delete
      - CREATED while pending delete       -> modify (deleted, then recreated)
      - CREATED otherwise                  -> create
      - MODIFIED while pending create      -> create
      - MODIFIED otherwise                 -> modify
    A path is pending in at most one of the three sets. Newly created directories are
    registered for watching before classification so their children are observed.
    Notifications about *root* itself only update the registry.
    """

    def __init__(self, registry: WatchRegistry, logger: logging.Logger, root: Optional[Path] = None):
        self.registry = registry
        self.logger = logger
        self.root = root
        self._created: set[Path] = set()
        self._modified: set[Path] = set()
        self._deleted: set[Path] = set()

    @property
    def created(self) -> frozenset[Path]:
        return frozenset(self._created)

    @property
    def modified(self) -> frozenset[Path]:
        return frozenset(self._modified)

    @property
    def deleted(self) -> frozenset[Path]:
        return frozenset(self._deleted)

    def has_pending(self) -> bool:
        return bool(self._created or self._modified or self._deleted)

    def __len__(self) -> int:
        return len(self._created) + len(self._modified) + len(self._deleted)

    def store(self, kind: EventKind, path: Path) -> None:
        path = Path(path)
        self._track_directories(kind, path)
        if path == self.root:
            return

        to_create = False
        to_modify = False
        to_delete = kind is EventKind.DELETED
        if kind is EventKind.CREATED:
            to_modify = path in self._deleted
            to_create = not to_modify
        elif kind is EventKind.MODIFIED:
            to_create = path in self._created
            to_modify = not to_create

        _add_or_discard(self._created, to_create, path)
        _add_or_discard(self._modified, to_modify, path)
        _add_or_discard(self._deleted, to_delete, path)

    def _track_directories(self, kind: EventKind, path: Path) -> None:
        if kind is EventKind.CREATED and _is_real_dir(path):
            try:
                self.registry.register_tree(path)
            except OSError as e:
                log_action(self.logger, "WATCH", f"ERROR registering {path} | {e}", path=path, is_dir=True, level=logging.ERROR)
        elif kind is EventKind.DELETED:
            self.registry.discard_tree(path)

    def drain(self) -> Batch:
        """Snapshot the pending sets and clear them."""
        batch = Batch(
            to_delete=frozenset(self._deleted),
            to_create=frozenset(self._created),
            to_modify=frozenset(self._modified),
        )
        self._deleted.clear()
        self._created.clear()
        self._modified.clear()
        return batch


# -------------------------
# Sync
# -------------------------

class SyncDispatcher:
    """Applies a batch to the target: deletions, then creations, then modifications."""

    def __init__(
        self,
        source_root: Path,
        target_root: Path,
        logger: logging.Logger,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.source_root = source_root
        self.target_root = target_root
        self.logger = logger
        self.ignore = ignore

    def resolve_target(self, path: Path) -> Path:
        return self.target_root / path.relative_to(self.source_root)

    def apply(self, batch: Batch) -> None:
        log_action(
            self.logger,
            "SYNC",
            f"{len(batch.to_delete)} deletions, {len(batch.to_create)} creations, "
            f"{len(batch.to_modify)} modifications",
        )
        for path in sorted(batch.to_delete):
            try:
                purge_tree(self.resolve_target(path), self.logger)
            except OSError as e:
                self._failed(path, "delete", e)
        for path in sorted(batch.to_create):
            self._mirror(path, "create")
        for path in sorted(batch.to_modify):
            # directory contents are covered by their children's notifications
            try:
                is_file = path.is_file()
            except OSError as e:
                self._failed(path, "modify", e)
                continue
            if is_file:
                self._mirror(path, "modify")

    def _mirror(self, path: Path, reason: str) -> None:
        try:
            mirror_tree(path, self.resolve_target(path), self.logger, self.ignore)
        except OSError as e:
            self._failed(path, reason, e)

    def _failed(self, path: Path, reason: str, error: OSError) -> None:
        # is_dir is given so logging never stats a path that just failed
        log_action(self.logger, "SYNC_FAIL", f"({reason}) {path} | {error}", path=path, is_dir=False, level=logging.ERROR)


_STOP = object()


class SyncWorker(threading.Thread):
    """Runs sync passes one at a time, in submission order."""

    def __init__(
        self,
        dispatcher: SyncDispatcher,
        logger: logging.Logger,
        on_synced: Optional[Callable[[Batch], None]] = None,
    ):
        super().__init__(name="SyncWorker", daemon=True)
        self.dispatcher = dispatcher
        self.logger = logger
        self.on_synced = on_synced
        self._batches: Queue = Queue()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def submit(self, batch: Batch) -> bool:
        if self._closed.is_set():
            self.logger.warning("SYNC | worker closed, dropping batch of %d paths", batch.total)
            return False
        self._batches.put(batch)
        return True

    def close(self) -> None:
        """Refuse new batches; the ones already submitted still run."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._batches.put(_STOP)

    def run(self) -> None:
        while True:
            batch = self._batches.get()
            if batch is _STOP:
                break
            try:
                self.dispatcher.apply(batch)
                if self.on_synced is not None:
                    self.on_synced(batch)
            except Exception as e:
                log_action(self.logger, "SYNC_FAIL", f"sync pass error: {e}", level=logging.ERROR)
        self.logger.info("SYNC: stopped")


class BatchScheduler(threading.Thread):
    """Observation worker.

    Feeds notifications to the coalescer and hands settled batches to the sync worker.
    While nothing is pending it waits indefinitely for the next notification; once
    something is pending it waits at most one settle window, and a quiet window
    dispatches the batch. Ends when the registry runs empty or stop is requested, and
    always flushes what is still pending on the way out.
    """

    def __init__(
        self,
        notifications: Queue,
        coalescer: EventCoalescer,
        registry: WatchRegistry,
        sync_worker: SyncWorker,
        logger: logging.Logger,
        settle_window: float = SETTLE_WINDOW,
    ):
        super().__init__(name="BatchScheduler", daemon=True)
        self.notifications = notifications
        self.coalescer = coalescer
        self.registry = registry
        self.sync_worker = sync_worker
        self.logger = logger
        self.settle_window = settle_window

    def request_stop(self) -> None:
        self.notifications.put(_STOP)

    def run(self) -> None:
        self.logger.info("WATCH: observing %d directories (settle window %.2fs)", len(self.registry), self.settle_window)
        try:
            while not self.registry.is_empty():
                timeout = self.settle_window if self.coalescer.has_pending() else None
                try:
                    item = self.notifications.get(timeout=timeout)
                except Empty:
                    self._dispatch()
                    continue
                if item is _STOP:
                    break
                self.coalescer.store(item.kind, item.path)
        except Exception as e:
            log_action(self.logger, "SYNC_FAIL", f"observation loop error: {e}", level=logging.ERROR)
        finally:
            self._dispatch()
            self.sync_worker.close()
            self.logger.info("WATCH: stopped")

    def _dispatch(self) -> None:
        if self.coalescer.has_pending():
            self.sync_worker.submit(self.coalescer.drain())


# -------------------------
# Replicator
# -------------------------

class Replicator:
    """Keeps *target* a one-way replica of *source* between start() and stop()."""

    def __init__(
        self,
        source: Path,
        target: Path,
        *,
        settle_window: float = SETTLE_WINDOW,
        ignore_patterns: Sequence[str] = (),
        logger: Optional[logging.Logger] = None,
        on_synced: Optional[Callable[[Batch], None]] = None,
        observer_factory: Callable[[], object] = Observer,
    ):
        self.source_root, self.target_root = validate_paths(Path(source), Path(target))
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.settle_window = settle_window
        self.ignore = IgnoreMatcher(self.source_root, list(ignore_patterns))

        self.notifications: Queue = Queue()
        self.observer = observer_factory()
        handler = NotificationHandler(self.notifications, self.ignore)
        self.registry = WatchRegistry(self.observer, handler, self.source_root, self.logger, self.ignore)
        self.coalescer = EventCoalescer(self.registry, self.logger, root=self.source_root)
        self.dispatcher = SyncDispatcher(self.source_root, self.target_root, self.logger, self.ignore)
        self.sync_worker = SyncWorker(self.dispatcher, self.logger, on_synced=on_synced)
        self.scheduler = BatchScheduler(
            self.notifications,
            self.coalescer,
            self.registry,
            self.sync_worker,
            self.logger,
            settle_window=settle_window,
        )

    def start(self) -> None:
        """Watch the source, run the initial full sync, then start both workers.

        Raises OSError if registration or the initial sync fails.
        """
        self.observer.start()
        try:
            self.registry.register_tree(self.source_root)
            self.logger.info("FULL SYNC: start")
            mirror_tree(self.source_root, self.target_root, self.logger, self.ignore)
            self.logger.info("FULL SYNC: done")
        except OSError as e:
            self.logger.error("Exception during replicator start-up: %s", e)
            self.observer.stop()
            self.observer.join(timeout=10)
            raise
        self.sync_worker.start()
        self.scheduler.start()

    def is_running(self) -> bool:
        return self.scheduler.is_alive()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop observing, flush pending changes and let the sync worker drain."""
        self.observer.stop()
        if self.scheduler.is_alive():
            self.scheduler.request_stop()
            self.scheduler.join(timeout)
        if self.scheduler.is_alive():
            # the scheduler closes the sync worker itself once its final flush is submitted
            self.logger.warning("WATCH: observation worker still flushing after %ss", timeout)
        else:
            self.sync_worker.close()
            if self.sync_worker.is_alive():
                self.sync_worker.join(timeout)
        if self.observer.is_alive():
            self.observer.join(timeout)


# -------------------------
# Main
# -------------------------

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    cfg = build_config(args)

    logger = setup_logger(cfg.log_dir)

    try:
        replicator = Replicator(
            cfg.source_dir,
            cfg.target_dir,
            settle_window=cfg.settle_window_sec,
            ignore_patterns=cfg.ignore_patterns,
            logger=logger,
        )
        logger.info("Source: %s", replicator.source_root)
        logger.info("Target: %s", replicator.target_root)
    except ValueError as e:
        logger.error("Config error: %s", e)
        return 1

    try:
        replicator.start()
    except OSError:
        return 1

    logger.info("Replicating... (Ctrl+C to stop)")
    try:
        while replicator.is_running():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        replicator.stop()
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
