"""File watcher using watchfiles for async filesystem monitoring.

Design:
- Python walks the repo tree respecting IgnoreChecker pruning tiers
- Builds an explicit list of directories to watch
- Passes them to awatch with recursive=False (one inotify watch per dir)
- Reacts to new directory creation by restarting awatch
- Forwards filtered, workspace-relative paths immediately; debouncing and
  batching belong to the WatchManager
- An ignore-file change reloads the filter and asks for a catch-up pass
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from watchfiles import Change, awatch

from codeweave.index.ignore import IGNORE_FILES, IgnoreChecker

log = structlog.get_logger(__name__)

RESTART_BACKOFF_SEC = 1.0


def _collect_watch_dirs(repo_root: Path, checker: IgnoreChecker) -> list[Path]:
    """Every directory under repo_root that survives pruning, root first."""
    dirs: list[Path] = [repo_root]
    try:
        for dirpath, dirnames, _filenames in repo_root.walk():
            dirnames[:] = [d for d in dirnames if not checker.should_prune_dir(d)]
            rel = dirpath.relative_to(repo_root).as_posix()
            kept = []
            for d in dirnames:
                rel_dir = d if rel == "." else f"{rel}/{d}"
                if checker.is_excluded_rel(f"{rel_dir}/"):
                    continue
                kept.append(d)
                dirs.append(dirpath / d)
            dirnames[:] = kept
    except OSError as e:
        log.warning("watch_dir_walk_failed", repo_root=str(repo_root), error=str(e))
    return dirs


@dataclass
class FileWatcher:
    """Async watcher feeding changed paths to a callback."""

    repo_root: Path
    on_change: Callable[[list[str]], None]
    on_ignore_change: Callable[[], None] | None = None
    force_polling: bool = False

    _checker: IgnoreChecker = field(init=False)
    _task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _watched_dirs: set[Path] = field(default_factory=set, init=False)
    errors: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.repo_root = self.repo_root.resolve()
        self._checker = IgnoreChecker(self.repo_root)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def dirs_watched(self) -> int:
        return len(self._watched_dirs)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._watch_loop(), name="codeweave-watcher")
        log.info(
            "file_watcher_started",
            repo_root=str(self.repo_root),
            mode="polling" if self.force_polling else "native_nonrecursive",
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(self._task, timeout=2.0)
            self._task = None
        log.info("file_watcher_stopped")

    async def _watch_loop(self) -> None:
        while not self._stop_event.is_set():
            watch_dirs = _collect_watch_dirs(self.repo_root, self._checker)
            self._watched_dirs = set(watch_dirs)
            log.debug("watch_dirs_collected", count=len(watch_dirs))
            try:
                async for changes in awatch(
                    *watch_dirs,
                    recursive=False,
                    stop_event=self._stop_event,
                    force_polling=self.force_polling,
                    ignore_permission_denied=True,
                ):
                    if self.handle_changes(changes):
                        log.info("watcher_restart_requested", reason="new_directories")
                        break
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                if self._stop_event.is_set():
                    return
                self.errors += 1
                log.error("watcher_error", error=str(e), errors=self.errors)
                await asyncio.sleep(RESTART_BACKOFF_SEC)

    def handle_changes(self, changes: set[tuple[Change, str]]) -> bool:
        """Forward relevant paths. Returns True when a watcher restart is needed."""
        needs_restart = False
        ignore_changed = False
        queued: list[str] = []

        for change_type, path_str in changes:
            path = Path(path_str)
            try:
                rel = path.relative_to(self.repo_root).as_posix()
            except ValueError:
                continue
            parts = rel.split("/")
            if any(self._checker.should_prune_dir(p) for p in parts[:-1]):
                continue

            if change_type == Change.added and path.is_dir():
                if self._checker.should_prune_dir(path.name) or self._checker.is_excluded_rel(rel):
                    continue
                if path not in self._watched_dirs:
                    log.info("new_directory_detected", path=rel)
                    needs_restart = True
                # Files moved in together with the directory raise no events of their own
                queued.append(rel)
                continue

            if parts[-1] in IGNORE_FILES:
                ignore_changed = True
                continue

            if self._checker.is_excluded_rel(rel):
                continue
            queued.append(rel)

        if ignore_changed:
            self._checker = IgnoreChecker(self.repo_root)
            log.info("ignore_patterns_reloaded")
            if self.on_ignore_change is not None:
                self.on_ignore_change()
        if queued:
            self.on_change(sorted(set(queued)))
        return needs_restart or ignore_changed
