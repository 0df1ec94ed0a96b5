"""Freshness/watch manager.

Design:
- File events land in a debounce buffer (``notify``); a single consumer task
  flushes it after ``debounce_ms`` of quiet or once the oldest pending event
  is ``batch_window_ms`` old, whichever comes first
- Every pass runs on a one-worker executor, so batch reindexes and catch-up
  passes never overlap; the consumer waits for a pass before the next flush
- A batch with more distinct files than ``storm_threshold`` is a storm: with
  ``cascade_reindex`` it is split into ``cascade_batch_size`` chunks with
  ``cascade_delay_ms`` between them, otherwise it is deferred to catch-up
- ``needs_catchup`` is set for the duration of a storm and cleared only after
  its final chunk committed; a failed reindex records ``last_error`` and
  leaves it set
- A failed batch and a deferred storm schedule a catch-up pass, retried with
  exponential backoff until one succeeds
- A heartbeat task stamps ``last_heartbeat_at`` on a fixed interval, whatever
  the event activity
- State row writes go through a one-worker writer thread in order, so a
  writer holding the database lock never stalls the event loop
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import structlog

from codeweave.index.git import head_commit_sha
from codeweave.index.ignore import IgnoreChecker, discover_files
from codeweave.store.models import WatchStateRow
from codeweave.watch.state import (
    WatchHealth,
    WatchPhase,
    WatchStateStore,
    WatcherStats,
    config_snapshot,
    derive_health,
)
from codeweave.watch.watcher import FileWatcher

if TYPE_CHECKING:
    from codeweave.config.models import WatchConfig
    from codeweave.index.ops import IndexCoordinator, IndexSummary

log = structlog.get_logger(__name__)

STORM_ERROR = "watch_event_storm"
LATENCY_WINDOW = 100  # batches in the rolling event-to-commit average


class WatchManager:
    """
    Owns the watch state row and schedules reindex passes from file events.

    Usage::

        manager = WatchManager(coordinator)
        await manager.start()          # watcher, heartbeat, catch-up
        health = manager.status()
        await manager.stop()
    """

    def __init__(
        self,
        coordinator: IndexCoordinator,
        config: WatchConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.coordinator = coordinator
        self.config = config or coordinator.config.watch
        self._clock = clock
        self._state_store = WatchStateStore(coordinator.db)
        self._row = WatchStateRow(config_json=config_snapshot(self.config))
        self._had_prior_state = False

        # Debounce buffer; insertion-ordered set of relative paths
        self._pending: dict[str, None] = {}
        self._first_event_mono = 0.0
        self._last_event_mono = 0.0
        self._wakeup: asyncio.Event | None = None

        self._events_received = 0
        self._batches_committed = 0
        self._reindex_errors = 0
        self._latencies_ms: deque[float] = deque(maxlen=LATENCY_WINDOW)

        self._executor: ThreadPoolExecutor | None = None
        self._state_writer: ThreadPoolExecutor | None = None
        self._catchup_failures = 0
        self._tasks: list[asyncio.Task[Any]] = []
        self._catchup_task: asyncio.Task[None] | None = None
        self._watcher: FileWatcher | None = None
        self.last_summary: IndexSummary | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._executor is not None

    async def start(self, *, watch: bool = True, catch_up: bool = True) -> None:
        """Attach the watcher, start heartbeat and consumer, run catch-up detection.

        Args:
            watch: Attach a filesystem watcher. Without it, events arrive only
                through ``notify``.
            catch_up: Decide whether a reconciliation pass is owed and run it.
        """
        if self._executor is not None:
            return
        await asyncio.to_thread(self.coordinator.initialize)

        stored = await asyncio.to_thread(self._state_store.load)
        self._had_prior_state = stored is not None and stored.last_reindex_ok_at is not None
        if stored is not None:
            self._row = stored

        now = self._clock()
        self._row.phase = WatchPhase.WATCHING.value
        self._row.started_at = now
        self._row.last_heartbeat_at = now
        self._row.suspected_dead = False
        self._row.config_json = config_snapshot(self.config)
        self._persist()

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codeweave-indexer")
        self._wakeup = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._consume(self._wakeup), name="codeweave-watch-consumer"),
            asyncio.create_task(self._heartbeat_loop(), name="codeweave-watch-heartbeat"),
        ]
        if watch:
            self._watcher = FileWatcher(
                self.coordinator.repo_root,
                on_change=self.notify,
                on_ignore_change=self.request_catchup,
                force_polling=self.config.force_polling,
            )
            await self._watcher.start()
        log.info("watch_manager_started", **self.config.model_dump())

        if catch_up:
            reason = await asyncio.get_running_loop().run_in_executor(
                self._executor, self.detect_catchup
            )
            if reason is not None:
                log.info("watch_catchup_required", reason=reason)
                self.request_catchup()

    async def stop(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        tasks = [*self._tasks]
        if self._catchup_task is not None:
            tasks.append(self._catchup_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        self._catchup_task = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

        self._row.phase = WatchPhase.IDLE.value
        await asyncio.wrap_future(self._persist())
        if self._state_writer is not None:
            self._state_writer.shutdown(wait=True)
            self._state_writer = None
        log.info("watch_manager_stopped", pending=len(self._pending))

    # =========================================================================
    # Events
    # =========================================================================

    def notify(self, paths: Iterable[str]) -> None:
        """Enqueue changed workspace-relative paths into the debounce buffer."""
        added = False
        for path in paths:
            if not self._pending:
                self._first_event_mono = time.monotonic()
            self._pending[path] = None
            self._events_received += 1
            added = True
        if not added:
            return
        self._last_event_mono = time.monotonic()
        self._row.last_event_at = self._clock()
        if self._wakeup is not None:
            self._wakeup.set()
        log.debug("paths_queued", total_pending=len(self._pending))

    def _flush_deadline(self) -> float:
        quiet = self._last_event_mono + self.config.debounce_ms / 1000
        window = self._first_event_mono + self.config.batch_window_ms / 1000
        return min(quiet, window)

    async def _consume(self, wakeup: asyncio.Event) -> None:
        while True:
            await wakeup.wait()
            while True:
                delay = self._flush_deadline() - time.monotonic()
                if delay <= 0:
                    break
                await asyncio.sleep(delay)
            wakeup.clear()
            batch = list(self._pending)
            first_event = self._first_event_mono
            self._pending.clear()
            if batch and await self.process_batch(batch):
                self._latencies_ms.append((time.monotonic() - first_event) * 1000)

    async def process_batch(self, paths: list[str]) -> bool:
        """Reindex one flushed batch, chunking storms. Returns True on success."""
        storm = len(paths) > self.config.storm_threshold
        catchup_before = self._row.needs_catchup
        chunks = [paths]

        if storm:
            log.warning(
                "watch_event_storm",
                files=len(paths),
                threshold=self.config.storm_threshold,
                cascade=self.config.cascade_reindex,
            )
            self._row.needs_catchup = True
            if not self.config.cascade_reindex:
                self._row.last_error = STORM_ERROR
                self._persist()
                self._schedule_recovery()
                return False
            self._persist()
            size = self.config.cascade_batch_size
            chunks = [paths[i : i + size] for i in range(0, len(paths), size)]

        for index, chunk in enumerate(chunks):
            if index:
                await asyncio.sleep(self.config.cascade_delay_ms / 1000)
            try:
                self.last_summary = await self._run_in_executor(
                    self.coordinator.reindex_paths, chunk
                )
            except Exception as e:  # noqa: BLE001
                self._record_failure(e, chunk=index + 1, chunks=len(chunks))
                self._schedule_recovery()
                return False
            if storm:
                log.info("watch_storm_chunk_committed", chunk=index + 1, chunks=len(chunks))

        self._batches_committed += 1
        self._row.last_reindex_ok_at = self._clock()
        if storm and not catchup_before:
            self._row.needs_catchup = False
        if not self._row.needs_catchup:
            self._row.last_error = None
        self._persist()
        return True

    def _record_failure(self, error: Exception, **context: Any) -> None:
        self._reindex_errors += 1
        self._row.last_error = str(error) or type(error).__name__
        self._row.needs_catchup = True
        self._persist()
        log.error("watch_reindex_failed", error=self._row.last_error, **context)

    # =========================================================================
    # Catch-up
    # =========================================================================

    def detect_catchup(self) -> str | None:
        """Reason a reconciliation pass is owed, or None if the index can be trusted."""
        if not self._had_prior_state:
            return "no_prior_state"
        if self._row.needs_catchup:
            return "catchup_incomplete"
        head = head_commit_sha(self.coordinator.repo_root)
        if head is not None and head != self._row.cursor_commit_sha:
            return "git_head_moved"
        last_ok = self._row.last_reindex_ok_at or 0.0
        if self._modified_since(last_ok):
            return "files_modified"
        return None

    def _modified_since(self, since: float) -> bool:
        root = self.coordinator.repo_root
        index_config = self.coordinator.config.index
        paths = discover_files(
            root,
            IgnoreChecker(root),
            self.coordinator.registry.suffixes,
            index_config.excluded_extensions,
            index_config.max_file_size_mb * 1024 * 1024,
        )
        tracked = self.coordinator.store.list_file_states()
        if set(paths) != set(tracked):
            return True
        for path in paths:
            try:
                if (root / path).stat().st_mtime > since:
                    return True
            except OSError:
                return True
        return False

    def request_catchup(self, delay: float = 0.0) -> None:
        """Schedule a catch-up pass after ``delay`` seconds unless one is already pending."""
        task = self._catchup_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        self._row.needs_catchup = True
        self._persist()
        self._catchup_task = asyncio.get_running_loop().create_task(
            self._catch_up_after(delay), name="codeweave-watch-catchup"
        )

    def _schedule_recovery(self) -> None:
        """Owe a catch-up for work that did not commit, backing off per consecutive failure."""
        if not self.running:
            return
        delay = min(
            self.config.catchup_retry_base_sec * 2**self._catchup_failures,
            self.config.catchup_retry_max_sec,
        )
        log.info("watch_catchup_scheduled", delay_sec=delay, failures=self._catchup_failures)
        self.request_catchup(delay)

    async def _catch_up_after(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self.catch_up()

    async def catch_up(self) -> bool:
        """Incremental workspace pass; clears needs_catchup and moves the cursor on success."""
        self._row.needs_catchup = True
        self._persist()
        try:
            self.last_summary = await self._run_in_executor(
                self.coordinator.index_workspace, "incremental"
            )
        except Exception as e:  # noqa: BLE001
            self._catchup_failures += 1
            self._record_failure(e, phase="catch_up", failures=self._catchup_failures)
            self._schedule_recovery()
            return False

        now = self._clock()
        self._catchup_failures = 0
        self._row.needs_catchup = False
        self._row.last_error = None
        self._row.last_reindex_ok_at = now
        self._row.cursor_commit_sha = head_commit_sha(self.coordinator.repo_root)
        self._row.cursor_reconcile_completed_at = now
        self._had_prior_state = True
        self._persist()
        log.info("watch_catchup_complete", index_version=self.last_summary.index_version)
        return True

    async def _run_in_executor(self, fn: Callable[..., IndexSummary], *args: Any) -> IndexSummary:
        if self._executor is None:
            raise RuntimeError("WatchManager is not started")
        return await asyncio.get_running_loop().run_in_executor(self._executor, fn, *args)

    # =========================================================================
    # Heartbeat and health
    # =========================================================================

    def heartbeat(self) -> None:
        self._row.last_heartbeat_at = self._clock()
        if self._row.suspected_dead:
            log.info("watch_heartbeat_resumed")
        self._row.suspected_dead = False
        self._persist()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_sec)
            self.heartbeat()

    def status(self) -> WatchHealth:
        """Health snapshot; records a suspected-dead transition when one is observed."""
        health = derive_health(
            self._row,
            self._clock(),
            self.config.staleness_window_ms,
            pending_events=len(self._pending),
            stats=self.stats(),
        )
        if health.suspected_dead and not self._row.suspected_dead:
            self._row.suspected_dead = True
            log.warning("watch_suspected_dead", heartbeat_age_ms=health.heartbeat_age_ms)
            self._persist()
        return health

    def stats(self) -> WatcherStats:
        watcher = self._watcher
        latencies = self._latencies_ms
        return WatcherStats(
            events_received=self._events_received,
            batches_committed=self._batches_committed,
            reindex_errors=self._reindex_errors,
            watcher_errors=watcher.errors if watcher is not None else 0,
            dirs_watched=watcher.dirs_watched if watcher is not None else 0,
            avg_latency_ms=round(sum(latencies) / len(latencies), 3) if latencies else None,
        )

    def snapshot(self) -> WatchStateRow:
        """Copy of the current state row."""
        return WatchStateRow.model_validate(self._row.model_dump())

    def _persist(self) -> Future[bool]:
        """Queue a write of the current row; writes land in submission order."""
        if self._state_writer is None:
            self._state_writer = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="codeweave-watch-state"
            )
        return self._state_writer.submit(self._state_store.save, self.snapshot())
