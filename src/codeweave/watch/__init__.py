"""Freshness/watch subsystem: file watcher, debounced batching, health."""

from codeweave.watch.manager import WatchManager
from codeweave.watch.state import (
    WatchHealth,
    WatchPhase,
    WatchStateStore,
    WatcherStats,
    derive_health,
)
from codeweave.watch.watcher import FileWatcher

__all__ = [
    "WatchManager",
    "WatchHealth",
    "WatchPhase",
    "WatchStateStore",
    "WatcherStats",
    "derive_health",
    "FileWatcher",
]
