"""Workspace-scoped lock serializing indexing passes.

The lock is a file created with O_EXCL holding the owner's pid and
acquisition time. A holder that died without releasing leaves the file
behind; such a lock is stale when:

- its pid is no longer alive,
- its pid is alive but the process was created after the lock was taken
  (pid reuse), or
- it carries no readable pid and is older than ``unknown_owner_stale_sec``.

Stale locks are removed automatically. A live holder makes the caller wait up
to ``acquire_timeout_sec`` before LockContention is raised.
"""

from __future__ import annotations

import contextlib
import json
import os
import threading
import time
from collections.abc import Generator
from dataclasses import dataclass
from pathlib import Path

import psutil
import structlog

from codeweave.config.models import LockConfig
from codeweave.core.errors import LockContention

logger = structlog.get_logger()

LOCK_FILE = "index.lock"
# Tolerance between our recorded time and psutil's process start time
_CREATE_TIME_SLACK_SEC = 1.0


@dataclass(frozen=True)
class LockOwner:
    pid: int | None
    acquired_at: float | None


def _read_owner(path: Path) -> LockOwner | None:
    """Owner recorded in the lock file, or None if the file is gone."""
    try:
        raw = path.read_text()
    except FileNotFoundError:
        return None
    try:
        data = json.loads(raw)
        pid = int(data["pid"])
        acquired_at = float(data.get("acquired_at", 0.0)) or None
    except (ValueError, KeyError, TypeError):
        return LockOwner(pid=None, acquired_at=None)
    return LockOwner(pid=pid, acquired_at=acquired_at)


def _pid_is_live(pid: int, acquired_at: float | None) -> bool:
    if not psutil.pid_exists(pid):
        return False
    if acquired_at is None:
        return True
    try:
        created = psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True
    return created <= acquired_at + _CREATE_TIME_SLACK_SEC


class WorkspaceLock:
    """Cross-process lock for one workspace, also serializing threads of this process."""

    def __init__(self, data_dir: Path, config: LockConfig | None = None) -> None:
        self.path = data_dir / LOCK_FILE
        self._config = config or LockConfig()
        self._thread_lock = threading.Lock()
        self.stale_recoveries = 0

    def is_stale(self, owner: LockOwner) -> bool:
        if owner.pid is None:
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            return age > self._config.unknown_owner_stale_sec
        return not _pid_is_live(owner.pid, owner.acquired_at)

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            json.dump({"pid": os.getpid(), "acquired_at": time.time()}, f)
            f.flush()
            os.fsync(f.fileno())
        return True

    def _recover_if_stale(self) -> LockOwner | None:
        """Remove the lock file if its owner is stale. Returns the live owner otherwise."""
        owner = _read_owner(self.path)
        if owner is None:
            return None
        if not self.is_stale(owner):
            return owner
        logger.warning("stale_lock_recovered", path=str(self.path), pid=owner.pid)
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        self.stale_recoveries += 1
        return None

    def acquire(self, timeout_sec: float | None = None) -> None:
        timeout = self._config.acquire_timeout_sec if timeout_sec is None else timeout_sec
        started = time.monotonic()
        deadline = started + timeout

        if not self._thread_lock.acquire(timeout=max(timeout, 0.0)):
            raise LockContention.held_by(str(self.path), os.getpid(), time.monotonic() - started)

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            while True:
                if self._try_create():
                    logger.debug("workspace_lock_acquired", path=str(self.path))
                    return
                owner = self._recover_if_stale()
                if owner is None:
                    continue
                if time.monotonic() >= deadline:
                    raise LockContention.held_by(
                        str(self.path), owner.pid, time.monotonic() - started
                    )
                time.sleep(self._config.poll_interval_sec)
        except BaseException:
            self._thread_lock.release()
            raise

    def release(self) -> None:
        owner = _read_owner(self.path)
        if owner is not None and owner.pid == os.getpid():
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()
        self._thread_lock.release()
        logger.debug("workspace_lock_released", path=str(self.path))

    @contextlib.contextmanager
    def hold(self, timeout_sec: float | None = None) -> Generator[None, None, None]:
        self.acquire(timeout_sec)
        try:
            yield
        finally:
            self.release()
