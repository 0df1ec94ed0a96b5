"""Tests for the workspace lock."""

from __future__ import annotations

import json
import os
import subprocess
import time
from pathlib import Path

import pytest

from codeweave.config.models import LockConfig
from codeweave.core.errors import LockContention
from codeweave.store.lock import LockOwner, WorkspaceLock


def _dead_pid() -> int:
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


class TestWorkspaceLock:
    """Acquire, release and stale recovery."""

    def test_acquire_writes_owner_and_release_removes_file(self, tmp_path: Path) -> None:
        lock = WorkspaceLock(tmp_path)

        lock.acquire()
        data = json.loads(lock.path.read_text())
        assert data["pid"] == os.getpid()
        assert data["acquired_at"] > 0

        lock.release()
        assert not lock.path.exists()

    def test_hold_releases_on_error(self, tmp_path: Path) -> None:
        lock = WorkspaceLock(tmp_path)

        with pytest.raises(RuntimeError), lock.hold():
            raise RuntimeError("boom")

        assert not lock.path.exists()
        lock.acquire(timeout_sec=0)
        lock.release()

    def test_live_holder_causes_contention(self, tmp_path: Path) -> None:
        holder = WorkspaceLock(tmp_path)
        holder.acquire()
        try:
            contender = WorkspaceLock(tmp_path, LockConfig(poll_interval_sec=0.01))
            with pytest.raises(LockContention) as exc_info:
                contender.acquire(timeout_sec=0.05)
            assert exc_info.value.details["pid"] == os.getpid()
        finally:
            holder.release()

    def test_dead_pid_lock_is_recovered(self, tmp_path: Path) -> None:
        lock = WorkspaceLock(tmp_path)
        lock.path.write_text(json.dumps({"pid": _dead_pid(), "acquired_at": time.time()}))

        lock.acquire(timeout_sec=0)

        assert lock.stale_recoveries == 1
        assert json.loads(lock.path.read_text())["pid"] == os.getpid()
        lock.release()

    def test_pidless_lock_is_stale_only_when_old(self, tmp_path: Path) -> None:
        lock = WorkspaceLock(tmp_path, LockConfig(unknown_owner_stale_sec=60))
        lock.path.write_text("garbage")
        owner = LockOwner(pid=None, acquired_at=None)

        assert lock.is_stale(owner) is False

        old = time.time() - 3600
        os.utime(lock.path, (old, old))
        assert lock.is_stale(owner) is True

    def test_young_pidless_lock_blocks(self, tmp_path: Path) -> None:
        lock = WorkspaceLock(tmp_path, LockConfig(poll_interval_sec=0.01))
        lock.path.write_text("")

        with pytest.raises(LockContention):
            lock.acquire(timeout_sec=0.02)
        assert lock.path.exists()
