"""Tests for FileWatcher event filtering and watch directory collection."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from watchfiles import Change

from codeweave.index.ignore import IgnoreChecker
from codeweave.watch.watcher import FileWatcher, _collect_watch_dirs


class Recorder:
    def __init__(self) -> None:
        self.batches: list[list[str]] = []
        self.ignore_changes = 0

    def on_change(self, paths: list[str]) -> None:
        self.batches.append(paths)

    def on_ignore_change(self) -> None:
        self.ignore_changes += 1


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def watcher(workspace: Path, recorder: Recorder) -> FileWatcher:
    return FileWatcher(
        workspace,
        on_change=recorder.on_change,
        on_ignore_change=recorder.on_ignore_change,
    )


class TestCollectWatchDirs:
    def test_prunes_vcs_and_dependency_dirs(self, workspace: Path) -> None:
        for d in ("src/pkg", ".git/objects", "node_modules/lib", ".codeweave"):
            (workspace / d).mkdir(parents=True)

        dirs = _collect_watch_dirs(workspace, IgnoreChecker(workspace))

        assert set(dirs) == {workspace, workspace / "src", workspace / "src" / "pkg"}
        assert dirs[0] == workspace

    def test_skips_ignored_directories(self, workspace: Path) -> None:
        (workspace / "build").mkdir()
        (workspace / "src").mkdir()
        (workspace / ".gitignore").write_text("build/\n")

        dirs = _collect_watch_dirs(workspace, IgnoreChecker(workspace))

        assert workspace / "build" not in dirs
        assert workspace / "src" in dirs


class TestHandleChanges:
    """Filtering of raw watchfiles events."""

    def test_forwards_sorted_unique_relative_paths(
        self, watcher: FileWatcher, recorder: Recorder, workspace: Path
    ) -> None:
        restart = watcher.handle_changes(
            {
                (Change.modified, str(workspace / "src" / "b.py")),
                (Change.added, str(workspace / "a.py")),
                (Change.deleted, str(workspace / "old.py")),
            }
        )

        assert restart is False
        assert recorder.batches == [["a.py", "old.py", "src/b.py"]]

    def test_drops_pruned_ignored_and_foreign_paths(
        self, workspace: Path, recorder: Recorder, tmp_path: Path
    ) -> None:
        (workspace / ".gitignore").write_text("*.log\n")
        watcher = FileWatcher(workspace, on_change=recorder.on_change)

        watcher.handle_changes(
            {
                (Change.modified, str(workspace / ".git" / "index")),
                (Change.modified, str(workspace / ".codeweave" / "index.db")),
                (Change.modified, str(workspace / "node_modules" / "x" / "y.js")),
                (Change.modified, str(workspace / "debug.log")),
                (Change.modified, str(tmp_path / "elsewhere.py")),
            }
        )

        assert recorder.batches == []

    def test_new_directory_requests_restart(
        self, watcher: FileWatcher, recorder: Recorder, workspace: Path
    ) -> None:
        (workspace / "pkg").mkdir()

        restart = watcher.handle_changes({(Change.added, str(workspace / "pkg"))})

        assert restart is True
        assert recorder.batches == [["pkg"]]

    def test_deleted_directory_is_forwarded_as_one_path(
        self, watcher: FileWatcher, recorder: Recorder, workspace: Path
    ) -> None:
        restart = watcher.handle_changes({(Change.deleted, str(workspace / "pkg"))})

        assert restart is False
        assert recorder.batches == [["pkg"]]

    def test_new_pruned_directory_is_ignored(
        self, watcher: FileWatcher, workspace: Path
    ) -> None:
        (workspace / "node_modules").mkdir()

        assert watcher.handle_changes({(Change.added, str(workspace / "node_modules"))}) is False

    def test_ignore_file_change_reloads_patterns(
        self, watcher: FileWatcher, recorder: Recorder, workspace: Path
    ) -> None:
        (workspace / ".codeweaveignore").write_text("generated/\n")

        restart = watcher.handle_changes(
            {
                (Change.modified, str(workspace / ".codeweaveignore")),
                (Change.modified, str(workspace / "generated" / "out.py")),
            }
        )

        assert restart is True
        assert recorder.ignore_changes == 1
        # The event batch was filtered with the patterns in force when it arrived
        assert recorder.batches == [["generated/out.py"]]

        watcher.handle_changes({(Change.modified, str(workspace / "generated" / "out.py"))})
        assert recorder.batches == [["generated/out.py"]]


class TestWatchLoop:
    @pytest.mark.asyncio
    async def test_polling_watcher_reports_new_file(
        self, workspace: Path, recorder: Recorder
    ) -> None:
        watcher = FileWatcher(workspace, on_change=recorder.on_change, force_polling=True)
        await watcher.start()
        try:
            await asyncio.sleep(0.3)
            (workspace / "app.py").write_text("x = 1\n")
            for _ in range(50):
                if recorder.batches:
                    break
                await asyncio.sleep(0.1)
        finally:
            await watcher.stop()

        assert ["app.py"] in recorder.batches
        assert watcher.running is False
