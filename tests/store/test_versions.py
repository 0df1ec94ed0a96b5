"""Tests for index version publishing and pass journals."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from codeweave.store.database import Database
from codeweave.store.versions import IndexVersionManager


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    database = Database(tmp_path / "index.db")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def versions(db: Database) -> IndexVersionManager:
    return IndexVersionManager(db)


class TestPublish:
    def test_starts_at_zero(self, versions: IndexVersionManager) -> None:
        assert versions.current_version() == 0
        assert versions.current_commit() is None

    def test_publish_bumps_by_one_and_removes_journal(
        self, versions: IndexVersionManager, tmp_path: Path
    ) -> None:
        journal = versions.begin_pass("full")
        assert list(tmp_path.glob("pass_*.journal"))

        published = versions.publish(journal, files_changed=3, commit_sha="abc123")

        assert published.version == 1
        assert versions.current_version() == 1
        assert versions.current_commit() == "abc123"
        assert not list(tmp_path.glob("pass_*.journal"))

    def test_versions_are_monotonic(self, versions: IndexVersionManager) -> None:
        seen = [versions.publish(versions.begin_pass("incremental"), 1).version for _ in range(3)]

        assert seen == [1, 2, 3]

    def test_abandon_leaves_version_unchanged(self, versions: IndexVersionManager) -> None:
        journal = versions.begin_pass("incremental")

        versions.abandon(journal)

        assert versions.current_version() == 0
        assert versions.find_incomplete_passes() == []


class TestRecovery:
    def test_leftover_journal_publishes_recovery_version(
        self, versions: IndexVersionManager
    ) -> None:
        versions.publish(versions.begin_pass("full"), 2)
        crashed = versions.begin_pass("incremental")

        [found] = versions.find_incomplete_passes()
        assert found.pass_id == crashed.pass_id
        assert found.mode == "incremental"

        assert versions.recover_incomplete_passes() == 1
        assert versions.current_version() == 2
        assert versions.find_incomplete_passes() == []

    def test_corrupt_journal_still_counts(
        self, versions: IndexVersionManager, tmp_path: Path
    ) -> None:
        (tmp_path / "pass_broken.journal").write_text("{not json")

        [found] = versions.find_incomplete_passes()

        assert found.pass_id == "broken"
        assert found.mode == "unknown"

    def test_nothing_to_recover(self, versions: IndexVersionManager) -> None:
        assert versions.recover_incomplete_passes() == 0
        assert versions.current_version() == 0
