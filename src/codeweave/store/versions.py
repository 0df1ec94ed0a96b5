"""Index version management.

The index version is a monotonically increasing integer stored in
``repo_state``. Query cache entries record the version they were computed at,
so publishing a new version invalidates them on lookup.

Every indexing pass runs between a journal write and a journal delete:
1. ``begin_pass`` writes the journal to disk with fsync
2. per-file transactions commit as the pass proceeds
3. ``publish`` commits the version bump and pass record in one IMMEDIATE
   transaction, then deletes the journal (``abandon`` deletes it when the
   pass changed nothing)

A journal left behind by a crashed holder marks a pass whose file commits may
be visible without a version bump. ``recover_incomplete_passes`` removes such
journals and publishes a recovery version so cached results computed before
the crash become unreachable.
"""

from __future__ import annotations

import contextlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codeweave.store.models import IndexPass, RepoState

if TYPE_CHECKING:
    from codeweave.store.database import Database

logger = structlog.get_logger()

JOURNAL_GLOB = "pass_*.journal"


@dataclass
class PassJournal:
    """Marker for a pass that has not published or abandoned yet."""

    pass_id: str
    pid: int
    mode: str
    created_at: float = 0.0

    def to_dict(self) -> dict[str, int | str | float]:
        return {
            "pass_id": self.pass_id,
            "pid": self.pid,
            "mode": self.mode,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, int | str | float]) -> PassJournal:
        return cls(
            pass_id=str(data["pass_id"]),
            pid=int(data.get("pid", 0)),
            mode=str(data.get("mode", "")),
            created_at=float(data.get("created_at", 0.0)),
        )


@dataclass
class PublishedVersion:
    version: int
    files_changed: int
    published_at: float
    commit_sha: str | None


class IndexVersionManager:
    """Reads and publishes the index version."""

    def __init__(self, db: Database, journal_dir: Path | None = None) -> None:
        self.db = db
        self._journal_dir = journal_dir or db.db_path.parent

    def _journal_path(self, pass_id: str) -> Path:
        return self._journal_dir / f"pass_{pass_id}.journal"

    def _write_journal(self, journal: PassJournal) -> None:
        """Write journal to disk with fsync for durability."""
        path = self._journal_path(journal.pass_id)
        with open(path, "w") as f:
            json.dump(journal.to_dict(), f)
            f.flush()
            os.fsync(f.fileno())
        logger.debug("pass_journal_written", pass_id=journal.pass_id)

    def _delete_journal(self, pass_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._journal_path(pass_id).unlink()

    def find_incomplete_passes(self) -> list[PassJournal]:
        """Journals left by passes that never published or abandoned."""
        incomplete = []
        for path in sorted(self._journal_dir.glob(JOURNAL_GLOB)):
            try:
                with open(path) as f:
                    incomplete.append(PassJournal.from_dict(json.load(f)))
            except (json.JSONDecodeError, KeyError, ValueError, OSError):
                incomplete.append(
                    PassJournal(pass_id=path.stem.removeprefix("pass_"), pid=0, mode="unknown")
                )
        return incomplete

    def begin_pass(self, mode: str) -> PassJournal:
        started = time.time()
        journal = PassJournal(
            pass_id=f"{int(started * 1000)}_{os.getpid()}",
            pid=os.getpid(),
            mode=mode,
            created_at=started,
        )
        self._write_journal(journal)
        return journal

    def abandon(self, journal: PassJournal) -> None:
        """Close a pass that changed nothing."""
        self._delete_journal(journal.pass_id)

    def current_version(self) -> int:
        """Return current index version, or 0 if nothing was ever published."""
        with self.db.session() as session:
            state = session.get(RepoState, 1)
            if state is not None:
                return state.index_version
            return 0

    def current_commit(self) -> str | None:
        with self.db.session() as session:
            state = session.get(RepoState, 1)
            return state.commit_sha if state is not None else None

    def publish(
        self,
        journal: PassJournal | None,
        files_changed: int,
        commit_sha: str | None = None,
    ) -> PublishedVersion:
        """Bump the index version and close the pass journal."""
        published_at = time.time()
        mode = journal.mode if journal is not None else "recovery"
        try:
            with self.db.immediate_transaction() as session:
                state = session.get(RepoState, 1)
                if state is None:
                    state = RepoState(id=1)
                new_version = state.index_version + 1
                state.index_version = new_version
                state.last_pass_at = published_at
                if commit_sha is not None:
                    state.commit_sha = commit_sha
                session.add(state)
                session.add(
                    IndexPass(
                        version=new_version,
                        published_at=published_at,
                        mode=mode,
                        files_changed=files_changed,
                        commit_sha=commit_sha,
                    )
                )
        except Exception as e:
            logger.error("index_version_publish_failed", mode=mode, error=str(e))
            raise

        if journal is not None:
            self._delete_journal(journal.pass_id)
        logger.info(
            "index_version_published",
            version=new_version,
            mode=mode,
            files_changed=files_changed,
        )
        return PublishedVersion(
            version=new_version,
            files_changed=files_changed,
            published_at=published_at,
            commit_sha=commit_sha,
        )

    def recover_incomplete_passes(self) -> int:
        """Discard leftover journals and publish a recovery version if any existed."""
        journals = self.find_incomplete_passes()
        if not journals:
            return 0
        for journal in journals:
            logger.warning(
                "pass_journal_discarded",
                pass_id=journal.pass_id,
                pid=journal.pid,
                mode=journal.mode,
            )
        self.publish(None, files_changed=0)
        for journal in journals:
            self._delete_journal(journal.pass_id)
        return len(journals)
