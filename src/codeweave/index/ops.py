"""High-level orchestration of indexing passes.

This module implements the IndexCoordinator, the entry point for all index
writes. It enforces the pass-level serialization invariants:

- _reconcile_lock: only ONE pass at a time within this process
- WorkspaceLock: only ONE pass at a time across processes; a lock left by a
  dead holder is recovered, together with its pass journal

Every pass follows the same two-phase order:
Discovery -> per-file processing -> cross-file resolution -> contracts
-> (embedding) -> version publish

Resolution only runs after every file of the pass has committed, so it sees
the complete symbol table. The index version is bumped only when the pass
changed something; an idle incremental pass is a no-op.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Literal, TypeVar

import structlog

from codeweave.config.loader import get_data_dir, load_config
from codeweave.core.logging import pass_scope
from codeweave.index.contracts import ContractMaterializer, ContractStats
from codeweave.index.embedding import EmbeddingStats, SymbolEmbedder
from codeweave.index.extraction import ExtractorRegistry
from codeweave.index.git import head_commit_sha
from codeweave.index.ignore import IgnoreChecker, discover_files, is_indexable
from codeweave.index.indexer import FileIndexResult, FileOutcome, Indexer
from codeweave.index.resolver import CrossFileResolver, ResolutionStats
from codeweave.store.database import Database
from codeweave.store.graph import GraphStore
from codeweave.store.integrity import IntegrityChecker, IntegrityReport
from codeweave.store.lock import WorkspaceLock
from codeweave.store.models import FileStatus
from codeweave.store.versions import IndexVersionManager, PassJournal

if TYPE_CHECKING:
    from codeweave.config.models import CodeWeaveConfig
    from codeweave.query.capabilities import Embedder

log = structlog.get_logger(__name__)

DB_FILE = "index.db"

IndexMode = Literal["full", "incremental"]

_T = TypeVar("_T", ResolutionStats, ContractStats)


@dataclass
class IndexSummary:
    """Statistics from one indexing pass."""

    mode: str
    files_scanned: int = 0
    files_indexed: int = 0
    files_unchanged: int = 0
    files_removed: int = 0
    files_warning: int = 0
    files_error: int = 0
    resolution: ResolutionStats = field(default_factory=ResolutionStats)
    contracts_written: int = 0
    index_version: int = 0
    version_bumped: bool = False
    duration_ms: float = 0.0
    passes_recovered: int = 0
    embedding: EmbeddingStats | None = None
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def files_changed(self) -> int:
        return self.files_indexed + self.files_removed

    def record(self, result: FileIndexResult) -> None:
        if result.outcome is FileOutcome.INDEXED:
            self.files_indexed += 1
            if result.status is FileStatus.WARNING:
                self.files_warning += 1
        elif result.outcome is FileOutcome.UNCHANGED:
            self.files_unchanged += 1
        elif result.outcome is FileOutcome.REMOVED:
            self.files_removed += 1
        else:
            self.files_error += 1
            self.errors[result.file_path] = result.error or "unknown error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "files_scanned": self.files_scanned,
            "files_indexed": self.files_indexed,
            "files_unchanged": self.files_unchanged,
            "files_removed": self.files_removed,
            "files_warning": self.files_warning,
            "files_error": self.files_error,
            "resolution": self.resolution.to_dict(),
            "contracts_written": self.contracts_written,
            "index_version": self.index_version,
            "version_bumped": self.version_bumped,
            "duration_ms": round(self.duration_ms, 2),
        }


class IndexCoordinator:
    """
    Owns the graph store and runs serialized indexing passes.

    Methods block; async callers run them in an executor (see
    ``codeweave.watch.manager``).

    Usage::

        coordinator = IndexCoordinator(repo_root)
        summary = coordinator.index_workspace("full")

        # Watcher-driven incremental update
        summary = coordinator.reindex_paths(["src/app.py"])
    """

    def __init__(
        self,
        repo_root: Path,
        config: CodeWeaveConfig | None = None,
        *,
        embedder: Embedder | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or load_config(self.repo_root)
        self.data_dir = get_data_dir(self.repo_root, self.config)

        db_config = self.config.database
        self.db = Database(
            self.data_dir / DB_FILE,
            max_retries=db_config.max_retries,
            retry_base_delay=db_config.retry_base_delay_sec,
            busy_timeout_ms=db_config.busy_timeout_ms,
        )
        self.store = GraphStore(self.db)
        self.versions = IndexVersionManager(self.db, self.data_dir)
        self.lock = WorkspaceLock(self.data_dir, self.config.lock)
        self.registry = ExtractorRegistry(
            self.config.index.languages, self.config.index.max_parse_error_ratio
        )
        self.indexer = Indexer(self.repo_root, self.store, self.registry)
        self.resolver = CrossFileResolver(self.db)
        self.materializer = ContractMaterializer(self.db)
        self.embedder = embedder

        # Serialization lock
        self._reconcile_lock = threading.Lock()
        self._initialized = False

    def initialize(self) -> None:
        """Create the schema. Raises StorageUnavailable if the store cannot be opened."""
        if not self._initialized:
            self.store.ensure_available()
            self._initialized = True

    # =========================================================================
    # Passes
    # =========================================================================

    def index_workspace(self, mode: IndexMode = "incremental") -> IndexSummary:
        """Index every discoverable file of the workspace.

        ``incremental`` re-extracts only files whose content hash changed;
        ``full`` re-extracts every file and always publishes a new version.
        Files tracked in the store but no longer discoverable are removed in
        both modes.
        """
        if mode not in ("full", "incremental"):
            raise ValueError(f"Unknown index mode: {mode}")
        return self._run_pass(mode, None)

    def reindex_paths(self, paths: Iterable[str]) -> IndexSummary:
        """Incremental pass over the given workspace-relative paths only."""
        return self._run_pass("incremental", sorted({_normalize(p) for p in paths}))

    def resolve_external_call_edges(self) -> ResolutionStats:
        """Standalone resolver run, publishing a version if it changed anything."""
        return self._standalone("resolve", self.resolver.resolve_external_call_edges)

    def materialize_strategic_contracts(self) -> ContractStats:
        """Standalone contract recompute, publishing a version if it changed anything."""
        return self._standalone("contracts", self.materializer.materialize_strategic_contracts)

    def _standalone(self, mode: str, step: Callable[[], _T]) -> _T:
        self.initialize()
        with self._reconcile_lock, self.lock.hold():
            self.versions.recover_incomplete_passes()
            journal = self.versions.begin_pass(mode)
            with pass_scope(journal.pass_id, mode):
                stats = step()
                if stats.changed:
                    self.versions.publish(journal, files_changed=0)
                else:
                    self.versions.abandon(journal)
            return stats

    def _run_pass(self, mode: str, paths: list[str] | None) -> IndexSummary:
        self.initialize()
        start = time.monotonic()
        summary = IndexSummary(mode=mode)

        with self._reconcile_lock, self.lock.hold():
            summary.passes_recovered = self.versions.recover_incomplete_passes()
            journal = self.versions.begin_pass(mode)
            with pass_scope(journal.pass_id, mode):
                self._execute_pass(summary, journal, paths)
                summary.duration_ms = (time.monotonic() - start) * 1000
                log.info("index_pass_complete", **summary.to_dict())
        return summary

    def _execute_pass(
        self, summary: IndexSummary, journal: PassJournal, paths: list[str] | None
    ) -> None:
        mode = summary.mode
        try:
            if paths is None:
                self._process_workspace(summary, force=mode == "full")
            else:
                self._process_paths(summary, paths)

            # Phase two: the symbol table is complete now
            summary.resolution = self.resolver.resolve_external_call_edges()
            contracts = self.materializer.materialize_strategic_contracts()
            summary.contracts_written = contracts.contracts_written

            if self.embedder is not None and self.config.index.embed_on_index:
                summary.embedding = SymbolEmbedder(
                    self.store, self.embedder, self.config.embedding.batch_size
                ).embed_changed()
        except Exception as e:
            # The journal stays behind; the next pass publishes a recovery version
            log.error("index_pass_failed", error=str(e))
            raise

        changed = (
            summary.files_changed > 0
            or summary.resolution.changed
            or contracts.changed
            or (summary.embedding is not None and summary.embedding.embedded > 0)
            or mode == "full"
        )
        if changed:
            self.versions.publish(
                journal,
                files_changed=summary.files_changed,
                commit_sha=head_commit_sha(self.repo_root),
            )
            summary.version_bumped = True
        else:
            self.versions.abandon(journal)
        summary.index_version = self.versions.current_version()

    def _process_workspace(self, summary: IndexSummary, force: bool) -> None:
        checker = IgnoreChecker(self.repo_root)
        discovered = discover_files(
            self.repo_root,
            checker,
            self.registry.suffixes,
            self.config.index.excluded_extensions,
            self.config.index.max_file_size_mb * 1024 * 1024,
        )
        summary.files_scanned = len(discovered)
        for path in discovered:
            summary.record(self.indexer.process_file(path, force=force))

        # Deleted, newly ignored or grown past the size limit
        vanished = set(self.store.list_file_states()) - set(discovered)
        for path in sorted(vanished):
            summary.record(self.indexer.remove_file(path))

    def _process_paths(self, summary: IndexSummary, paths: list[str]) -> None:
        checker = IgnoreChecker(self.repo_root)
        excluded = tuple(self.config.index.excluded_extensions)
        max_bytes = self.config.index.max_file_size_mb * 1024 * 1024
        for path in self._expand_directories(paths, checker):
            summary.files_scanned += 1
            wanted = (
                is_indexable(path, self.registry.suffixes, excluded)
                and not checker.is_excluded_rel(path)
                and _within_size(self.repo_root / path, max_bytes)
            )
            if wanted:
                summary.record(self.indexer.process_file(path))
            else:
                summary.record(self.indexer.remove_file(path))

    def _expand_directories(self, paths: list[str], checker: IgnoreChecker) -> list[str]:
        """Replace directory paths with the files tracked or discoverable beneath them.

        A directory that was deleted or moved away arrives as a single path; every
        file still tracked under it has to be removed.
        """
        tracked: list[str] | None = None
        expanded: set[str] = set()
        for path in paths:
            full = self.repo_root / path
            if full.is_file():
                expanded.add(path)
                continue
            if tracked is None:
                tracked = sorted(self.store.list_file_states())
            prefix = f"{path}/"
            beneath = [p for p in tracked if p.startswith(prefix)]
            if full.is_dir():
                beneath.extend(
                    discover_files(
                        self.repo_root,
                        checker,
                        self.registry.suffixes,
                        self.config.index.excluded_extensions,
                        subdir=path,
                    )
                )
            if beneath:
                log.debug("directory_paths_expanded", directory=path, files=len(beneath))
                expanded.update(beneath)
            else:
                expanded.add(path)
        return sorted(expanded)

    # =========================================================================
    # Queries over index state
    # =========================================================================

    def current_version(self) -> int:
        return self.versions.current_version()

    def verify_integrity(self) -> IntegrityReport:
        """Check for dangling edges, stale contract evidence and missing files."""
        return IntegrityChecker(self.db, self.repo_root).verify()

    def close(self) -> None:
        """Dispose the DB engine to release file handles."""
        self.db.dispose()
        self._initialized = False


def _within_size(path: Path, max_bytes: int) -> bool:
    """True for an existing regular file no larger than max_bytes."""
    try:
        return path.is_file() and path.stat().st_size <= max_bytes
    except OSError:
        return False


def _normalize(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).as_posix().removeprefix("./")
