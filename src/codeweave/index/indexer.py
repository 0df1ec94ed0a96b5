"""Per-file indexing: hash gate, extraction, one storage transaction.

``Indexer.process_file`` is the unit of work of every pass. It never raises
for file-local problems; the outcome is reported in ``FileIndexResult`` and
recorded in ``index_file_state`` so the pass can carry on with other files.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError

from codeweave.core.errors import TransactionFailure
from codeweave.store.models import (
    CallEdge,
    EntanglementEdge,
    FileStatus,
    ImportRef,
    Symbol,
)

if TYPE_CHECKING:
    from codeweave.index.extraction import ExtractionResult, ExtractorRegistry
    from codeweave.store.graph import GraphStore

log = structlog.get_logger(__name__)

TRANSACTION_ATTEMPTS = 2


class FileOutcome(str, Enum):
    INDEXED = "indexed"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    FAILED = "failed"


@dataclass
class FileIndexResult:
    """Outcome of processing one file."""

    file_path: str
    outcome: FileOutcome
    status: FileStatus | None = None
    content_hash: str | None = None
    symbols: int = 0
    call_edges: int = 0
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def changed(self) -> bool:
        """True when stored graph rows were replaced or removed."""
        return self.outcome in (FileOutcome.INDEXED, FileOutcome.REMOVED)


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def entanglement_id(file_path: str, ref_a: str, ref_b: str) -> str:
    return hashlib.sha256(f"{file_path}:{ref_a}<->{ref_b}".encode()).hexdigest()[:16]


def to_rows(
    result: ExtractionResult,
) -> tuple[list[Symbol], list[CallEdge], list[ImportRef], list[EntanglementEdge]]:
    """Convert an extraction result into graph store rows."""
    path = result.file_path
    symbols = [
        Symbol(
            id=s.id,
            name=s.name,
            qualified_name=s.qualified_name,
            kind=s.kind,
            file_path=path,
            module_name=result.module_name,
            start_line=s.start_line,
            end_line=s.end_line,
            signature_hash=s.signature_hash,
            signature=s.signature,
            docstring=s.docstring,
        )
        for s in result.symbols
    ]
    edges = [
        CallEdge(
            id=e.id,
            file_path=path,
            caller_id=e.caller_id,
            callee_module=e.callee_module,
            callee_name=e.callee_name,
            kind=e.kind,
            resolved=e.resolved,
            resolved_callee_id=e.resolved_callee_id,
            line=e.line,
        )
        for e in result.call_edges
    ]
    imports = [
        ImportRef(
            id=i.id,
            file_path=path,
            module_name=result.module_name,
            module_ref=i.module_ref,
            imported_name=i.imported_name,
            line=i.line,
        )
        for i in result.imports
    ]
    entanglements = [
        EntanglementEdge(
            id=entanglement_id(path, h.ref_a, h.ref_b),
            file_path=path,
            ref_a=h.ref_a,
            ref_b=h.ref_b,
            strength=h.strength,
        )
        for h in result.entanglement_hints
    ]
    return symbols, edges, imports, entanglements


class Indexer:
    """Processes individual files into the graph store."""

    def __init__(self, repo_root: Path, store: GraphStore, registry: ExtractorRegistry) -> None:
        self.repo_root = repo_root
        self.store = store
        self.registry = registry

    def process_file(self, file_path: str, force: bool = False) -> FileIndexResult:
        """Bring one workspace-relative file's stored facts up to date.

        Args:
            file_path: Workspace-relative posix path.
            force: Re-extract even when the content hash is unchanged.
        """
        abs_path = self.repo_root / file_path
        if not abs_path.is_file():
            return self.remove_file(file_path)

        try:
            content = abs_path.read_bytes()
        except OSError as e:
            return self._fail(file_path, f"read failed: {e}")

        digest = content_hash(content)
        state = self.store.get_file_state(file_path)
        if not force and state is not None and state.content_hash == digest:
            return FileIndexResult(
                file_path=file_path,
                outcome=FileOutcome.UNCHANGED,
                status=FileStatus(state.status),
                content_hash=digest,
            )

        try:
            result = self.registry.extract(file_path, content)
        except Exception as e:  # noqa: BLE001
            log.warning("extraction_failed", path=file_path, error=str(e), exc_info=True)
            return self._fail(file_path, f"extraction failed: {e}")

        return self._write(file_path, digest, result)

    def _write(self, file_path: str, digest: str, result: ExtractionResult) -> FileIndexResult:
        symbols, edges, imports, entanglements = to_rows(result)
        status = FileStatus.WARNING if result.warnings else FileStatus.OK
        message = "; ".join(result.warnings) or None

        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                with self.store.begin_file_transaction(file_path) as tx:
                    tx.replace_symbols_and_edges(symbols, edges, imports, entanglements)
                    tx.set_file_state(
                        digest,
                        status,
                        language=result.language,
                        message=message,
                        indexed_at=time.time(),
                    )
                break
            except TransactionFailure as e:
                if attempt < TRANSACTION_ATTEMPTS:
                    log.warning("file_transaction_retry", path=file_path, error=e.message)
                    continue
                return self._fail(file_path, e.message)

        if status is FileStatus.WARNING:
            log.warning("file_indexed_with_warnings", path=file_path, warnings=result.warnings)
        else:
            log.debug("file_indexed", path=file_path, symbols=len(symbols), edges=len(edges))
        return FileIndexResult(
            file_path=file_path,
            outcome=FileOutcome.INDEXED,
            status=status,
            content_hash=digest,
            symbols=len(symbols),
            call_edges=len(edges),
            warnings=list(result.warnings),
        )

    def remove_file(self, file_path: str) -> FileIndexResult:
        """Drop a file's facts and state row. No-op for untracked paths."""
        if self.store.get_file_state(file_path) is None:
            return FileIndexResult(file_path=file_path, outcome=FileOutcome.UNCHANGED)
        for attempt in range(1, TRANSACTION_ATTEMPTS + 1):
            try:
                with self.store.begin_file_transaction(file_path) as tx:
                    tx.remove_file()
                break
            except TransactionFailure as e:
                if attempt < TRANSACTION_ATTEMPTS:
                    log.warning("file_transaction_retry", path=file_path, error=e.message)
                    continue
                return self._fail(file_path, e.message)
        log.debug("file_removed", path=file_path)
        return FileIndexResult(file_path=file_path, outcome=FileOutcome.REMOVED)

    def _fail(self, file_path: str, message: str) -> FileIndexResult:
        """Record status=error, keeping the previous facts and hash."""
        log.warning("file_index_failed", path=file_path, error=message)
        try:
            self.store.record_file_error(file_path, message)
        except SQLAlchemyError as e:
            log.error("file_error_not_recorded", path=file_path, error=str(e))
        return FileIndexResult(
            file_path=file_path,
            outcome=FileOutcome.FAILED,
            status=FileStatus.ERROR,
            error=message,
        )
