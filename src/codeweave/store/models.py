"""SQLModel definitions for the code graph.

Single source of truth for all table schemas. The graph store owns every row;
the indexer and resolver only hold transient working sets during a pass.

Tables:
- symbols, call_edges, import_refs, entanglement_edges: per-file facts,
  replaced as a unit by one file transaction
- strategic_contracts: derived, fully recomputed by the materializer
- index_file_state: one row per tracked file, drives hash-gated reindexing
- symbol_vectors: embeddings keyed by symbol id and signature hash
- repo_state, index_passes: current index version and pass history
- watch_state: single row mutated only by the watch manager
- query_cache: result payloads keyed by (intent, parameters, index version)
"""

import json
from enum import Enum
from typing import Any

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field, SQLModel


class SymbolKind(str, Enum):
    MODULE = "module"
    CLASS = "class"
    FUNCTION = "function"
    METHOD = "method"


class EdgeKind(str, Enum):
    INTRA_FILE = "intra-file"
    CROSS_FILE = "cross-file"


class FileStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


class Symbol(SQLModel, table=True):
    """An indexed module, class, function or method."""

    __tablename__ = "symbols"

    id: str = Field(primary_key=True)  # sha256(path:kind:qualified_name)[:16]
    name: str = Field(index=True)
    qualified_name: str = Field(index=True)  # "Class.method" within its module
    kind: str = Field(index=True)
    file_path: str = Field(index=True)
    module_name: str = Field(index=True)
    start_line: int
    end_line: int
    signature_hash: str
    signature: str | None = None
    docstring: str | None = None


class CallEdge(SQLModel, table=True):
    """Directed reference from a caller symbol to a possibly-unresolved callee."""

    __tablename__ = "call_edges"

    id: str = Field(primary_key=True)
    file_path: str = Field(index=True)  # File of the caller; owns the row
    caller_id: str = Field(index=True)
    callee_module: str | None = Field(default=None, index=True)
    callee_name: str = Field(index=True)
    kind: str = Field(default=EdgeKind.CROSS_FILE.value, index=True)
    resolved: bool = Field(default=False, index=True)
    resolved_callee_id: str | None = Field(default=None, index=True)
    line: int = 0

    @property
    def callee_ref(self) -> str:
        return format_ref(self.callee_module, self.callee_name)


class ImportRef(SQLModel, table=True):
    """Module-level import, resolved to a workspace module when possible."""

    __tablename__ = "import_refs"

    id: str = Field(primary_key=True)
    file_path: str = Field(index=True)
    module_name: str = Field(index=True)  # Importing module
    module_ref: str  # Imported module as written (relative forms normalized)
    imported_name: str | None = None
    line: int = 0
    resolved_module: str | None = Field(default=None, index=True)


class EntanglementEdge(SQLModel, table=True):
    """Structural coupling between the files of two co-called symbols."""

    __tablename__ = "entanglement_edges"

    id: str = Field(primary_key=True)
    file_path: str = Field(index=True)  # File whose callers produced the hint
    ref_a: str
    ref_b: str
    file_a: str | None = Field(default=None, index=True)
    file_b: str | None = Field(default=None, index=True)
    strength: int = 1


class StrategicContract(SQLModel, table=True):
    """Derived provider/consumer relationship for one provider module."""

    __tablename__ = "strategic_contracts"

    id: str = Field(primary_key=True)
    module_id: str = Field(index=True)  # Symbol id of the provider module
    module_name: str = Field(index=True)
    producers_json: str = "[]"
    consumers_json: str = "[]"
    evidence_json: str = "[]"
    updated_at: float = 0.0

    @property
    def producers(self) -> list[str]:
        result: list[str] = json.loads(self.producers_json)
        return result

    @property
    def consumers(self) -> list[str]:
        result: list[str] = json.loads(self.consumers_json)
        return result

    @property
    def evidence(self) -> list[dict[str, Any]]:
        """Evidence records {"consumer", "producer", "ref"}; ref is "call:<id>" or "import:<id>"."""
        result: list[dict[str, Any]] = json.loads(self.evidence_json)
        return result


class IndexFileState(SQLModel, table=True):
    """Per-file indexing state. Hash mismatch means the file must be re-parsed."""

    __tablename__ = "index_file_state"

    file_path: str = Field(primary_key=True)
    content_hash: str | None = None
    last_indexed_at: float | None = None
    status: str = Field(default=FileStatus.OK.value, index=True)
    language: str | None = None
    message: str | None = None


class SymbolVector(SQLModel, table=True):
    """float32 embedding for one symbol."""

    __tablename__ = "symbol_vectors"

    symbol_id: str = Field(primary_key=True)
    signature_hash: str
    model_name: str
    dim: int
    vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))


class RepoState(SQLModel, table=True):
    """Repository state tracking (singleton row, id=1)."""

    __tablename__ = "repo_state"

    id: int = Field(default=1, primary_key=True)
    index_version: int = 0
    last_pass_at: float | None = None
    commit_sha: str | None = None


class IndexPass(SQLModel, table=True):
    """Record of a version-bumping indexing pass."""

    __tablename__ = "index_passes"

    version: int = Field(primary_key=True)
    published_at: float
    mode: str
    files_changed: int = 0
    commit_sha: str | None = None


class WatchStateRow(SQLModel, table=True):
    """Persisted watch state (singleton row, id=1)."""

    __tablename__ = "watch_state"

    id: int = Field(default=1, primary_key=True)
    phase: str = "idle"
    started_at: float | None = None
    last_heartbeat_at: float | None = None
    last_event_at: float | None = None
    last_reindex_ok_at: float | None = None
    suspected_dead: bool = False
    needs_catchup: bool = False
    last_error: str | None = None
    cursor_commit_sha: str | None = None
    cursor_reconcile_completed_at: float | None = None
    config_json: str = "{}"


class QueryCacheEntry(SQLModel, table=True):
    """Cached query payload, valid only while index_version is current."""

    __tablename__ = "query_cache"

    key_hash: str = Field(primary_key=True)
    index_version: int = Field(index=True)
    result_payload: str
    created_at: float
    last_accessed_at: float = Field(index=True)
    access_count: int = 1


def format_ref(module: str | None, name: str) -> str:
    """Display form of a callee reference: "module:name" or bare "name"."""
    return f"{module}:{name}" if module else name
