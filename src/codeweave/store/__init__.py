"""Graph store: SQLite persistence for symbols, edges, contracts, state and cache.

Public API:
- Database, BulkWriter: connection management
- GraphStore, FileTransaction: per-file transactional writes and reads
- IndexVersionManager: index version and pass journals
- WorkspaceLock: cross-process pass serialization
- QueryCacheStore: version-filtered result cache
- IntegrityChecker: consistency verification
"""

from codeweave.store.cache import QueryCacheStore, cache_key, eviction_order, normalize_intent
from codeweave.store.database import BulkWriter, Database
from codeweave.store.graph import FileTransaction, GraphStore, read_snippet
from codeweave.store.integrity import IntegrityChecker, IntegrityIssue, IntegrityReport
from codeweave.store.lock import WorkspaceLock
from codeweave.store.models import (
    CallEdge,
    EdgeKind,
    EntanglementEdge,
    FileStatus,
    ImportRef,
    IndexFileState,
    IndexPass,
    QueryCacheEntry,
    RepoState,
    StrategicContract,
    Symbol,
    SymbolKind,
    SymbolVector,
    WatchStateRow,
    format_ref,
)
from codeweave.store.versions import IndexVersionManager, PassJournal, PublishedVersion

__all__ = [
    "BulkWriter",
    "Database",
    "FileTransaction",
    "GraphStore",
    "read_snippet",
    "IndexVersionManager",
    "PassJournal",
    "PublishedVersion",
    "WorkspaceLock",
    "QueryCacheStore",
    "cache_key",
    "eviction_order",
    "normalize_intent",
    "IntegrityChecker",
    "IntegrityIssue",
    "IntegrityReport",
    # Enums
    "SymbolKind",
    "EdgeKind",
    "FileStatus",
    # Tables
    "Symbol",
    "CallEdge",
    "ImportRef",
    "EntanglementEdge",
    "StrategicContract",
    "IndexFileState",
    "SymbolVector",
    "RepoState",
    "IndexPass",
    "WatchStateRow",
    "QueryCacheEntry",
    "format_ref",
]
