"""Index module - extraction, per-file indexing and graph derivation.

This module provides:
- Extraction: tree-sitter extractors for Python, JavaScript and TypeScript
- Discovery: ignore-aware workspace walk
- Indexer: hash-gated per-file transactions
- Resolver and contract materializer: second-phase graph derivation

Public API is in `codeweave.index.ops`:
- IndexCoordinator: serialized passes (full, incremental, path-scoped)
- IndexSummary: pass statistics
"""

from codeweave.index.contracts import ContractMaterializer, ContractStats
from codeweave.index.embedding import EmbeddingStats, SymbolEmbedder, symbol_document, word_split
from codeweave.index.ignore import IgnoreChecker, discover_files
from codeweave.index.indexer import FileIndexResult, FileOutcome, Indexer
from codeweave.index.ops import IndexCoordinator, IndexSummary
from codeweave.index.resolver import CrossFileResolver, ResolutionStats

__all__ = [
    "IndexCoordinator",
    "IndexSummary",
    "Indexer",
    "FileIndexResult",
    "FileOutcome",
    "CrossFileResolver",
    "ResolutionStats",
    "ContractMaterializer",
    "ContractStats",
    "SymbolEmbedder",
    "EmbeddingStats",
    "symbol_document",
    "word_split",
    "IgnoreChecker",
    "discover_files",
]
