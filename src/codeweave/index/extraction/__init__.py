"""Per-file extraction: symbols, local call edges, imports and entanglement hints."""

from codeweave.index.extraction.base import (
    EntanglementHint,
    ExtractedSymbol,
    ExtractionResult,
    ImportReference,
    LanguageExtractor,
    LocalCallEdge,
    edge_id,
    symbol_id,
)
from codeweave.index.extraction.javascript import JavaScriptExtractor, TypeScriptExtractor
from codeweave.index.extraction.python import PythonExtractor
from codeweave.index.extraction.registry import EXTRACTORS, ExtractorRegistry

__all__ = [
    "EXTRACTORS",
    "EntanglementHint",
    "ExtractedSymbol",
    "ExtractionResult",
    "ExtractorRegistry",
    "ImportReference",
    "JavaScriptExtractor",
    "LanguageExtractor",
    "LocalCallEdge",
    "PythonExtractor",
    "TypeScriptExtractor",
    "edge_id",
    "symbol_id",
]
