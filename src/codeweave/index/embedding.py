"""Symbol embedding after an indexing pass.

Each symbol is rendered into a short natural-language document (kind,
qualified name split into words, path phrase, signature, docstring) and
embedded with the configured Embedder. A stored vector is reused for as long
as the symbol's signature hash and the model are unchanged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import structlog

from codeweave.core.errors import CodeWeaveError
from codeweave.store.models import SymbolVector

if TYPE_CHECKING:
    from codeweave.query.capabilities import Embedder
    from codeweave.store.graph import GraphStore
    from codeweave.store.models import Symbol

log = structlog.get_logger(__name__)

_MAX_TEXT_CHARS = 1500  # 512-token context window

# Word split regex: camelCase / PascalCase / snake_case → words
_CAMEL_SPLIT = re.compile(r"[A-Z]?[a-z]+|[A-Z]+(?=[A-Z][a-z]|\d|\b)|[0-9]+")
_NON_WORD = re.compile(r"[^A-Za-z0-9_]+")


def word_split(name: str) -> list[str]:
    """Split an identifier into lowercase natural words.

    Handles camelCase, PascalCase, snake_case, and mixed styles.
    Example: ``getUserById`` → ``["get", "user", "by", "id"]``
    """
    words: list[str] = []
    for chunk in _NON_WORD.split(name):
        for part in chunk.split("_"):
            if not part:
                continue
            camel = _CAMEL_SPLIT.findall(part)
            if camel:
                words.extend(w.lower() for w in camel)
            else:
                words.append(part.lower())
    return words


def path_to_phrase(file_path: str) -> str:
    """``src/auth/rate_limiter.py`` → ``"auth rate limiter"``"""
    p = file_path.replace("\\", "/")
    for prefix in ("src/", "lib/", "app/"):
        if p.startswith(prefix):
            p = p[len(prefix) :]
            break
    dot = p.rfind(".")
    if dot > 0:
        p = p[:dot]
    parts: list[str] = []
    for segment in p.split("/"):
        parts.extend(word_split(segment))
    return " ".join(parts)


def symbol_document(symbol: Symbol) -> str:
    """Embedding input for one symbol."""
    lines = [f"{symbol.kind} {symbol.qualified_name}", " ".join(word_split(symbol.qualified_name))]
    lines.append(f"in {path_to_phrase(symbol.file_path)}")
    if symbol.signature:
        lines.append(symbol.signature)
    if symbol.docstring:
        lines.append(symbol.docstring)
    return "\n".join(lines)[:_MAX_TEXT_CHARS]


@dataclass
class EmbeddingStats:
    embedded: int = 0
    reused: int = 0
    error: str | None = None


class SymbolEmbedder:
    """Keeps ``symbol_vectors`` in step with the symbol table."""

    def __init__(self, store: GraphStore, embedder: Embedder, batch_size: int = 64) -> None:
        self.store = store
        self.embedder = embedder
        self.batch_size = batch_size

    def embed_changed(self) -> EmbeddingStats:
        stats = EmbeddingStats()
        if not self.embedder.available:
            stats.error = "embedder unavailable"
            return stats

        existing = self.store.vector_hashes(self.embedder.model_name)
        symbols = self.store.all_symbols()
        pending = [s for s in symbols if existing.get(s.id) != s.signature_hash]
        stats.reused = len(symbols) - len(pending)

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            try:
                matrix = self.embedder.embed_sync([symbol_document(s) for s in batch])
            except Exception as e:  # noqa: BLE001
                if isinstance(e, CodeWeaveError):
                    stats.error = e.message
                else:
                    stats.error = f"{type(e).__name__}: {e}"
                log.warning(
                    "symbol_embedding_failed",
                    model=self.embedder.model_name,
                    embedded=stats.embedded,
                    remaining=len(pending) - start,
                    error=stats.error,
                )
                break
            self.store.upsert_vectors(
                [
                    SymbolVector(
                        symbol_id=s.id,
                        signature_hash=s.signature_hash,
                        model_name=self.embedder.model_name,
                        dim=int(matrix.shape[1]),
                        vector=np.asarray(vec, dtype=np.float32).tobytes(),
                    )
                    for s, vec in zip(batch, matrix, strict=True)
                ]
            )
            stats.embedded += len(batch)

        if stats.embedded:
            log.info("symbols_embedded", embedded=stats.embedded, reused=stats.reused)
        return stats
