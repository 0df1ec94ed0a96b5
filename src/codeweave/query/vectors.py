"""Exact cosine search over stored symbol vectors.

The symbol table and its vectors are loaded once per index version: symbols
into a dict by id, vectors into one L2-normalized float32 matrix. Vectors
whose signature hash no longer matches their symbol are stale and skipped.
"""

from __future__ import annotations

import threading
from collections.abc import Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import structlog

if TYPE_CHECKING:
    from codeweave.store.graph import GraphStore
    from codeweave.store.models import Symbol

log = structlog.get_logger(__name__)


@dataclass
class _Snapshot:
    index_version: int
    symbols: dict[str, Symbol]
    vector_ids: list[str]
    matrix: np.ndarray


class VectorIndex:
    """Per-version snapshot of symbols and their embedding matrix."""

    def __init__(self, store: GraphStore, model_name: str, dim: int) -> None:
        self.store = store
        self.model_name = model_name
        self.dim = dim
        self._snapshot: _Snapshot | None = None
        self._lock = threading.Lock()

    def _load(self, index_version: int) -> _Snapshot:
        with self._lock:
            if self._snapshot is not None and self._snapshot.index_version == index_version:
                return self._snapshot

            symbols = {s.id: s for s in self.store.all_symbols()}
            ids: list[str] = []
            rows: list[np.ndarray] = []
            for vec in self.store.vectors(self.model_name):
                symbol = symbols.get(vec.symbol_id)
                if symbol is None or symbol.signature_hash != vec.signature_hash:
                    continue
                if vec.dim != self.dim:
                    continue
                ids.append(vec.symbol_id)
                rows.append(np.frombuffer(vec.vector, dtype=np.float32))

            if rows:
                matrix = np.vstack(rows)
                norms = np.maximum(np.linalg.norm(matrix, axis=1, keepdims=True), 1e-10)
                matrix = (matrix / norms).astype(np.float32)
            else:
                matrix = np.zeros((0, self.dim), dtype=np.float32)

            self._snapshot = _Snapshot(index_version, symbols, ids, matrix)
            log.debug(
                "vector_snapshot_loaded",
                index_version=index_version,
                symbols=len(symbols),
                vectors=len(ids),
            )
            return self._snapshot

    def symbols(self, index_version: int) -> dict[str, Symbol]:
        return self._load(index_version).symbols

    def coverage(self, index_version: int, within: Collection[str]) -> float:
        """Fraction of the ``within`` symbol ids that carry a current vector."""
        if not within:
            return 0.0
        snapshot = self._load(index_version)
        wanted = set(within)
        return sum(1 for sid in snapshot.vector_ids if sid in wanted) / len(wanted)

    def search(
        self,
        query: np.ndarray,
        index_version: int,
        top_k: int,
        within: Collection[str] | None = None,
    ) -> list[tuple[str, float]]:
        """Top ``top_k`` (symbol_id, cosine), best first, optionally restricted to ``within``."""
        snapshot = self._load(index_version)
        if not snapshot.vector_ids or top_k <= 0:
            return []

        q = np.asarray(query, dtype=np.float32).reshape(-1)
        q = q / max(float(np.linalg.norm(q)), 1e-10)
        scores = snapshot.matrix @ q

        if within is not None:
            wanted = set(within)
            allowed = np.array([sid in wanted for sid in snapshot.vector_ids], dtype=bool)
            scores = np.where(allowed, scores, -np.inf)
            available = int(allowed.sum())
        else:
            available = len(snapshot.vector_ids)
        k = min(top_k, available)
        if k == 0:
            return []
        top = np.argpartition(scores, -k)[-k:]
        hits = [(snapshot.vector_ids[i], float(scores[i])) for i in top]
        return sorted(hits, key=lambda h: (-h[1], h[0]))
