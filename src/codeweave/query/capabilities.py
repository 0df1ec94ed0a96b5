"""Embedding and rerank capabilities.

One abstract interface per capability, one variant per backend, selected
once from configuration. Model calls block, so the async entry points run
them in a worker thread; every output is validated before it is trusted.

Variants:
- FastEmbedEmbedder: fastembed ``TextEmbedding`` (ONNX, CPU)
- FastEmbedReranker: fastembed ``TextCrossEncoder``
- NullEmbedder / NullReranker: ``provider: none``; always unavailable
"""

from __future__ import annotations

import asyncio
import math
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import numpy as np
import structlog

from codeweave.core.errors import CapabilityUnavailable, InvalidCapabilityOutput

if TYPE_CHECKING:
    from codeweave.config.models import EmbeddingConfig, RerankConfig

log = structlog.get_logger(__name__)

EMBEDDING = "embedding"
RERANK = "rerank"


# =============================================================================
# Output validation
# =============================================================================


def validate_embeddings(raw: Any, expected: int, dim: int) -> np.ndarray:
    """Return an (expected, dim) float32 matrix or raise InvalidCapabilityOutput."""
    if expected == 0:
        return np.zeros((0, dim), dtype=np.float32)
    if raw is None:
        raise InvalidCapabilityOutput.malformed(EMBEDDING, "no output")
    try:
        matrix = np.asarray(raw if isinstance(raw, np.ndarray) else list(raw), dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidCapabilityOutput.malformed(EMBEDDING, f"not numeric: {e}") from e
    if matrix.ndim != 2 or matrix.shape != (expected, dim):
        raise InvalidCapabilityOutput.malformed(
            EMBEDDING, f"expected shape ({expected}, {dim}), got {matrix.shape}"
        )
    if not np.all(np.isfinite(matrix)):
        raise InvalidCapabilityOutput.malformed(EMBEDDING, "non-finite values")
    if np.any(np.linalg.norm(matrix, axis=1) == 0):
        raise InvalidCapabilityOutput.malformed(EMBEDDING, "zero-norm vector")
    return matrix


def validate_scores(raw: Any, expected: int) -> list[float]:
    """Return one finite float per candidate or raise InvalidCapabilityOutput."""
    if raw is None or isinstance(raw, (str, bytes)):
        raise InvalidCapabilityOutput.malformed(
            RERANK, f"unexpected output type {type(raw).__name__}"
        )
    try:
        scores = [float(s) for s in raw]
    except (TypeError, ValueError) as e:
        raise InvalidCapabilityOutput.malformed(RERANK, f"not numeric: {e}") from e
    if len(scores) != expected:
        raise InvalidCapabilityOutput.malformed(
            RERANK, f"expected {expected} scores, got {len(scores)}"
        )
    if not all(math.isfinite(s) for s in scores):
        raise InvalidCapabilityOutput.malformed(RERANK, "non-finite score")
    return scores


# =============================================================================
# Interfaces
# =============================================================================


class Embedder(ABC):
    """Turns texts into fixed-dimension vectors."""

    model_name: str = ""
    dim: int = 0

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> Any:
        """Blocking model call. Returns one vector per text."""
        ...

    def embed_sync(self, texts: Sequence[str]) -> np.ndarray:
        return validate_embeddings(self.embed_batch(texts), len(texts), self.dim)

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        raw = await asyncio.to_thread(self.embed_batch, list(texts))
        return validate_embeddings(raw, len(texts), self.dim)


class Reranker(ABC):
    """Scores (intent, document) pairs; higher is more relevant."""

    model_name: str = ""

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    def score_batch(self, intent: str, documents: Sequence[str]) -> Any:
        """Blocking model call. Returns one score per document."""
        ...

    async def rerank(self, intent: str, documents: Sequence[str]) -> list[float]:
        raw = await asyncio.to_thread(self.score_batch, intent, list(documents))
        return validate_scores(raw, len(documents))


# =============================================================================
# fastembed variants
# =============================================================================


class FastEmbedEmbedder(Embedder):
    """fastembed TextEmbedding, loaded on first use."""

    def __init__(self, model_name: str, dim: int, batch_size: int = 64) -> None:
        self.model_name = model_name
        self.dim = dim
        self.batch_size = batch_size
        self._model: Any = None
        self._load_error: str | None = None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._load_error is None

    def _ensure_model(self) -> Any:
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise CapabilityUnavailable.backend(EMBEDDING, self._load_error)
            try:
                from fastembed import TextEmbedding

                start = time.monotonic()
                self._model = TextEmbedding(
                    model_name=self.model_name,
                    threads=max(1, (os.cpu_count() or 4) // 2),
                )
                log.info(
                    "embedding_model_loaded",
                    model=self.model_name,
                    elapsed_s=round(time.monotonic() - start, 2),
                )
            except ImportError as e:
                self._load_error = "fastembed is not installed"
                raise CapabilityUnavailable.backend(EMBEDDING, self._load_error) from e
            except Exception as e:  # noqa: BLE001
                self._load_error = f"model load failed: {e}"
                log.warning("embedding_model_load_failed", model=self.model_name, error=str(e))
                raise CapabilityUnavailable.backend(EMBEDDING, self._load_error) from e
            return self._model

    def embed_batch(self, texts: Sequence[str]) -> Any:
        model = self._ensure_model()
        return list(model.embed(list(texts), batch_size=self.batch_size))


class FastEmbedReranker(Reranker):
    """fastembed TextCrossEncoder, loaded on first use."""

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._model: Any = None
        self._load_error: str | None = None
        self._lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._load_error is None

    def _ensure_model(self) -> Any:
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise CapabilityUnavailable.backend(RERANK, self._load_error)
            try:
                from fastembed.rerank.cross_encoder import TextCrossEncoder

                start = time.monotonic()
                self._model = TextCrossEncoder(model_name=self.model_name)
                log.info(
                    "rerank_model_loaded",
                    model=self.model_name,
                    elapsed_s=round(time.monotonic() - start, 2),
                )
            except ImportError as e:
                self._load_error = "fastembed is not installed"
                raise CapabilityUnavailable.backend(RERANK, self._load_error) from e
            except Exception as e:  # noqa: BLE001
                self._load_error = f"model load failed: {e}"
                log.warning("rerank_model_load_failed", model=self.model_name, error=str(e))
                raise CapabilityUnavailable.backend(RERANK, self._load_error) from e
            return self._model

    def score_batch(self, intent: str, documents: Sequence[str]) -> Any:
        model = self._ensure_model()
        return list(model.rerank(intent, list(documents)))


# =============================================================================
# Disabled variants
# =============================================================================


class NullEmbedder(Embedder):
    model_name = "none"

    @property
    def available(self) -> bool:
        return False

    def embed_batch(self, texts: Sequence[str]) -> Any:
        raise CapabilityUnavailable.backend(EMBEDDING, "no embedding provider configured")


class NullReranker(Reranker):
    model_name = "none"

    @property
    def available(self) -> bool:
        return False

    def score_batch(self, intent: str, documents: Sequence[str]) -> Any:
        raise CapabilityUnavailable.backend(RERANK, "no rerank provider configured")


def create_embedder(config: EmbeddingConfig) -> Embedder:
    if config.provider == "none":
        return NullEmbedder()
    return FastEmbedEmbedder(config.model_name, config.dim, config.batch_size)


def create_reranker(config: RerankConfig) -> Reranker:
    if config.provider == "none":
        return NullReranker()
    return FastEmbedReranker(config.model_name)
