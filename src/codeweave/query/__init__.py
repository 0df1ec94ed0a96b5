"""Query module - retrieval, rerank, diversification and result caching.

Public API:
- QueryPipeline: ``await pipeline.query(intent, budget, options)``
- QueryResult / QueryOptions: response and request models
- Embedder / Reranker: capability interfaces and their factories
"""

from codeweave.query.capabilities import (
    Embedder,
    FastEmbedEmbedder,
    FastEmbedReranker,
    NullEmbedder,
    NullReranker,
    Reranker,
    create_embedder,
    create_reranker,
)
from codeweave.query.models import Degradation, QueryOptions, QueryPayload, QueryResult, ResultItem
from codeweave.query.pipeline import QueryPipeline

__all__ = [
    "QueryPipeline",
    "QueryResult",
    "QueryPayload",
    "QueryOptions",
    "ResultItem",
    "Degradation",
    "Embedder",
    "Reranker",
    "FastEmbedEmbedder",
    "FastEmbedReranker",
    "NullEmbedder",
    "NullReranker",
    "create_embedder",
    "create_reranker",
]
