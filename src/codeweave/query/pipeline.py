"""Query pipeline: cache -> retrieval -> rerank -> diversify -> cache.

A query first computes its cache key from the normalized intent, its
parameters and the current index version. A hit returns the stored payload
as-is; a miss runs the stages and stores the serialized payload under the
same key. Payloads degraded by transient faults (timeouts, malformed
capability output, failed rerank branches) are returned but not stored.

Every stage that can fall back records a ``Degradation``; the strategy tag
is ``full`` only when none did. The whole query runs under one deadline and
cancelling it cancels retrieval and every rerank branch.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError

from codeweave.core.errors import QueryTimeout
from codeweave.core.logging import query_scope
from codeweave.query.capabilities import create_embedder, create_reranker
from codeweave.query.diversify import diversify
from codeweave.query.models import (
    Candidate,
    Degradation,
    QueryOptions,
    QueryPayload,
    QueryResult,
    ResultItem,
    strategy_for,
)
from codeweave.query.rerank import (
    RERANK_INVALID,
    RERANK_PARTIAL,
    RERANK_TIMEOUT,
    RERANK_UNAVAILABLE,
    rerank_candidates,
)
from codeweave.query.retrieval import SEMANTIC_FALLBACK, Retriever
from codeweave.query.vectors import VectorIndex
from codeweave.store.cache import CacheHit, QueryCacheStore, cache_key
from codeweave.store.graph import read_snippet

if TYPE_CHECKING:
    from codeweave.config.models import QueryConfig
    from codeweave.index.ops import IndexCoordinator
    from codeweave.query.capabilities import Embedder, Reranker
    from codeweave.store.graph import GraphStore
    from codeweave.store.versions import IndexVersionManager
    from codeweave.watch.manager import WatchManager
    from codeweave.watch.state import WatchHealth

log = structlog.get_logger(__name__)

_CONFIDENCE_FACTORS = {
    SEMANTIC_FALLBACK: 0.5,
    RERANK_PARTIAL: 0.85,
    RERANK_UNAVAILABLE: 0.7,
    RERANK_INVALID: 0.7,
    RERANK_TIMEOUT: 0.7,
}


def confidence_for(degradations: list[Degradation], result_count: int) -> float:
    if result_count == 0:
        return 0.0
    confidence = 1.0
    for d in degradations:
        confidence *= _CONFIDENCE_FACTORS.get(d.tag, 0.5)
    return round(confidence, 3)


@contextmanager
def _timed(timings: dict[str, float], stage: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        timings[stage] = round((time.perf_counter() - start) * 1000, 3)


class QueryPipeline:
    """
    Serves ranked context for an intent.

    Usage::

        pipeline = QueryPipeline.for_coordinator(coordinator, watch=manager)
        result = await pipeline.query("where are retries configured", budget=5)
        result.strategy          # "full" or "degraded:<tags>"
        result.stage_timings     # per-stage milliseconds
    """

    def __init__(
        self,
        repo_root: Path,
        store: GraphStore,
        versions: IndexVersionManager,
        cache: QueryCacheStore,
        config: QueryConfig,
        embedder: Embedder,
        reranker: Reranker,
        *,
        health: Callable[[], WatchHealth] | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.store = store
        self.versions = versions
        self.cache = cache
        self.config = config
        self.embedder = embedder
        self.reranker = reranker
        self.health = health
        self.vectors = VectorIndex(store, embedder.model_name, embedder.dim)
        self.retriever = Retriever(embedder, self.vectors, config)

    @classmethod
    def for_coordinator(
        cls,
        coordinator: IndexCoordinator,
        *,
        embedder: Embedder | None = None,
        reranker: Reranker | None = None,
        watch: WatchManager | None = None,
    ) -> QueryPipeline:
        config = coordinator.config
        embedder = embedder or coordinator.embedder or create_embedder(config.embedding)
        return cls(
            coordinator.repo_root,
            coordinator.store,
            coordinator.versions,
            QueryCacheStore(coordinator.db, config.query.cache_capacity),
            config.query,
            embedder,
            reranker or create_reranker(config.rerank),
            health=watch.status if watch is not None else None,
        )

    async def query(
        self,
        intent: str,
        budget: int | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Run (or serve from cache) one query.

        Args:
            intent: Natural-language description of what the caller is looking for.
            budget: Maximum number of results; defaults to ``query.default_budget``.
            options: Kind/path filters and cache bypass.

        Raises:
            ValueError: Empty intent or non-positive budget.
            QueryTimeout: The overall deadline elapsed.
            StorageUnavailable: The graph store cannot be read.
        """
        if not intent.strip():
            raise ValueError("intent must not be empty")
        budget = self.config.default_budget if budget is None else budget
        if budget < 1:
            raise ValueError(f"budget must be positive, got {budget}")
        options = options or QueryOptions()

        with query_scope() as request_id:
            try:
                async with asyncio.timeout(self.config.timeout_sec):
                    return await self._run(intent, budget, options, request_id)
            except TimeoutError:
                log.warning("query_timeout", timeout_sec=self.config.timeout_sec)
                raise QueryTimeout.after(self.config.timeout_sec) from None

    async def _run(
        self,
        intent: str,
        budget: int,
        options: QueryOptions,
        request_id: str,
    ) -> QueryResult:
        timings: dict[str, float] = {}
        started = time.perf_counter()

        version = await asyncio.to_thread(self.versions.current_version)
        key = cache_key(intent, {"budget": budget, **options.cache_params()}, version)

        if options.use_cache:
            with _timed(timings, "cache_lookup"):
                hit = await self._lookup(key, version)
            if hit is not None:
                payload = QueryPayload.model_validate_json(hit.payload)
                log.info(
                    "query_cache_hit",
                    index_version=version,
                    access_count=hit.access_count,
                    strategy=payload.strategy,
                )
                return self._result(
                    payload, timings, started, cache_hit=True, request_id=request_id
                )

        with _timed(timings, "retrieval"):
            retrieval = await self.retriever.retrieve(intent, version, options)
        with _timed(timings, "rerank"):
            reranked = await rerank_candidates(
                self.reranker, intent, retrieval.candidates, self.config
            )
        with _timed(timings, "diversify"):
            diversified = diversify(reranked.candidates, self.config.per_file_cap, budget)
        with _timed(timings, "snippets"):
            items = await asyncio.to_thread(self._render, diversified.selected)

        degradations = retrieval.degradations + reranked.degradations
        payload = QueryPayload(
            results=items,
            strategy=strategy_for([d.tag for d in degradations]),
            confidence=confidence_for(degradations, len(items)),
            index_version=version,
            degradations=degradations,
        )

        transient = retrieval.transient or reranked.transient
        if options.use_cache and not transient:
            with _timed(timings, "cache_store"):
                await self._store(key, payload.model_dump_json(), version)

        if diversified.suppressed:
            log.debug("query_results_suppressed", **diversified.suppressed)
        return self._result(payload, timings, started, cache_hit=False, request_id=request_id)

    def _render(self, candidates: list[Candidate]) -> list[ResultItem]:
        items = []
        for c in candidates:
            s = c.symbol
            items.append(
                ResultItem(
                    symbol_id=s.id,
                    name=s.name,
                    qualified_name=s.qualified_name,
                    kind=s.kind,
                    file_path=s.file_path,
                    start_line=s.start_line,
                    end_line=s.end_line,
                    score=c.score,
                    rerank_score=c.rerank_score,
                    snippet=read_snippet(
                        self.repo_root,
                        s.file_path,
                        s.start_line,
                        s.end_line,
                        self.config.snippet_max_lines,
                    ),
                )
            )
        return items

    async def _lookup(self, key: str, version: int) -> CacheHit | None:
        try:
            return await asyncio.to_thread(self.cache.lookup, key, version)
        except SQLAlchemyError as e:
            log.warning("query_cache_lookup_failed", error=str(e))
            return None

    async def _store(self, key: str, payload: str, version: int) -> None:
        try:
            await asyncio.to_thread(self.cache.store, key, payload, version)
        except SQLAlchemyError as e:
            log.warning("query_cache_store_failed", error=str(e))

    def _result(
        self,
        payload: QueryPayload,
        timings: dict[str, float],
        started: float,
        *,
        cache_hit: bool,
        request_id: str,
    ) -> QueryResult:
        timings["total"] = round((time.perf_counter() - started) * 1000, 3)
        log.debug("query_stage_timings", cache_hit=cache_hit, **timings)
        log.info(
            "query_complete",
            strategy=payload.strategy,
            results=len(payload.results),
            cache_hit=cache_hit,
            duration_ms=timings["total"],
        )
        return QueryResult(
            results=payload.results,
            strategy=payload.strategy,
            confidence=payload.confidence,
            index_version=payload.index_version,
            degradations=payload.degradations,
            stage_timings=timings,
            cache_hit=cache_hit,
            freshness=self.health().to_dict() if self.health is not None else None,
            request_id=request_id,
        )
