"""Query request and response models.

``QueryPayload`` is the cacheable part of a response: it is serialized once
with ``model_dump_json`` and a cache hit re-validates exactly those bytes.
``QueryResult`` adds the per-call fields (timings, cache flag, freshness)
that must never be cached.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from codeweave.store.models import Symbol

FULL_STRATEGY = "full"


class QueryOptions(BaseModel):
    """Caller filters. Everything except ``use_cache`` is part of the cache key."""

    kinds: list[str] | None = None
    path_prefix: str | None = None
    use_cache: bool = True

    def cache_params(self) -> dict[str, Any]:
        return {
            "kinds": sorted(self.kinds) if self.kinds else None,
            "path_prefix": self.path_prefix,
        }

    def accepts(self, symbol: Symbol) -> bool:
        if self.kinds and symbol.kind not in self.kinds:
            return False
        return not (self.path_prefix and not symbol.file_path.startswith(self.path_prefix))


class Degradation(BaseModel):
    """Which stage fell back and why."""

    stage: str
    tag: str
    reason: str


class ResultItem(BaseModel):
    symbol_id: str
    name: str
    qualified_name: str
    kind: str
    file_path: str
    start_line: int
    end_line: int
    score: float
    rerank_score: float | None = None
    snippet: str = ""


class QueryPayload(BaseModel):
    results: list[ResultItem] = Field(default_factory=list)
    strategy: str = FULL_STRATEGY
    confidence: float = 1.0
    index_version: int = 0
    degradations: list[Degradation] = Field(default_factory=list)


class QueryResult(BaseModel):
    """Full response for one ``query`` call."""

    results: list[ResultItem]
    strategy: str
    confidence: float
    index_version: int
    degradations: list[Degradation] = Field(default_factory=list)
    stage_timings: dict[str, float] = Field(default_factory=dict)
    cache_hit: bool = False
    freshness: dict[str, Any] | None = None
    request_id: str | None = None

    @property
    def degraded(self) -> bool:
        return self.strategy != FULL_STRATEGY

    def payload(self) -> QueryPayload:
        return QueryPayload(
            results=self.results,
            strategy=self.strategy,
            confidence=self.confidence,
            index_version=self.index_version,
            degradations=self.degradations,
        )


@dataclass
class Candidate:
    """A symbol moving through retrieval, rerank and diversification."""

    symbol: Symbol
    score: float
    rerank_score: float | None = None


def strategy_for(tags: list[str]) -> str:
    """``full`` or ``degraded:<tag>[+<tag>...]``."""
    return FULL_STRATEGY if not tags else "degraded:" + "+".join(tags)
