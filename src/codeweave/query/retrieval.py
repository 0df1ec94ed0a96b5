"""Stage 1: candidate retrieval.

Semantic retrieval embeds the intent and runs exact cosine search over the
symbol vectors. It is used only when the embedder is available and enough
of the candidate symbols carry current vectors; otherwise retrieval falls
back to lexical token overlap and reports ``semantic-fallback``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from codeweave.core.errors import (
    CapabilityTimeout,
    CapabilityUnavailable,
    CodeWeaveError,
)
from codeweave.index.embedding import path_to_phrase, word_split
from codeweave.query.models import Candidate, Degradation

if TYPE_CHECKING:
    from codeweave.config.models import QueryConfig
    from codeweave.query.capabilities import Embedder
    from codeweave.query.models import QueryOptions
    from codeweave.query.vectors import VectorIndex
    from codeweave.store.models import Symbol

log = structlog.get_logger(__name__)

SEMANTIC_FALLBACK = "semantic-fallback"

_STOPWORDS = frozenset(
    {"a", "an", "and", "are", "by", "do", "does", "for", "from", "how", "in", "is",
     "it", "of", "on", "or", "the", "to", "what", "where", "which", "with"}
)


@dataclass
class RetrievalOutcome:
    candidates: list[Candidate]
    degradations: list[Degradation] = field(default_factory=list)
    transient: bool = False

    @property
    def tags(self) -> list[str]:
        return [d.tag for d in self.degradations]


def intent_tokens(intent: str) -> set[str]:
    return {w for w in word_split(intent) if w not in _STOPWORDS}


def lexical_score(tokens: set[str], intent_lower: str, symbol: Symbol) -> float:
    """Token overlap in [0, ~1.25]: name hits count double, an exact name mention adds 0.25."""
    if not tokens:
        return 0.0
    name_words = set(word_split(symbol.qualified_name))
    other_words = set(word_split(path_to_phrase(symbol.file_path)))
    if symbol.signature:
        other_words.update(word_split(symbol.signature))
    if symbol.docstring:
        other_words.update(word_split(symbol.docstring))
    other_words -= name_words

    score = (2 * len(tokens & name_words) + len(tokens & other_words)) / (2 * len(tokens))
    if score > 0 and len(symbol.name) >= 3 and symbol.name.lower() in intent_lower:
        score += 0.25
    return round(score, 6)


def _ordered(candidates: list[Candidate]) -> list[Candidate]:
    return sorted(
        candidates,
        key=lambda c: (-c.score, c.symbol.file_path, c.symbol.start_line, c.symbol.id),
    )


class Retriever:
    """Produces the initial candidate pool for an intent."""

    def __init__(
        self,
        embedder: Embedder,
        vectors: VectorIndex,
        config: QueryConfig,
    ) -> None:
        self.embedder = embedder
        self.vectors = vectors
        self.config = config

    async def retrieve(
        self,
        intent: str,
        index_version: int,
        options: QueryOptions,
        pool: int | None = None,
    ) -> RetrievalOutcome:
        pool = pool or self.config.candidate_pool
        symbols = await asyncio.to_thread(self.vectors.symbols, index_version)
        eligible = {sid: s for sid, s in symbols.items() if options.accepts(s)}

        transient = False
        reason = self._semantic_blocker(index_version, eligible)
        if reason is None:
            timeout_sec = self.config.embed_timeout_sec
            try:
                async with asyncio.timeout(timeout_sec):
                    query_vec = (await self.embedder.embed([intent]))[0]
            except TimeoutError:
                reason, transient = CapabilityTimeout.after("embedding", timeout_sec).message, True
            except CapabilityUnavailable as e:
                reason = e.message
            except CodeWeaveError as e:
                reason, transient = e.message, True
            except Exception as e:  # noqa: BLE001
                reason, transient = f"embedding backend: {e}", True
            else:
                hits = self.vectors.search(query_vec, index_version, pool, within=eligible)
                return RetrievalOutcome(
                    candidates=[
                        Candidate(symbol=eligible[sid], score=round(score, 6))
                        for sid, score in hits
                    ]
                )

        log.info("semantic_retrieval_fallback", reason=reason, transient=transient)
        return RetrievalOutcome(
            candidates=self.lexical(intent, eligible.values(), pool),
            degradations=[Degradation(stage="retrieval", tag=SEMANTIC_FALLBACK, reason=reason)],
            transient=transient,
        )

    def _semantic_blocker(self, index_version: int, eligible: dict[str, Symbol]) -> str | None:
        if not self.embedder.available:
            return "embedding capability unavailable"
        if not eligible:
            return "no symbols indexed"
        coverage = self.vectors.coverage(index_version, eligible)
        if coverage < self.config.min_vector_coverage:
            return f"vector coverage {coverage:.2f} below {self.config.min_vector_coverage:.2f}"
        return None

    @staticmethod
    def lexical(intent: str, symbols: Iterable[Symbol], pool: int) -> list[Candidate]:
        tokens = intent_tokens(intent)
        intent_lower = intent.lower()
        scored = []
        for symbol in symbols:
            score = lexical_score(tokens, intent_lower, symbol)
            if score > 0:
                scored.append(Candidate(symbol=symbol, score=score))
        return _ordered(scored)[:pool]
