"""Stage 2: concurrent, isolated reranking.

The top ``rerank_top_n`` candidates are split into contiguous groups of
``rerank_group_size``. Each group is scored in its own branch under a
shared semaphore and its own timeout; a branch captures its result or its
error and never raises into the task group, so one failed group cannot
cancel the others. Cancelling the caller cancels every branch.

Merge: candidates from groups that scored are reordered by rerank score
across the slots those groups occupied; candidates from failed groups keep
their pre-rerank positions. When every branch fails the ranking is exactly
the pre-rerank order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from codeweave.core.errors import (
    CapabilityTimeout,
    CapabilityUnavailable,
    CodeWeaveError,
    InternalError,
    InvalidCapabilityOutput,
)
from codeweave.index.embedding import symbol_document
from codeweave.query.models import Candidate, Degradation

if TYPE_CHECKING:
    from codeweave.config.models import QueryConfig
    from codeweave.query.capabilities import Reranker

log = structlog.get_logger(__name__)

RERANK_PARTIAL = "rerank-partial"
RERANK_UNAVAILABLE = "rerank-unavailable"
RERANK_INVALID = "rerank-invalid"
RERANK_TIMEOUT = "rerank-timeout"


@dataclass
class BranchResult:
    """Outcome of one rerank group: scores or the error that replaced them."""

    group: int
    scores: list[float] | None = None
    error: CodeWeaveError | None = None

    @property
    def ok(self) -> bool:
        return self.scores is not None


@dataclass
class RerankOutcome:
    candidates: list[Candidate]
    branches: list[BranchResult] = field(default_factory=list)
    degradations: list[Degradation] = field(default_factory=list)
    transient: bool = False

    @property
    def failed_groups(self) -> list[int]:
        return [b.group for b in self.branches if not b.ok]


def _all_failed_tag(errors: list[CodeWeaveError]) -> str:
    if all(isinstance(e, CapabilityUnavailable) for e in errors):
        return RERANK_UNAVAILABLE
    if any(isinstance(e, InvalidCapabilityOutput) for e in errors):
        return RERANK_INVALID
    return RERANK_TIMEOUT


async def _score_group(
    reranker: Reranker,
    intent: str,
    group: int,
    members: list[Candidate],
    semaphore: asyncio.Semaphore,
    timeout_sec: float,
) -> BranchResult:
    docs = [symbol_document(c.symbol) for c in members]
    async with semaphore:
        try:
            async with asyncio.timeout(timeout_sec):
                scores = await reranker.rerank(intent, docs)
        except TimeoutError:
            return BranchResult(group, error=CapabilityTimeout.after("rerank", timeout_sec))
        except CodeWeaveError as e:
            return BranchResult(group, error=e)
        except Exception as e:  # noqa: BLE001
            return BranchResult(group, error=InternalError.unexpected(f"rerank backend: {e}"))
    return BranchResult(group, scores=scores)


def merge_branches(
    top: list[Candidate],
    groups: list[list[int]],
    branches: list[BranchResult],
) -> list[Candidate]:
    """Reorder scored groups across their own slots; failed groups stay in place."""
    merged: list[Candidate | None] = list(top)
    slots: list[int] = []
    scored: list[tuple[float, int, Candidate]] = []
    for branch in branches:
        if not branch.ok:
            continue
        assert branch.scores is not None
        for position, score in zip(groups[branch.group], branch.scores, strict=True):
            candidate = top[position]
            candidate.rerank_score = round(score, 6)
            slots.append(position)
            scored.append((-candidate.rerank_score, position, candidate))

    slots.sort()
    ordered = sorted(scored, key=lambda s: (s[0], s[1]))
    for slot, (_, _, candidate) in zip(slots, ordered, strict=True):
        merged[slot] = candidate
    return [c for c in merged if c is not None]


async def rerank_candidates(
    reranker: Reranker,
    intent: str,
    candidates: list[Candidate],
    config: QueryConfig,
) -> RerankOutcome:
    top_n = min(config.rerank_top_n, len(candidates))
    if top_n == 0:
        return RerankOutcome(candidates=list(candidates))

    top, rest = list(candidates[:top_n]), list(candidates[top_n:])
    if not reranker.available:
        return RerankOutcome(
            candidates=top + rest,
            degradations=[
                Degradation(
                    stage="rerank",
                    tag=RERANK_UNAVAILABLE,
                    reason="rerank capability unavailable",
                )
            ],
        )

    size = config.rerank_group_size
    groups = [list(range(i, min(i + size, top_n))) for i in range(0, top_n, size)]
    semaphore = asyncio.Semaphore(config.rerank_max_concurrency)

    async with asyncio.TaskGroup() as tg:
        tasks = [
            tg.create_task(
                _score_group(
                    reranker,
                    intent,
                    index,
                    [top[i] for i in positions],
                    semaphore,
                    config.rerank_timeout_sec,
                )
            )
            for index, positions in enumerate(groups)
        ]
    branches = [t.result() for t in tasks]

    failed = [b for b in branches if not b.ok]
    for b in failed:
        assert b.error is not None
        log.warning(
            "rerank_branch_failed",
            group=b.group,
            error=b.error.error_name,
            reason=b.error.message,
        )

    merged = merge_branches(top, groups, branches)
    outcome = RerankOutcome(candidates=merged + rest, branches=branches)
    if not failed:
        return outcome

    errors = [b.error for b in failed if b.error is not None]
    if len(failed) == len(branches):
        tag = _all_failed_tag(errors)
        reason = errors[0].message
    else:
        tag = RERANK_PARTIAL
        reason = f"{len(failed)} of {len(branches)} groups failed: {errors[0].message}"
    outcome.degradations.append(Degradation(stage="rerank", tag=tag, reason=reason))
    outcome.transient = any(not isinstance(e, CapabilityUnavailable) for e in errors)
    return outcome
