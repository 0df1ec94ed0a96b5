"""Stage 3: diversification.

Walks the ranked candidates once and keeps a candidate unless
- another kept candidate has the same signature hash (a duplicated body),
- it overlaps the line span of a kept candidate in the same file
  (module symbols span whole files and are exempt), or
- its file already contributed ``per_file_cap`` results.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from codeweave.query.models import Candidate
from codeweave.store.models import SymbolKind


@dataclass
class DiversifyOutcome:
    selected: list[Candidate]
    suppressed: dict[str, int] = field(default_factory=dict)


def _overlaps(a: Candidate, b: Candidate) -> bool:
    if a.symbol.file_path != b.symbol.file_path:
        return False
    if SymbolKind.MODULE.value in (a.symbol.kind, b.symbol.kind):
        return False
    return a.symbol.start_line <= b.symbol.end_line and b.symbol.start_line <= a.symbol.end_line


def diversify(candidates: list[Candidate], per_file_cap: int, limit: int) -> DiversifyOutcome:
    selected: list[Candidate] = []
    per_file: Counter[str] = Counter()
    seen_signatures: set[str] = set()
    suppressed: Counter[str] = Counter()

    for candidate in candidates:
        if len(selected) >= limit:
            break
        symbol = candidate.symbol
        if symbol.signature_hash in seen_signatures:
            suppressed["duplicate"] += 1
            continue
        if any(_overlaps(candidate, kept) for kept in selected):
            suppressed["overlap"] += 1
            continue
        if per_file[symbol.file_path] >= per_file_cap:
            suppressed["file_cap"] += 1
            continue
        selected.append(candidate)
        per_file[symbol.file_path] += 1
        seen_signatures.add(symbol.signature_hash)

    return DiversifyOutcome(selected=selected, suppressed=dict(suppressed))
