"""Tests for result diversification."""

from __future__ import annotations

from codeweave.query.diversify import diversify
from codeweave.query.models import Candidate
from codeweave.store.models import Symbol


def _candidate(
    name: str,
    file_path: str,
    lines: tuple[int, int],
    *,
    kind: str = "function",
    signature_hash: str | None = None,
) -> Candidate:
    symbol = Symbol(
        id=f"{file_path}:{name}",
        name=name,
        qualified_name=name,
        kind=kind,
        file_path=file_path,
        module_name=file_path.removesuffix(".py"),
        start_line=lines[0],
        end_line=lines[1],
        signature_hash=signature_hash or f"h-{file_path}-{name}",
    )
    return Candidate(symbol=symbol, score=1.0)


def _names(candidates: list[Candidate]) -> list[str]:
    return [c.symbol.name for c in candidates]


class TestDiversify:
    def test_duplicate_signature_is_suppressed(self) -> None:
        ranked = [
            _candidate("retry", "a.py", (1, 5), signature_hash="same"),
            _candidate("retry", "b.py", (1, 5), signature_hash="same"),
            _candidate("backoff", "b.py", (10, 12)),
        ]

        outcome = diversify(ranked, per_file_cap=2, limit=10)

        assert _names(outcome.selected) == ["retry", "backoff"]
        assert outcome.selected[0].symbol.file_path == "a.py"
        assert outcome.suppressed == {"duplicate": 1}

    def test_overlapping_span_in_same_file_is_suppressed(self) -> None:
        ranked = [
            _candidate("Client", "a.py", (1, 30), kind="class"),
            _candidate("Client.send", "a.py", (10, 20), kind="method"),
            _candidate("send", "b.py", (10, 20)),
        ]

        outcome = diversify(ranked, per_file_cap=5, limit=10)

        assert _names(outcome.selected) == ["Client", "send"]
        assert outcome.suppressed == {"overlap": 1}

    def test_module_symbols_do_not_overlap(self) -> None:
        ranked = [
            _candidate("a", "a.py", (1, 100), kind="module"),
            _candidate("run", "a.py", (3, 9)),
        ]

        outcome = diversify(ranked, per_file_cap=5, limit=10)

        assert _names(outcome.selected) == ["a", "run"]

    def test_per_file_cap(self) -> None:
        ranked = [
            _candidate("one", "a.py", (1, 2)),
            _candidate("two", "a.py", (4, 5)),
            _candidate("three", "a.py", (7, 8)),
            _candidate("other", "b.py", (1, 2)),
        ]

        outcome = diversify(ranked, per_file_cap=2, limit=10)

        assert _names(outcome.selected) == ["one", "two", "other"]
        assert outcome.suppressed == {"file_cap": 1}

    def test_limit_stops_the_walk(self) -> None:
        ranked = [_candidate(f"f{i}", f"m{i}.py", (1, 2)) for i in range(5)]

        outcome = diversify(ranked, per_file_cap=2, limit=3)

        assert _names(outcome.selected) == ["f0", "f1", "f2"]
        assert outcome.suppressed == {}

    def test_ranking_order_is_preserved(self) -> None:
        ranked = [
            _candidate("z", "z.py", (1, 2)),
            _candidate("a", "a.py", (1, 2)),
        ]

        assert _names(diversify(ranked, per_file_cap=1, limit=10).selected) == ["z", "a"]
