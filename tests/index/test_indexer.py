"""Tests for per-file indexing."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from codeweave.core.errors import TransactionFailure
from codeweave.index.indexer import FileOutcome, Indexer
from codeweave.index.ops import IndexCoordinator
from codeweave.store.graph import FileTransaction
from codeweave.store.models import FileStatus


@pytest.fixture
def indexer(coordinator: IndexCoordinator) -> Indexer:
    coordinator.initialize()
    return coordinator.indexer


class TestProcessFile:
    """Hash gate, extraction and per-file transaction."""

    def test_new_file_is_indexed(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    helper()\n\ndef helper():\n    pass\n"})

        result = indexer.process_file("app.py")

        assert result.outcome is FileOutcome.INDEXED
        assert result.status is FileStatus.OK
        assert result.symbols == 3
        assert result.call_edges == 1
        state = indexer.store.get_file_state("app.py")
        assert state is not None
        assert state.content_hash == result.content_hash
        assert state.language == "python"

    def test_unchanged_hash_skips_extraction(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    pass\n"})
        indexer.process_file("app.py")

        with patch.object(indexer.registry, "extract") as extract:
            result = indexer.process_file("app.py")

        assert result.outcome is FileOutcome.UNCHANGED
        extract.assert_not_called()

    def test_force_reextracts_unchanged_file(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    pass\n"})
        indexer.process_file("app.py")

        result = indexer.process_file("app.py", force=True)

        assert result.outcome is FileOutcome.INDEXED

    def test_syntax_errors_record_warning_status(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"bad.py": "def (((:\n  ]]] ::\nclass\n"})

        result = indexer.process_file("bad.py")

        assert result.outcome is FileOutcome.INDEXED
        assert result.status is FileStatus.WARNING
        state = indexer.store.get_file_state("bad.py")
        assert state is not None
        assert state.status == "warning"
        assert state.message

    def test_missing_file_is_removed(
        self, indexer: Indexer, workspace: Path, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    pass\n"})
        indexer.process_file("app.py")
        (workspace / "app.py").unlink()

        result = indexer.process_file("app.py")

        assert result.outcome is FileOutcome.REMOVED
        assert indexer.store.symbols_for_file("app.py") == []
        assert indexer.store.get_file_state("app.py") is None

    def test_untracked_missing_file_is_a_no_op(self, indexer: Indexer) -> None:
        assert indexer.process_file("never.py").outcome is FileOutcome.UNCHANGED

    def test_extractor_crash_marks_error_and_keeps_old_facts(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    pass\n"})
        first = indexer.process_file("app.py")
        write_files({"app.py": "def main():\n    return 1\n"})

        with patch.object(indexer.registry, "extract", side_effect=RuntimeError("grammar crashed")):
            result = indexer.process_file("app.py")

        assert result.outcome is FileOutcome.FAILED
        assert "grammar crashed" in (result.error or "")
        state = indexer.store.get_file_state("app.py")
        assert state is not None
        assert state.status == "error"
        assert state.content_hash == first.content_hash
        assert {s.name for s in indexer.store.symbols_for_file("app.py")} == {"app", "main"}

    def test_transaction_failure_is_retried_once(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    pass\n"})
        real_begin = indexer.store.begin_file_transaction
        calls = {"n": 0}

        def flaky(path: str) -> FileTransaction:
            calls["n"] += 1
            if calls["n"] == 1:
                raise TransactionFailure.for_file(path, "database is locked")
            return real_begin(path)

        with patch.object(indexer.store, "begin_file_transaction", side_effect=flaky):
            result = indexer.process_file("app.py")

        assert result.outcome is FileOutcome.INDEXED
        assert calls["n"] == 2

    def test_second_transaction_failure_records_error(
        self, indexer: Indexer, write_files: Callable[[dict[str, str]], None]
    ) -> None:
        write_files({"app.py": "def main():\n    pass\n"})

        with patch.object(
            indexer.store,
            "begin_file_transaction",
            side_effect=TransactionFailure.for_file("app.py", "disk full"),
        ):
            result = indexer.process_file("app.py")

        assert result.outcome is FileOutcome.FAILED
        state = indexer.store.get_file_state("app.py")
        assert state is not None
        assert state.status == "error"
