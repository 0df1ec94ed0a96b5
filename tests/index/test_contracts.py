"""Tests for strategic contract materialization."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from codeweave.index.extraction import symbol_id
from codeweave.index.ops import IndexCoordinator
from codeweave.store.models import StrategicContract

WriteFiles = Callable[[dict[str, str]], None]


def module_id(file_path: str, module: str) -> str:
    return symbol_id(file_path, "module", module)


def contract_for(coordinator: IndexCoordinator, module: str) -> StrategicContract | None:
    contracts = coordinator.store.strategic_contracts()
    return next((c for c in contracts if c.module_name == module), None)


@pytest.fixture
def three_modules(write_files: WriteFiles) -> None:
    write_files(
        {
            "store.py": "def load():\n    pass\n",
            "api.py": "from store import load\n\ndef handler():\n    load()\n",
            "cli.py": "import store\n",
        }
    )


class TestContractMaterializer:
    @pytest.mark.usefixtures("three_modules")
    def test_provider_lists_consumers_with_evidence(self, coordinator: IndexCoordinator) -> None:
        summary = coordinator.index_workspace("full")

        contract = contract_for(coordinator, "store")
        assert contract is not None
        assert summary.contracts_written == 1
        assert contract.producers == [module_id("store.py", "store")]
        expected = sorted([module_id("api.py", "api"), module_id("cli.py", "cli")])
        assert contract.consumers == expected
        kinds = sorted(item["ref"].partition(":")[0] for item in contract.evidence)
        assert kinds == ["call", "import", "import"]

    @pytest.mark.usefixtures("three_modules")
    def test_evidence_refs_point_at_live_edges(self, coordinator: IndexCoordinator) -> None:
        coordinator.index_workspace("full")

        contract = contract_for(coordinator, "store")
        assert contract is not None
        call_ids = {e.id for e in coordinator.store.call_edges(resolved=True)}
        import_ids = {i.id for i in coordinator.store.import_refs() if i.resolved_module}
        for item in contract.evidence:
            kind, _, ref_id = item["ref"].partition(":")
            assert ref_id in (call_ids if kind == "call" else import_ids)
        assert coordinator.verify_integrity().passed

    @pytest.mark.usefixtures("three_modules")
    def test_deleted_consumer_drops_out_of_contract(
        self, coordinator: IndexCoordinator, workspace: Path
    ) -> None:
        coordinator.index_workspace("full")
        (workspace / "api.py").unlink()

        summary = coordinator.index_workspace("incremental")

        assert summary.files_removed == 1
        assert coordinator.store.symbols_for_file("api.py") == []
        assert coordinator.store.call_edges("api.py") == []
        contract = contract_for(coordinator, "store")
        assert contract is not None
        assert contract.consumers == [module_id("cli.py", "cli")]
        assert all(item["consumer"] != module_id("api.py", "api") for item in contract.evidence)

    @pytest.mark.usefixtures("three_modules")
    def test_contract_without_evidence_is_removed(
        self, coordinator: IndexCoordinator, workspace: Path
    ) -> None:
        coordinator.index_workspace("full")
        (workspace / "api.py").unlink()
        (workspace / "cli.py").unlink()

        coordinator.index_workspace("incremental")

        assert contract_for(coordinator, "store") is None
        assert coordinator.verify_integrity().passed

    def test_self_references_are_not_contracts(
        self, coordinator: IndexCoordinator, write_files: WriteFiles
    ) -> None:
        write_files({"solo.py": "def a():\n    b()\n\ndef b():\n    pass\n"})

        coordinator.index_workspace("full")

        assert coordinator.store.strategic_contracts() == []

    @pytest.mark.usefixtures("three_modules")
    def test_recompute_without_change_is_a_no_op(self, coordinator: IndexCoordinator) -> None:
        coordinator.index_workspace("full")
        version = coordinator.current_version()

        stats = coordinator.materialize_strategic_contracts()

        assert stats.changed is False
        assert stats.contracts_written == 1
        assert coordinator.current_version() == version
