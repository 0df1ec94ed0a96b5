"""Cross-file edge resolution, the second phase of every indexing pass.

Runs only after every file of the pass has committed, against the complete
symbol table. Precedence for a call edge's callee reference:

1. exact qualified match: the callee module (or a module nested under it,
   for ``pkg.mod.func`` written through ``import pkg``) defines the
   qualified name
2. unique unqualified match: exactly one non-module symbol in the workspace
   carries the last name segment
3. otherwise the edge stays unresolved

References into modules that are not part of the workspace (``os.path.join``)
never fall through to the unqualified lookup. The pass also resolves import
references to workspace modules and entanglement hints to file pairs.
Running it twice without an intervening change is a no-op.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from codeweave.store.models import EdgeKind, SymbolKind, format_ref

if TYPE_CHECKING:
    from codeweave.store.database import BulkWriter, Database

log = structlog.get_logger(__name__)


@dataclass
class ResolutionStats:
    """Counts from one resolver run. Unresolved edges are a count, not an error."""

    resolved_count: int = 0
    still_unresolved_count: int = 0
    invalidated_count: int = 0
    ambiguous_count: int = 0
    imports_resolved: int = 0
    imports_changed: int = 0
    entanglements_changed: int = 0

    @property
    def changed(self) -> bool:
        return bool(
            self.resolved_count
            or self.invalidated_count
            or self.imports_changed
            or self.entanglements_changed
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "resolved_count": self.resolved_count,
            "still_unresolved_count": self.still_unresolved_count,
            "invalidated_count": self.invalidated_count,
            "ambiguous_count": self.ambiguous_count,
            "imports_resolved": self.imports_resolved,
        }


class SymbolTable:
    """Global lookup tables built from every current symbol."""

    def __init__(self, rows: list[Any]) -> None:
        qualified: dict[tuple[str, str], list[str]] = defaultdict(list)
        by_name: dict[str, list[str]] = defaultdict(list)
        modules: dict[str, list[str]] = defaultdict(list)
        self.file_of: dict[str, str] = {}

        for sym_id, name, qualified_name, kind, module_name, file_path in rows:
            self.file_of[sym_id] = file_path
            if kind == SymbolKind.MODULE.value:
                modules[module_name].append(sym_id)
                continue
            qualified[(module_name, qualified_name)].append(sym_id)
            by_name[name].append(sym_id)

        self._qualified = qualified
        self._by_name = by_name
        # Two files claiming one module name (foo.py and foo/__init__.py) is ambiguous
        self.modules: dict[str, str] = {m: ids[0] for m, ids in modules.items() if len(ids) == 1}
        self._module_names = set(modules)

    def is_workspace_module(self, module: str) -> bool:
        return module in self._module_names

    def lookup_qualified(self, module: str, name: str) -> str | None:
        """Symbol id for ``module`` + dotted ``name``, trying nested module splits."""
        parts = name.split(".")
        for k in range(len(parts)):
            mod = ".".join([module, *parts[:k]])
            ids = self._qualified.get((mod, ".".join(parts[k:])))
            if ids and len(ids) == 1:
                return ids[0]
        return None

    def touches_workspace(self, module: str, name: str) -> bool:
        parts = name.split(".")
        return any(
            self.is_workspace_module(".".join([module, *parts[:k]])) for k in range(len(parts))
        )

    def lookup_unqualified(self, name: str) -> tuple[str | None, bool]:
        """(symbol id, ambiguous) for a bare name."""
        ids = self._by_name.get(name, [])
        if len(ids) == 1:
            return ids[0], False
        return None, len(ids) > 1


class CrossFileResolver:
    """Resolves call edges, import references and entanglement hints."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def resolve_external_call_edges(self) -> ResolutionStats:
        stats = ResolutionStats()
        with self.db.bulk_writer() as writer:
            stats.invalidated_count = self._invalidate_dangling(writer)
            table = SymbolTable(
                list(
                    writer.execute(
                        "SELECT id, name, qualified_name, kind, module_name, file_path FROM symbols"
                    )
                )
            )
            self._resolve_calls(writer, table, stats)
            self._resolve_imports(writer, table, stats)
            self._resolve_entanglements(writer, table, stats)
            stats.still_unresolved_count = int(
                writer.execute("SELECT COUNT(*) FROM call_edges WHERE resolved = 0").scalar() or 0
            )

        log.info(
            "cross_file_resolution_complete",
            resolved=stats.resolved_count,
            still_unresolved=stats.still_unresolved_count,
            invalidated=stats.invalidated_count,
            ambiguous=stats.ambiguous_count,
        )
        return stats

    def _invalidate_dangling(self, writer: BulkWriter) -> int:
        result = writer.execute(
            """
            UPDATE call_edges SET resolved = 0, resolved_callee_id = NULL
            WHERE resolved = 1
              AND (resolved_callee_id IS NULL
                   OR resolved_callee_id NOT IN (SELECT id FROM symbols))
            """
        )
        return int(result.rowcount)

    def _resolve_calls(
        self, writer: BulkWriter, table: SymbolTable, stats: ResolutionStats
    ) -> None:
        # Every cross-file edge is re-decided: a new definition elsewhere can
        # turn a unique match ambiguous or make a qualified match appear.
        rows = list(
            writer.execute(
                "SELECT id, callee_module, callee_name, resolved_callee_id FROM call_edges "
                "WHERE kind = :kind ORDER BY id",
                {"kind": EdgeKind.CROSS_FILE.value},
            )
        )
        updates: list[dict[str, Any]] = []
        for edge_id, callee_module, callee_name, current in rows:
            target = self._target_for(table, callee_module, callee_name, stats)
            if target == current:
                continue
            updates.append({"id": edge_id, "resolved": target is not None, "target": target})
            if target is None:
                stats.invalidated_count += 1
            else:
                stats.resolved_count += 1

        if updates:
            writer.execute(
                "UPDATE call_edges SET resolved = :resolved, resolved_callee_id = :target "
                "WHERE id = :id",
                updates,
            )

    @staticmethod
    def _target_for(
        table: SymbolTable, callee_module: str | None, callee_name: str, stats: ResolutionStats
    ) -> str | None:
        if callee_module:
            target = table.lookup_qualified(callee_module, callee_name)
            if target is not None:
                return target
            if not table.touches_workspace(callee_module, callee_name):
                return None
        target, ambiguous = table.lookup_unqualified(callee_name.rpartition(".")[2])
        if ambiguous:
            stats.ambiguous_count += 1
        return target

    def _resolve_imports(
        self, writer: BulkWriter, table: SymbolTable, stats: ResolutionStats
    ) -> None:
        rows = list(
            writer.execute(
                "SELECT id, module_ref, imported_name, resolved_module FROM import_refs ORDER BY id"
            )
        )
        updates: list[dict[str, str | None]] = []
        for ref_id, module_ref, imported_name, current in rows:
            candidates = [module_ref]
            if imported_name and imported_name != "*":
                # from pkg import submodule
                candidates.insert(0, f"{module_ref}.{imported_name}")
            resolved = next((c for c in candidates if c in table.modules), None)
            if resolved is not None:
                stats.imports_resolved += 1
            if resolved != current:
                updates.append({"id": ref_id, "module": resolved})
        if updates:
            writer.execute(
                "UPDATE import_refs SET resolved_module = :module WHERE id = :id", updates
            )
        stats.imports_changed = len(updates)

    def _resolve_entanglements(
        self, writer: BulkWriter, table: SymbolTable, stats: ResolutionStats
    ) -> None:
        # (owning file, callee ref) -> file of the resolved callee
        target_file: dict[tuple[str, str], str] = {}
        for file_path, callee_module, callee_name, callee_id in writer.execute(
            "SELECT file_path, callee_module, callee_name, resolved_callee_id "
            "FROM call_edges WHERE resolved = 1"
        ):
            callee_file = table.file_of.get(callee_id)
            if callee_file is not None:
                target_file[(file_path, format_ref(callee_module, callee_name))] = callee_file

        updates: list[dict[str, str | None]] = []
        for edge_id, owner, ref_a, ref_b, file_a, file_b in writer.execute(
            "SELECT id, file_path, ref_a, ref_b, file_a, file_b FROM entanglement_edges ORDER BY id"
        ):
            new_a = target_file.get((owner, ref_a))
            new_b = target_file.get((owner, ref_b))
            if (new_a, new_b) != (file_a, file_b):
                updates.append({"id": edge_id, "a": new_a, "b": new_b})
        if updates:
            writer.execute(
                "UPDATE entanglement_edges SET file_a = :a, file_b = :b WHERE id = :id", updates
            )
        stats.entanglements_changed = len(updates)
