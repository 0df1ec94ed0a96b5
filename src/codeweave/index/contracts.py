"""Strategic contract materialization.

A provider module's contract lists every consumer module that calls into it
or imports it, each backed by the concrete edges that justify it. The whole
table is recomputed from the current graph and replaced in one transaction,
so a relationship whose last evidence disappeared is gone after the next run.
"""

from __future__ import annotations

import hashlib
import json
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from codeweave.store.models import StrategicContract, SymbolKind

if TYPE_CHECKING:
    from codeweave.store.database import BulkWriter, Database

log = structlog.get_logger(__name__)


@dataclass
class ContractStats:
    contracts_written: int = 0
    contracts_removed: int = 0
    changed: bool = False


def contract_id(module_id: str) -> str:
    return hashlib.sha256(f"contract:{module_id}".encode()).hexdigest()[:16]


class ContractMaterializer:
    """Derives provider/consumer contracts from resolved calls and imports."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def materialize_strategic_contracts(self) -> ContractStats:
        with self.db.bulk_writer() as writer:
            module_ids = self._module_ids(writer)
            evidence = self._collect_evidence(writer, module_ids)
            previous = {
                row[0]: (row[1], row[2], row[3])
                for row in writer.execute(
                    "SELECT id, producers_json, consumers_json, evidence_json"
                    " FROM strategic_contracts"
                )
            }

            now = time.time()
            records: list[dict[str, object]] = []
            for provider in sorted(evidence):
                items = sorted(evidence[provider], key=lambda e: (e["consumer"], e["ref"]))
                module_id = module_ids[provider]
                records.append(
                    {
                        "id": contract_id(module_id),
                        "module_id": module_id,
                        "module_name": provider,
                        "producers_json": json.dumps([module_id]),
                        "consumers_json": json.dumps(sorted({e["consumer"] for e in items})),
                        "evidence_json": json.dumps(items, sort_keys=True),
                        "updated_at": now,
                    }
                )

            current = {
                r["id"]: (r["producers_json"], r["consumers_json"], r["evidence_json"])
                for r in records
            }
            stats = ContractStats(
                contracts_written=len(records),
                contracts_removed=len(set(previous) - set(current)),
                changed=previous != current,
            )
            if stats.changed:
                writer.delete_where(StrategicContract, "1 = 1", {})
                writer.insert_many(StrategicContract, records)

        log.info(
            "strategic_contracts_materialized",
            written=stats.contracts_written,
            removed=stats.contracts_removed,
            changed=stats.changed,
        )
        return stats

    def _module_ids(self, writer: BulkWriter) -> dict[str, str]:
        ids: dict[str, list[str]] = defaultdict(list)
        for module_name, sym_id in writer.execute(
            "SELECT module_name, id FROM symbols WHERE kind = :k", {"k": SymbolKind.MODULE.value}
        ):
            ids[module_name].append(sym_id)
        return {m: v[0] for m, v in ids.items() if len(v) == 1}

    def _collect_evidence(
        self, writer: BulkWriter, module_ids: dict[str, str]
    ) -> dict[str, list[dict[str, str]]]:
        """provider module name -> evidence items {consumer, producer, ref}."""
        evidence: dict[str, dict[str, dict[str, str]]] = defaultdict(dict)

        def add(provider: str, consumer: str, ref: str) -> None:
            if provider == consumer or provider not in module_ids or consumer not in module_ids:
                return
            evidence[provider][ref] = {
                "consumer": module_ids[consumer],
                "producer": module_ids[provider],
                "ref": ref,
            }

        for edge_id, consumer, provider in writer.execute(
            """
            SELECT ce.id, caller.module_name, callee.module_name
            FROM call_edges ce
            JOIN symbols caller ON caller.id = ce.caller_id
            JOIN symbols callee ON callee.id = ce.resolved_callee_id
            WHERE ce.resolved = 1
            """
        ):
            add(provider, consumer, f"call:{edge_id}")

        for ref_id, consumer, provider in writer.execute(
            "SELECT id, module_name, resolved_module FROM import_refs "
            "WHERE resolved_module IS NOT NULL"
        ):
            add(provider, consumer, f"import:{ref_id}")

        return {p: list(items.values()) for p, items in evidence.items()}
