"""Graph integrity verification.

Checks:
1. Resolved call edges whose target symbol no longer exists
2. Strategic contracts citing evidence that no longer exists or is unresolved
3. File state rows for files missing from disk
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlmodel import select

from codeweave.store.models import StrategicContract

if TYPE_CHECKING:
    from codeweave.store.database import Database


@dataclass
class IntegrityIssue:
    """A single integrity issue detected."""

    category: str  # 'dangling_edge', 'stale_evidence', 'missing_file'
    message: str
    count: int = 1


@dataclass
class IntegrityReport:
    passed: bool
    issues: list[IntegrityIssue] = field(default_factory=list)

    def add_issue(self, issue: IntegrityIssue) -> None:
        self.issues.append(issue)
        self.passed = False


class IntegrityChecker:
    """Verifies the graph against itself and the filesystem."""

    def __init__(self, db: Database, repo_root: Path) -> None:
        self._db = db
        self._repo_root = repo_root

    def verify(self) -> IntegrityReport:
        report = IntegrityReport(passed=True)
        self._check_dangling_edges(report)
        self._check_contract_evidence(report)
        self._check_files_exist(report)
        return report

    def _check_dangling_edges(self, report: IntegrityReport) -> None:
        with self._db.session() as session:
            dangling = session.execute(
                text("""
                    SELECT COUNT(*) FROM call_edges
                    WHERE resolved = 1
                    AND (resolved_callee_id IS NULL
                         OR resolved_callee_id NOT IN (SELECT id FROM symbols))
                """)
            ).scalar() or 0
        if dangling:
            report.add_issue(
                IntegrityIssue(
                    category="dangling_edge",
                    message="resolved call edges pointing at missing symbols",
                    count=int(dangling),
                )
            )

    def _check_contract_evidence(self, report: IntegrityReport) -> None:
        with self._db.session() as session:
            calls = {
                row[0]
                for row in session.execute(text("SELECT id FROM call_edges WHERE resolved = 1"))
            }
            imports = {
                row[0]
                for row in session.execute(
                    text("SELECT id FROM import_refs WHERE resolved_module IS NOT NULL")
                )
            }
            contracts = list(session.exec(select(StrategicContract)).all())

        stale = 0
        for contract in contracts:
            for item in contract.evidence:
                kind, _, ref_id = str(item.get("ref", "")).partition(":")
                live = calls if kind == "call" else imports if kind == "import" else set()
                if ref_id not in live:
                    stale += 1
        if stale:
            report.add_issue(
                IntegrityIssue(
                    category="stale_evidence",
                    message="contract evidence referencing removed or unresolved edges",
                    count=stale,
                )
            )

    def _check_files_exist(self, report: IntegrityReport) -> None:
        with self._db.session() as session:
            rows = session.execute(text("SELECT file_path FROM index_file_state"))
            paths = [row[0] for row in rows]
        missing = [p for p in paths if not (self._repo_root / p).exists()]
        if missing:
            report.add_issue(
                IntegrityIssue(
                    category="missing_file",
                    message=f"tracked files missing from disk: {', '.join(sorted(missing)[:5])}",
                    count=len(missing),
                )
            )
