"""Graph store: transactional persistence of the code graph.

Writers go through one FileTransaction per file. The transaction deletes every
row the file owns and inserts the new set, so symbols renamed or removed
inside a file never survive a reparse. Edges in other files that were resolved
to a symbol that disappears are un-resolved in the same transaction, which
keeps every ``resolved=true`` edge pointing at an existing symbol at each
commit boundary.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import col, select

from codeweave.core.errors import StorageUnavailable, TransactionFailure
from codeweave.store.models import (
    CallEdge,
    EntanglementEdge,
    FileStatus,
    ImportRef,
    IndexFileState,
    StrategicContract,
    Symbol,
    SymbolKind,
    SymbolVector,
)

if TYPE_CHECKING:
    from codeweave.store.database import BulkWriter, Database

logger = structlog.get_logger()


def _rows(models: Iterable[Any]) -> list[dict[str, Any]]:
    return [m.model_dump() for m in models]


def _in_clause(prefix: str, values: Sequence[str]) -> tuple[str, dict[str, Any]]:
    names = [f"{prefix}{i}" for i in range(len(values))]
    return ", ".join(f":{n}" for n in names), dict(zip(names, values, strict=True))


class FileTransaction:
    """Delete-then-insert of one file's facts inside a single write transaction."""

    def __init__(self, db: Database, file_path: str) -> None:
        self.file_path = file_path
        self._writer: BulkWriter | None = None
        try:
            self._writer = db.open_writer(immediate=True)
        except SQLAlchemyError as e:
            raise TransactionFailure.for_file(file_path, str(e)) from e
        self._done = False

    @property
    def writer(self) -> BulkWriter:
        if self._writer is None or self._done:
            raise TransactionFailure.for_file(self.file_path, "transaction already closed")
        return self._writer

    def _old_ids(self, table: str, id_col: str = "id") -> set[str]:
        rows = self.writer.execute(
            f"SELECT {id_col} FROM {table} WHERE file_path = :p", {"p": self.file_path}
        )
        return {row[0] for row in rows}

    def replace_symbols_and_edges(
        self,
        symbols: Sequence[Symbol],
        edges: Sequence[CallEdge],
        imports: Sequence[ImportRef] = (),
        entanglements: Sequence[EntanglementEdge] = (),
    ) -> None:
        """Replace every row owned by this file with the given set."""
        try:
            self._replace(symbols, edges, imports, entanglements)
        except SQLAlchemyError as e:
            raise TransactionFailure.for_file(self.file_path, str(e)) from e

    def _replace(
        self,
        symbols: Sequence[Symbol],
        edges: Sequence[CallEdge],
        imports: Sequence[ImportRef],
        entanglements: Sequence[EntanglementEdge],
    ) -> None:
        writer = self.writer
        params = {"p": self.file_path}
        old_symbol_ids = self._old_ids("symbols")
        old_modules = {
            row[0]
            for row in writer.execute(
                "SELECT module_name FROM symbols WHERE file_path = :p AND kind = :k",
                {"p": self.file_path, "k": SymbolKind.MODULE.value},
            )
        }
        new_modules = {s.module_name for s in symbols if s.kind == SymbolKind.MODULE.value}
        removed = sorted(old_symbol_ids - {s.id for s in symbols})

        writer.delete_where(Symbol, "file_path = :p", params)
        writer.delete_where(CallEdge, "file_path = :p", params)
        writer.delete_where(ImportRef, "file_path = :p", params)
        writer.delete_where(EntanglementEdge, "file_path = :p", params)

        if removed:
            placeholders, id_params = _in_clause("r", removed)
            writer.update_where(
                CallEdge,
                {"resolved": False, "resolved_callee_id": None},
                f"resolved_callee_id IN ({placeholders})",
                id_params,
            )
            writer.delete_where(SymbolVector, f"symbol_id IN ({placeholders})", id_params)
        for module in sorted(old_modules - new_modules):
            writer.update_where(
                ImportRef, {"resolved_module": None}, "resolved_module = :m", {"m": module}
            )
        if not symbols:
            for column in ("file_a", "file_b"):
                writer.update_where(EntanglementEdge, {column: None}, f"{column} = :p", params)

        # Unique ids; duplicates were dropped with a warning at extraction
        writer.insert_many(Symbol, _rows(symbols))
        writer.insert_many(CallEdge, _rows(edges))
        writer.insert_many(ImportRef, _rows(imports))
        writer.insert_many(EntanglementEdge, _rows(entanglements))

    def set_file_state(
        self,
        content_hash: str | None,
        status: FileStatus,
        language: str | None = None,
        message: str | None = None,
        indexed_at: float | None = None,
    ) -> None:
        record = {
            "file_path": self.file_path,
            "content_hash": content_hash,
            "last_indexed_at": indexed_at if indexed_at is not None else time.time(),
            "status": status.value,
            "language": language,
            "message": message,
        }
        try:
            self.writer.upsert_many(
                IndexFileState,
                [record],
                conflict_columns=["file_path"],
                update_columns=["content_hash", "last_indexed_at", "status", "language", "message"],
            )
        except SQLAlchemyError as e:
            raise TransactionFailure.for_file(self.file_path, str(e)) from e

    def remove_file(self) -> None:
        """Drop every row of a file that no longer exists, including its state row."""
        self.replace_symbols_and_edges([], [])
        try:
            self.writer.delete_where(IndexFileState, "file_path = :p", {"p": self.file_path})
        except SQLAlchemyError as e:
            raise TransactionFailure.for_file(self.file_path, str(e)) from e

    def commit(self) -> None:
        writer = self.writer
        try:
            writer.commit()
        except SQLAlchemyError as e:
            writer.rollback()
            raise TransactionFailure.for_file(self.file_path, str(e)) from e
        finally:
            self._close()

    def rollback(self) -> None:
        if self._writer is None or self._done:
            return
        try:
            self._writer.rollback()
        finally:
            self._close()

    def _close(self) -> None:
        if self._writer is not None and not self._done:
            self._writer.close()
        self._done = True

    def __enter__(self) -> FileTransaction:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if exc_type is None and not self._done:
            self.commit()
        else:
            self.rollback()


class GraphStore:
    """Read/write facade over the graph tables."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def ensure_available(self) -> None:
        """Raise StorageUnavailable if the database cannot be opened."""
        try:
            self.db.create_all()
            with self.db.session() as session:
                session.execute(text("SELECT 1"))
        except OperationalError as e:
            raise StorageUnavailable.at(str(self.db.db_path), str(e)) from e

    def begin_file_transaction(self, file_path: str) -> FileTransaction:
        return FileTransaction(self.db, file_path)

    # File state

    def get_file_state(self, file_path: str) -> IndexFileState | None:
        with self.db.session() as session:
            return session.get(IndexFileState, file_path)

    def list_file_states(self) -> dict[str, IndexFileState]:
        with self.db.session() as session:
            return {s.file_path: s for s in session.exec(select(IndexFileState)).all()}

    def record_file_error(self, file_path: str, message: str) -> None:
        """Mark a file as errored without touching its hash or stored facts."""
        now = time.time()
        with self.db.bulk_writer() as writer:
            writer.execute(
                """
                INSERT INTO index_file_state
                    (file_path, content_hash, last_indexed_at, status, message)
                VALUES (:p, NULL, :now, :status, :message)
                ON CONFLICT (file_path) DO UPDATE SET status = excluded.status,
                    message = excluded.message
                """,
                {"p": file_path, "now": now, "status": FileStatus.ERROR.value, "message": message},
            )

    # Symbols and edges

    def get_symbol(self, symbol_id: str) -> Symbol | None:
        with self.db.session() as session:
            return session.get(Symbol, symbol_id)

    def symbols_for_file(self, file_path: str) -> list[Symbol]:
        with self.db.session() as session:
            stmt = (
                select(Symbol)
                .where(Symbol.file_path == file_path)
                .order_by(col(Symbol.start_line), col(Symbol.id))
            )
            return list(session.exec(stmt).all())

    def all_symbols(self) -> list[Symbol]:
        with self.db.session() as session:
            return list(session.exec(select(Symbol).order_by(col(Symbol.id))).all())

    def symbol_count(self) -> int:
        with self.db.session() as session:
            return int(session.execute(text("SELECT COUNT(*) FROM symbols")).scalar() or 0)

    def call_edges(
        self,
        file_path: str | None = None,
        resolved: bool | None = None,
    ) -> list[CallEdge]:
        with self.db.session() as session:
            stmt = select(CallEdge)
            if file_path is not None:
                stmt = stmt.where(CallEdge.file_path == file_path)
            if resolved is not None:
                stmt = stmt.where(CallEdge.resolved == resolved)
            return list(session.exec(stmt.order_by(col(CallEdge.id))).all())

    def import_refs(self, file_path: str | None = None) -> list[ImportRef]:
        with self.db.session() as session:
            stmt = select(ImportRef)
            if file_path is not None:
                stmt = stmt.where(ImportRef.file_path == file_path)
            return list(session.exec(stmt.order_by(col(ImportRef.id))).all())

    def entanglement_edges(self) -> list[EntanglementEdge]:
        with self.db.session() as session:
            stmt = select(EntanglementEdge).order_by(col(EntanglementEdge.id))
            return list(session.exec(stmt).all())

    def strategic_contracts(self) -> list[StrategicContract]:
        with self.db.session() as session:
            stmt = select(StrategicContract).order_by(col(StrategicContract.module_name))
            return list(session.exec(stmt).all())

    # Vectors

    def vectors(self, model_name: str) -> list[SymbolVector]:
        with self.db.session() as session:
            stmt = (
                select(SymbolVector)
                .where(SymbolVector.model_name == model_name)
                .order_by(col(SymbolVector.symbol_id))
            )
            return list(session.exec(stmt).all())

    def vector_hashes(self, model_name: str) -> dict[str, str]:
        """symbol_id -> signature_hash the stored vector was computed from."""
        with self.db.session() as session:
            rows = session.execute(
                text("SELECT symbol_id, signature_hash FROM symbol_vectors WHERE model_name = :m"),
                {"m": model_name},
            )
            return {row[0]: row[1] for row in rows}

    def upsert_vectors(self, vectors: Sequence[SymbolVector]) -> int:
        if not vectors:
            return 0
        with self.db.bulk_writer() as writer:
            # Symbols may have been removed since the vectors were computed
            live = {
                row[0]
                for row in writer.execute("SELECT id FROM symbols")
            }
            rows = [v.model_dump() for v in vectors if v.symbol_id in live]
            return writer.upsert_many(
                SymbolVector,
                rows,
                conflict_columns=["symbol_id"],
                update_columns=["signature_hash", "model_name", "dim", "vector"],
            )


def read_snippet(root: Path, file_path: str, start_line: int, end_line: int, max_lines: int) -> str:
    """Source lines [start_line, end_line] (1-based), capped at max_lines."""
    try:
        lines = (root / file_path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return ""
    end = min(end_line, start_line + max_lines - 1)
    return "\n".join(lines[max(start_line - 1, 0) : end])
