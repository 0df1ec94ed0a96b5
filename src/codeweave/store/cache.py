"""Persistent query-result cache.

Entries are keyed by a hash of (normalized intent, parameters, index version).
Lookups filter on the current index version, so a version bump makes older
entries unreachable without sweeping them. Hits increment ``access_count``
with a single UPDATE statement, which keeps concurrent hits from losing counts.

Eviction runs after each write once the entry count exceeds capacity. Each
entry gets a dense recency rank (by ``last_accessed_at``) and a dense
frequency rank (by ``access_count``); entries with the lowest rank sum go
first, ties broken by older access, then fewer accesses, then key.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel import select

from codeweave.store.models import QueryCacheEntry

if TYPE_CHECKING:
    from codeweave.store.database import Database

logger = structlog.get_logger()

_WS_RE = re.compile(r"\s+")


def normalize_intent(intent: str) -> str:
    return _WS_RE.sub(" ", intent).strip().lower()


def cache_key(intent: str, params: dict[str, Any], index_version: int) -> str:
    """Stable hash of the normalized (intent, parameters, index version) tuple."""
    payload = json.dumps(
        {"intent": normalize_intent(intent), "params": params, "index_version": index_version},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


@dataclass
class CacheHit:
    key_hash: str
    payload: str
    access_count: int
    index_version: int


class QueryCacheStore:
    """Bounded, version-filtered cache of serialized query payloads."""

    def __init__(self, db: Database, capacity: int) -> None:
        self.db = db
        self.capacity = capacity

    def lookup(self, key_hash: str, index_version: int) -> CacheHit | None:
        """Return the payload for a current-version entry, counting the access.

        Misses are a plain read and never take the write lock.
        """
        with self.db.session() as session:
            found = session.exec(
                select(QueryCacheEntry.key_hash).where(
                    QueryCacheEntry.key_hash == key_hash,
                    QueryCacheEntry.index_version == index_version,
                )
            ).first()
        if found is None:
            return None

        now = time.time()
        with self.db.bulk_writer() as writer:
            rows = writer.execute(
                """
                UPDATE query_cache
                SET access_count = access_count + 1, last_accessed_at = :now
                WHERE key_hash = :k AND index_version = :v
                RETURNING result_payload, access_count
                """,
                {"k": key_hash, "v": index_version, "now": now},
            ).fetchall()
        # Evicted between the read and the update
        if not rows:
            return None
        updated = rows[0]
        return CacheHit(
            key_hash=key_hash,
            payload=updated[0],
            access_count=int(updated[1]),
            index_version=index_version,
        )

    def store(self, key_hash: str, payload: str, index_version: int) -> int:
        """Insert an entry with one access, then evict down to capacity.

        A concurrent writer that stored the same key first wins the payload;
        our access is still counted. Returns the number of entries evicted.
        """
        now = time.time()
        with self.db.bulk_writer() as writer:
            writer.execute(
                """
                INSERT INTO query_cache
                    (key_hash, index_version, result_payload,
                     created_at, last_accessed_at, access_count)
                VALUES (:k, :v, :payload, :now, :now, 1)
                ON CONFLICT (key_hash) DO UPDATE SET
                    access_count = query_cache.access_count + 1,
                    last_accessed_at = excluded.last_accessed_at
                """,
                {"k": key_hash, "v": index_version, "payload": payload, "now": now},
            )
            evicted = self._evict(writer)
        if evicted:
            logger.debug("query_cache_evicted", count=len(evicted), capacity=self.capacity)
        return len(evicted)

    def _evict(self, writer: Any) -> list[str]:
        rows = writer.execute(
            "SELECT key_hash, last_accessed_at, access_count FROM query_cache"
        ).fetchall()
        excess = len(rows) - self.capacity
        if excess <= 0:
            return []
        victims = eviction_order(
            [(r[0], float(r[1]), int(r[2])) for r in rows]
        )[:excess]
        writer.execute(
            "DELETE FROM query_cache WHERE key_hash = :k", [{"k": k} for k in victims]
        )
        return victims

    def get(self, key_hash: str) -> QueryCacheEntry | None:
        """Raw entry regardless of version, without counting an access."""
        with self.db.session() as session:
            return session.get(QueryCacheEntry, key_hash)

    def entries(self) -> list[QueryCacheEntry]:
        with self.db.session() as session:
            return list(session.exec(select(QueryCacheEntry)).all())

    def count(self) -> int:
        return len(self.entries())


def _dense_rank(values: list[float]) -> dict[float, int]:
    return {v: i for i, v in enumerate(sorted(set(values)))}


def eviction_order(entries: list[tuple[str, float, int]]) -> list[str]:
    """Keys ordered from first-to-evict to last, by combined recency/frequency rank."""
    recency = _dense_rank([e[1] for e in entries])
    frequency = _dense_rank([float(e[2]) for e in entries])
    ranked = sorted(
        entries,
        key=lambda e: (recency[e[1]] + frequency[float(e[2])], e[1], e[2], e[0]),
    )
    return [e[0] for e in ranked]
