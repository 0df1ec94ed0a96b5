"""Watch state record and health derivation.

The single ``watch_state`` row is written only by the WatchManager. Health is
derived from it on read: a heartbeat older than the staleness window marks
the watcher as suspected dead, independent of file-event activity.

Phases:
    idle            no watcher attached
    watching        attached, heartbeats current
    suspected_dead  heartbeat age beyond the staleness window
    needs_catchup   the workspace may have changed without being indexed
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from codeweave.store.models import WatchStateRow

if TYPE_CHECKING:
    from codeweave.config.models import WatchConfig
    from codeweave.store.database import Database

log = structlog.get_logger(__name__)


class WatchPhase(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    SUSPECTED_DEAD = "suspected_dead"
    NEEDS_CATCHUP = "needs_catchup"


@dataclass(frozen=True)
class WatcherStats:
    """In-process counters since the manager started; not persisted."""

    events_received: int = 0
    batches_committed: int = 0
    reindex_errors: int = 0
    watcher_errors: int = 0
    dirs_watched: int = 0
    avg_latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "events_received": self.events_received,
            "batches_committed": self.batches_committed,
            "reindex_errors": self.reindex_errors,
            "watcher_errors": self.watcher_errors,
            "dirs_watched": self.dirs_watched,
            "avg_latency_ms": self.avg_latency_ms,
        }


@dataclass(frozen=True)
class WatchHealth:
    """Snapshot of watcher liveness and index freshness."""

    phase: WatchPhase
    suspected_dead: bool
    heartbeat_age_ms: float | None
    event_age_ms: float | None
    reindex_age_ms: float | None
    needs_catchup: bool
    last_error: str | None
    staleness_ms: int
    pending_events: int = 0
    stats: WatcherStats | None = None

    @property
    def fresh(self) -> bool:
        """True only when the index can be trusted to reflect the workspace."""
        return (
            self.phase is WatchPhase.WATCHING
            and not self.needs_catchup
            and self.last_error is None
            and self.pending_events == 0
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "suspected_dead": self.suspected_dead,
            "heartbeat_age_ms": self.heartbeat_age_ms,
            "event_age_ms": self.event_age_ms,
            "reindex_age_ms": self.reindex_age_ms,
            "needs_catchup": self.needs_catchup,
            "last_error": self.last_error,
            "staleness_ms": self.staleness_ms,
            "pending_events": self.pending_events,
            "fresh": self.fresh,
            "stats": self.stats.to_dict() if self.stats is not None else None,
        }


def _age_ms(now: float, at: float | None) -> float | None:
    return None if at is None else max(0.0, (now - at) * 1000)


def derive_health(
    row: WatchStateRow,
    now: float,
    staleness_ms: int,
    pending_events: int = 0,
    stats: WatcherStats | None = None,
) -> WatchHealth:
    heartbeat_age = _age_ms(now, row.last_heartbeat_at)
    attached = row.phase != WatchPhase.IDLE.value
    suspected_dead = attached and (heartbeat_age is None or heartbeat_age > staleness_ms)

    if not attached:
        phase = WatchPhase.IDLE
    elif suspected_dead:
        phase = WatchPhase.SUSPECTED_DEAD
    elif row.needs_catchup:
        phase = WatchPhase.NEEDS_CATCHUP
    else:
        phase = WatchPhase.WATCHING

    return WatchHealth(
        phase=phase,
        suspected_dead=suspected_dead,
        heartbeat_age_ms=heartbeat_age,
        event_age_ms=_age_ms(now, row.last_event_at),
        reindex_age_ms=_age_ms(now, row.last_reindex_ok_at),
        needs_catchup=row.needs_catchup,
        last_error=row.last_error,
        staleness_ms=staleness_ms,
        pending_events=pending_events,
        stats=stats,
    )


def config_snapshot(config: WatchConfig) -> str:
    return json.dumps(
        {
            "debounce_ms": config.debounce_ms,
            "batch_window_ms": config.batch_window_ms,
            "storm_threshold": config.storm_threshold,
            "cascade_reindex": config.cascade_reindex,
            "cascade_delay_ms": config.cascade_delay_ms,
            "cascade_batch_size": config.cascade_batch_size,
        },
        sort_keys=True,
    )


class WatchStateStore:
    """Loads and saves the singleton ``watch_state`` row."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def load(self) -> WatchStateRow | None:
        """The persisted row, detached from its session, or None before the first start."""
        with self.db.session() as session:
            row = session.get(WatchStateRow, 1)
            if row is None:
                return None
            return WatchStateRow.model_validate(row.model_dump())

    def save(self, row: WatchStateRow) -> bool:
        """Persist a copy of ``row``. Failures are logged; watching carries on."""
        try:
            with self.db.session() as session:
                session.merge(WatchStateRow.model_validate(row.model_dump()))
                session.commit()
        except SQLAlchemyError as e:
            log.warning("watch_state_persist_failed", error=str(e))
            return False
        return True
