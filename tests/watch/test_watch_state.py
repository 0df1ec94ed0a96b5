"""Tests for watch health derivation and the state row store."""

from __future__ import annotations

import pytest

from codeweave.index.ops import IndexCoordinator
from codeweave.store.models import WatchStateRow
from codeweave.watch.state import WatchPhase, WatchStateStore, WatcherStats, derive_health

STALENESS_MS = 60_000


def _row(**fields: object) -> WatchStateRow:
    defaults: dict[str, object] = {"phase": "watching", "last_heartbeat_at": 1000.0}
    return WatchStateRow(**{**defaults, **fields})


class TestDeriveHealth:
    """Phase and freshness from the persisted row."""

    def test_detached_watcher_is_idle(self) -> None:
        health = derive_health(_row(phase="idle", last_heartbeat_at=None), 5000.0, STALENESS_MS)

        assert health.phase is WatchPhase.IDLE
        assert health.suspected_dead is False
        assert health.fresh is False

    def test_current_heartbeat_is_watching_and_fresh(self) -> None:
        health = derive_health(_row(), 1010.0, STALENESS_MS)

        assert health.phase is WatchPhase.WATCHING
        assert health.heartbeat_age_ms == pytest.approx(10_000)
        assert health.fresh is True

    def test_old_heartbeat_is_suspected_dead(self) -> None:
        health = derive_health(_row(last_event_at=1059.0), 1061.0, STALENESS_MS)

        assert health.phase is WatchPhase.SUSPECTED_DEAD
        assert health.suspected_dead is True
        # Recent file events do not mask a stalled heartbeat
        assert health.event_age_ms == pytest.approx(2000)
        assert health.fresh is False

    def test_missing_heartbeat_is_suspected_dead(self) -> None:
        health = derive_health(_row(last_heartbeat_at=None), 1000.0, STALENESS_MS)

        assert health.suspected_dead is True

    def test_needs_catchup_phase(self) -> None:
        health = derive_health(_row(needs_catchup=True), 1001.0, STALENESS_MS)

        assert health.phase is WatchPhase.NEEDS_CATCHUP
        assert health.fresh is False

    @pytest.mark.parametrize(
        ("fields", "pending"),
        [({"last_error": "disk full"}, 0), ({}, 3)],
    )
    def test_error_or_pending_events_are_not_fresh(
        self, fields: dict[str, object], pending: int
    ) -> None:
        health = derive_health(_row(**fields), 1001.0, STALENESS_MS, pending_events=pending)

        assert health.phase is WatchPhase.WATCHING
        assert health.fresh is False

    def test_to_dict(self) -> None:
        health = derive_health(_row(last_reindex_ok_at=999.0), 1000.0, STALENESS_MS)

        data = health.to_dict()

        assert data["phase"] == "watching"
        assert data["reindex_age_ms"] == pytest.approx(1000)
        assert data["event_age_ms"] is None
        assert data["fresh"] is True
        assert data["staleness_ms"] == STALENESS_MS
        assert data["stats"] is None

    def test_stats_are_carried_through(self) -> None:
        stats = WatcherStats(events_received=5, batches_committed=2, avg_latency_ms=140.0)

        data = derive_health(_row(), 1000.0, STALENESS_MS, stats=stats).to_dict()

        assert data["stats"]["events_received"] == 5
        assert data["stats"]["batches_committed"] == 2
        assert data["stats"]["avg_latency_ms"] == 140.0
        assert data["stats"]["reindex_errors"] == 0


class TestWatchStateStore:
    def test_load_before_save_is_none(self, coordinator: IndexCoordinator) -> None:
        coordinator.initialize()

        assert WatchStateStore(coordinator.db).load() is None

    def test_save_then_load_round_trips_singleton(self, coordinator: IndexCoordinator) -> None:
        coordinator.initialize()
        store = WatchStateStore(coordinator.db)

        assert store.save(_row(needs_catchup=True))
        assert store.save(_row(last_error="boom"))

        loaded = store.load()
        assert loaded is not None
        assert loaded.id == 1
        assert loaded.last_error == "boom"
        assert loaded.needs_catchup is False
