"""Unit tests for clubhouse_sync.scheduler: single-flight guard, run execution and health."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from clubhouse_sync.config import JOB_KINDS, EngineConfig, SourceSpec
from clubhouse_sync.run_log import RunStatus
from clubhouse_sync.scheduler import SingleFlightGuard, SyncEngine, TriggerResult
from clubhouse_sync.session_pool import SessionPool
from clubhouse_sync.store import MemoryStore

NOW = datetime(2025, 4, 12, 15, 0, tzinfo=timezone.utc)


def _noop(ctx):
    return None


def _engine(
    store: MemoryStore | None = None,
    bodies: dict | None = None,
    session_factory=MagicMock,
    **config_kw,
) -> SyncEngine:
    all_bodies = {kind: _noop for kind in JOB_KINDS}
    all_bodies.update(bodies or {})
    return SyncEngine(
        EngineConfig(**config_kw),
        store or MemoryStore(),
        pool=SessionPool(factory=session_factory),
        bodies=all_bodies,
        clock=lambda: NOW,
    )


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


# ---------------------------------------------------------------------------
# SingleFlightGuard
# ---------------------------------------------------------------------------

class TestSingleFlightGuard:
    def test_claim_once(self):
        guard = SingleFlightGuard()
        assert guard.try_claim("ranking_refresh")
        assert not guard.try_claim("ranking_refresh")
        assert guard.try_claim("lifecycle_sweep")
        assert guard.running() == ["lifecycle_sweep", "ranking_refresh"]

    def test_release(self):
        guard = SingleFlightGuard()
        guard.try_claim("ranking_refresh")
        guard.release("ranking_refresh")
        assert not guard.is_running("ranking_refresh")
        assert guard.try_claim("ranking_refresh")

    def test_claim_context_releases_on_error(self):
        guard = SingleFlightGuard()
        with pytest.raises(RuntimeError):
            with guard.claim("ranking_refresh") as claimed:
                assert claimed
                raise RuntimeError("boom")
        assert not guard.is_running("ranking_refresh")

    def test_contended_claim_does_not_release_owner(self):
        guard = SingleFlightGuard()
        guard.try_claim("ranking_refresh")
        with guard.claim("ranking_refresh") as claimed:
            assert not claimed
        assert guard.is_running("ranking_refresh")

    def test_concurrent_claims_single_winner(self):
        guard = SingleFlightGuard()
        barrier = threading.Barrier(10)
        wins = []

        def contend():
            barrier.wait()
            wins.append(guard.try_claim("live_score_refresh"))

        threads = [threading.Thread(target=contend) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert wins.count(True) == 1


# ---------------------------------------------------------------------------
# Trigger interface
# ---------------------------------------------------------------------------

class TestTrigger:
    def test_overlapping_trigger_is_skipped(self):
        entered = threading.Event()
        release = threading.Event()
        calls = []

        def slow_body(ctx):
            calls.append(ctx.run_id)
            entered.set()
            release.wait(5)

        engine = _engine(bodies={"live_score_refresh": slow_body})
        try:
            first = engine.trigger_live_score_refresh()
            time.sleep(0.01)
            second = engine.trigger_live_score_refresh()
            assert first == TriggerResult.STARTED
            assert second == TriggerResult.SKIPPED
            assert entered.wait(5)
            release.set()
            _wait_for(lambda: engine.get_last_run("live_score_refresh") is not None)
        finally:
            release.set()
            engine.shutdown()
        assert len(calls) == 1

    def test_other_kinds_not_blocked(self):
        release = threading.Event()
        engine = _engine(bodies={"ranking_refresh": lambda ctx: release.wait(5)})
        try:
            assert engine.trigger_ranking_refresh() == TriggerResult.STARTED
            run = engine.run_job("lifecycle_sweep")
            assert run.status == RunStatus.SUCCESS
        finally:
            release.set()
            engine.shutdown()

    def test_guard_released_after_run(self):
        engine = _engine()
        try:
            assert engine.trigger_lifecycle_sweep() == TriggerResult.STARTED
            _wait_for(lambda: engine.get_last_run("lifecycle_sweep") is not None)
            _wait_for(lambda: not engine.guard.is_running("lifecycle_sweep"))
            assert engine.trigger_lifecycle_sweep() == TriggerResult.STARTED
        finally:
            engine.shutdown()

    def test_unknown_kind(self):
        engine = _engine()
        try:
            with pytest.raises(ValueError, match="Unknown job kind"):
                engine.trigger("odds_refresh")
        finally:
            engine.shutdown()

    def test_trigger_after_shutdown_skipped(self):
        engine = _engine()
        engine.shutdown()
        assert engine.trigger_ranking_refresh() == TriggerResult.SKIPPED


# ---------------------------------------------------------------------------
# Run execution
# ---------------------------------------------------------------------------

class TestRunJob:
    def test_success_recorded(self):
        store = MemoryStore()
        engine = _engine(store)
        try:
            run = engine.run_job("lifecycle_sweep")
        finally:
            engine.shutdown()
        assert run.status == RunStatus.SUCCESS
        assert run.started_at == NOW
        assert store.runs == [run]
        assert engine.get_last_run("lifecycle_sweep") is run

    def test_exception_fails_run_and_releases_guard(self):
        def boom(ctx):
            raise RuntimeError("parser exploded")

        engine = _engine(bodies={"ranking_refresh": boom})
        try:
            run = engine.run_job("ranking_refresh")
            assert run.status == RunStatus.FAILED
            assert any("parser exploded" in e for e in run.errors)
            assert not engine.guard.is_running("ranking_refresh")
            assert engine.run_job("ranking_refresh") is not None
        finally:
            engine.shutdown()

    def test_counted_errors_make_run_partial(self):
        def body(ctx):
            ctx.counters.add("sources_failed")

        engine = _engine(bodies={"ranking_refresh": body})
        try:
            assert engine.run_job("ranking_refresh").status == RunStatus.PARTIAL
        finally:
            engine.shutdown()

    def test_timeout_makes_run_partial(self):
        def slow(ctx):
            ctx.cancel.wait(5)

        timeouts = {"ranking_refresh": 900, "live_score_refresh": 600, "lifecycle_sweep": 0.1}
        engine = _engine(bodies={"lifecycle_sweep": slow}, job_timeouts_seconds=timeouts)
        try:
            started = time.monotonic()
            run = engine.run_job("lifecycle_sweep")
            assert time.monotonic() - started < 5
        finally:
            engine.shutdown()
        assert run.status == RunStatus.PARTIAL
        assert any("wall-clock timeout" in e for e in run.errors)

    def test_run_job_skipped_while_running(self):
        release = threading.Event()
        engine = _engine(bodies={"ranking_refresh": lambda ctx: release.wait(5)})
        try:
            engine.trigger_ranking_refresh()
            _wait_for(lambda: engine.guard.is_running("ranking_refresh"))
            assert engine.run_job("ranking_refresh") is None
        finally:
            release.set()
            engine.shutdown()

    def test_real_ranking_refresh_writes_rejects(self, tmp_path: Path):
        csv_path = tmp_path / "rankings.csv"
        csv_path.write_text("Rank,Name\n1,Scottie Scheffler\n2,12345\n", encoding="utf-8")
        store = MemoryStore()
        engine = SyncEngine(
            EngineConfig(
                sources=[SourceSpec("rankings", "ranking", path=csv_path)],
                rejects_dir=tmp_path / "rejects",
                report_dir=tmp_path / "reports",
            ),
            store,
            pool=SessionPool(factory=MagicMock),
            clock=lambda: NOW,
        )
        try:
            run = engine.run_job("ranking_refresh")
        finally:
            engine.shutdown()
        assert run.status == RunStatus.SUCCESS
        assert run.created == 1
        assert run.skipped == 1
        assert store.get_entity("scottie scheffler") is not None
        assert len(list((tmp_path / "rejects").glob("ranking_refresh_*.csv"))) == 1
        assert (tmp_path / "reports" / f"{run.run_id}.json").exists()


# ---------------------------------------------------------------------------
# Status interface
# ---------------------------------------------------------------------------

def _probe_factory(status: int):
    def factory():
        session = MagicMock()
        session.get.return_value.status_code = status
        return session
    return factory


class TestHealth:
    def test_healthy(self):
        engine = _engine(session_factory=_probe_factory(200), health_probe_url="https://probe.test/")
        try:
            engine.run_job("lifecycle_sweep")
            health = engine.check_health()
        finally:
            engine.shutdown()
        assert health["status"] == "healthy"
        assert health["probe_status"] == 200
        assert health["entity_count"] == 0
        assert health["active_competitions"] == 0
        assert health["last_runs"]["lifecycle_sweep"] == RunStatus.SUCCESS
        assert health["last_runs"]["ranking_refresh"] is None

    def test_probe_failure(self):
        engine = _engine(session_factory=_probe_factory(503), health_probe_url="https://probe.test/")
        try:
            health = engine.check_health()
        finally:
            engine.shutdown()
        assert health["status"] == "error"
        assert "probe: HTTP 503" in health["errors"]

    def test_store_failure_never_raises(self):
        store = MemoryStore()
        store.count_entities = MagicMock(side_effect=RuntimeError("db down"))
        engine = _engine(store)
        try:
            health = engine.check_health()
        finally:
            engine.shutdown()
        assert health["status"] == "error"
        assert health["probe_status"] is None
        assert any("db down" in e for e in health["errors"])

    def test_active_competitions(self):
        engine = _engine()
        try:
            assert engine.get_active_competitions() == []
        finally:
            engine.shutdown()


# ---------------------------------------------------------------------------
# Scheduling + shutdown
# ---------------------------------------------------------------------------

class TestStartAndShutdown:
    def test_registers_every_kind(self):
        engine = _engine()
        try:
            scheduler = engine.start()
            assert {job.id for job in scheduler.get_jobs()} == set(JOB_KINDS)
            assert engine.start() is scheduler
        finally:
            engine.shutdown()

    def test_shutdown_interrupts_running_job(self):
        entered = threading.Event()

        def slow(ctx):
            entered.set()
            ctx.cancel.wait(5)

        engine = _engine(bodies={"ranking_refresh": slow})
        engine.trigger_ranking_refresh()
        assert entered.wait(5)
        engine.shutdown(wait=True)
        run = engine.get_last_run("ranking_refresh")
        assert run.status == RunStatus.PARTIAL
        assert engine.pool.closed

    def test_shutdown_idempotent(self):
        engine = _engine()
        engine.shutdown()
        engine.shutdown()
        assert engine.pool.closed
