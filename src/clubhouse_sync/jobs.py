"""clubhouse_sync.jobs

Job bodies executed by the scheduler, one per job kind:

  ranking_refresh     -- fetch every ranking source concurrently, fall back
                         to the curated sources when all of them fail, then
                         reconcile the combined records.
  live_score_refresh  -- for each Active competition (concurrently), fetch
                         its leaderboard(s) and upsert scores.  A no-op when
                         nothing is Active.
  lifecycle_sweep     -- move competitions through their lifecycle.

Each body receives a RunContext carrying the run's collaborators, counters
and cancel event.  Bodies never decide the run status; the engine derives
it from the counters and whether the deadline fired.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, TypeVar

from clubhouse_sync.config import (
    JOB_LIFECYCLE_SWEEP,
    JOB_LIVE_SCORE_REFRESH,
    JOB_RANKING_REFRESH,
    EngineConfig,
)
from clubhouse_sync.lifecycle import LifecycleResult, reconcile_lifecycle
from clubhouse_sync.reconcile import EntityReconciler
from clubhouse_sync.session_pool import PooledSession, SessionPool
from clubhouse_sync.shared import FetchCancelled, FetchError, RejectWriter, RunCounters
from clubhouse_sync.sources import FetchResult, SourceFetcher, SourceRecord
from clubhouse_sync.store import ACTIVE, Competition, Store

log = logging.getLogger(__name__)

T = TypeVar("T")

# Extra wait, past the per-request timeout, for a cancelled fetch to unwind.
DRAIN_GRACE_SECONDS = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# RunContext
# ---------------------------------------------------------------------------

@dataclass
class RunContext:
    run_id: str
    job_kind: str
    config: EngineConfig
    store: Store
    fetcher: SourceFetcher
    pool: SessionPool
    reconciler: EntityReconciler
    deadline: float
    counters: RunCounters = field(default_factory=RunCounters)
    cancel: threading.Event = field(default_factory=threading.Event)
    rejects: RejectWriter | None = None
    clock: Callable[[], datetime] = _utcnow
    lease: PooledSession | None = None
    interrupted: bool = False

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def interrupt(self, reason: str = "wall-clock timeout") -> None:
        """Cancel pending work and swap the leased session for a fresh one.  Idempotent.

        A fetch already reading a response is not interrupted; it finishes at
        its request timeout and _run_concurrently waits for it.
        """
        if self.cancel.is_set():
            return
        self.interrupted = True
        self.cancel.set()
        log.warning("[%s] %s interrupted (%s); cancelling", self.run_id, self.job_kind, reason)
        self.counters.warn(f"interrupted: {reason}")
        lease = self.lease
        if lease is not None:
            lease.recreate()

    @contextmanager
    def session(self) -> Iterator[PooledSession]:
        with self.pool.lease(self.config.session_acquire_timeout_seconds) as lease:
            self.lease = lease
            try:
                yield lease
            finally:
                self.lease = None


# ---------------------------------------------------------------------------
# Concurrency helpers
# ---------------------------------------------------------------------------

def _run_concurrently(
    ctx: RunContext,
    tasks: list[Callable[[], T]],
    workers: int,
) -> list[T]:
    """Run tasks on a worker pool until done, cancelled, or out of time.

    Results come back in completion order.  Tasks still queued when the
    run is cancelled never start.  Tasks already running are waited for
    before returning, since closing a requests.Session does not interrupt a
    response being read: a fetch in flight ends at its own request timeout.
    """
    if not tasks:
        return []
    results: list[T] = []
    futures: list[Future] = []
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(workers, len(tasks))),
        thread_name_prefix=f"{ctx.job_kind}-worker",
    )
    try:
        futures = [executor.submit(task) for task in tasks]
        for fut in as_completed(futures, timeout=ctx.remaining()):
            results.append(fut.result())
            if ctx.cancel.is_set():
                break
    except FuturesTimeout:
        ctx.interrupt()
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
        _drain(ctx, futures)
    if len(results) < len(tasks):
        ctx.counters.warn(f"{len(tasks) - len(results)} of {len(tasks)} tasks did not finish")
    return results


def _drain(ctx: RunContext, futures: list[Future]) -> None:
    """Wait, at most one request timeout plus grace, for tasks still running."""
    running = [f for f in futures if not f.done()]
    if not running:
        return
    window = ctx.config.fetch_timeout_seconds + DRAIN_GRACE_SECONDS
    log.info("[%s] waiting up to %.1fs for %d in-flight tasks", ctx.run_id, window, len(running))
    _, still_running = wait(running, timeout=window)
    if still_running:
        log.error(
            "[%s] %d tasks still running after %.1fs; abandoning them",
            ctx.run_id, len(still_running), window,
        )
        ctx.counters.warn(f"{len(still_running)} tasks abandoned while still running")


def _fetch_one(
    ctx: RunContext,
    source_id: str,
    params: dict[str, str],
    lease: PooledSession | None,
) -> FetchResult | None:
    """Fetch one source; failures are counted and logged, never raised."""
    try:
        result = ctx.fetcher.fetch(source_id, params, lease, ctx.cancel, ctx.rejects)
    except FetchCancelled as exc:
        ctx.counters.add("sources_failed")
        ctx.counters.warn(f"cancelled:{exc}")
        return None
    except FetchError as exc:
        log.warning("[%s] source skipped: %s", ctx.run_id, exc)
        ctx.counters.add("sources_failed")
        ctx.counters.warn(f"fetch_error:{exc}")
        return None
    ctx.counters.add("sources_fetched")
    ctx.counters.add("skipped", result.skipped)
    return result


# ---------------------------------------------------------------------------
# ranking_refresh
# ---------------------------------------------------------------------------

def run_ranking_refresh(ctx: RunContext) -> None:
    primary = [s.source_id for s in ctx.config.sources_of_kind("ranking")]
    with ctx.session() as lease:
        results = _run_concurrently(
            ctx,
            [lambda sid=sid: _fetch_one(ctx, sid, {}, lease) for sid in primary],
            ctx.config.leaderboard_workers,
        )
    fetched = [r for r in results if r is not None]

    if not fetched and ctx.config.fallback_sources and not ctx.cancel.is_set():
        log.warning(
            "[%s] all %d ranking sources failed; loading curated fallback data",
            ctx.run_id, len(primary),
        )
        ctx.counters.warn("ranking sources unavailable; used fallback_sources")
        for spec in ctx.config.fallback_sources:
            result = _fetch_one(ctx, spec.source_id, {}, None)
            if result is not None:
                fetched.append(result)

    records: list[SourceRecord] = [rec for r in fetched for rec in r.records]
    log.info("[%s] reconciling %d ranking records", ctx.run_id, len(records))
    ctx.reconciler.reconcile_batch(records, ctx.counters, ctx.cancel)


# ---------------------------------------------------------------------------
# live_score_refresh
# ---------------------------------------------------------------------------

def _refresh_competition(
    ctx: RunContext,
    comp: Competition,
    source_ids: list[str],
    lease: PooledSession,
) -> int:
    params = {
        "ref": comp.source_ref or comp.competition_id,
        "competition_id": comp.competition_id,
    }
    records: list[SourceRecord] = []
    for sid in source_ids:
        if ctx.cancel.is_set():
            break
        result = _fetch_one(ctx, sid, params, lease)
        if result is not None:
            records.extend(result.records)
    ctx.counters.add("competitions_processed")
    if not records:
        log.info("[%s] %s: no leaderboard rows", ctx.run_id, comp.competition_id)
        return 0
    return ctx.reconciler.reconcile_scores(comp.competition_id, records, ctx.counters, ctx.cancel)


def run_live_score_refresh(ctx: RunContext) -> None:
    active = ctx.store.list_competitions(states=(ACTIVE,))
    if not active:
        log.info("[%s] no active competitions; nothing to refresh", ctx.run_id)
        return
    source_ids = [s.source_id for s in ctx.config.sources_of_kind("leaderboard")]
    if not source_ids:
        ctx.counters.warn("no leaderboard sources configured")
        return

    log.info("[%s] refreshing %d active competitions", ctx.run_id, len(active))
    with ctx.session() as lease:
        written = _run_concurrently(
            ctx,
            [lambda c=comp: _refresh_competition(ctx, c, source_ids, lease) for comp in active],
            ctx.config.leaderboard_workers,
        )
    log.info("[%s] %d scores written", ctx.run_id, sum(written))


# ---------------------------------------------------------------------------
# lifecycle_sweep
# ---------------------------------------------------------------------------

def run_lifecycle_sweep(ctx: RunContext) -> LifecycleResult:
    result = reconcile_lifecycle(ctx.store, ctx.clock(), ctx.counters)
    log.info(
        "[%s] lifecycle: %d activated, %d completed",
        ctx.run_id, len(result.activated), len(result.completed),
    )
    return result


JOB_BODIES: dict[str, Callable[[RunContext], object]] = {
    JOB_RANKING_REFRESH: run_ranking_refresh,
    JOB_LIVE_SCORE_REFRESH: run_live_score_refresh,
    JOB_LIFECYCLE_SWEEP: run_lifecycle_sweep,
}
