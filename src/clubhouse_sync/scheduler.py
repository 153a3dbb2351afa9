"""clubhouse_sync.scheduler

SyncEngine: the trigger and status interfaces, the per-kind single-flight
guard, and the APScheduler wiring that fires jobs on their cron cadences.

Lifecycle of one run:
  trigger(kind)
    -> guard.try_claim(kind)        (False: log + TriggerResult.SKIPPED)
    -> submit to the job executor   (returns TriggerResult.STARTED at once)
       -> RunContext + deadline timer
       -> job body
       -> RunRecord -> RunLogSink
       -> guard.release(kind)       (always, in finally)

Unexpected exceptions end the current run with status 'failed'; they never
reach APScheduler or the caller of trigger().
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from clubhouse_sync.config import (
    JOB_KINDS,
    JOB_LIFECYCLE_SWEEP,
    JOB_LIVE_SCORE_REFRESH,
    JOB_RANKING_REFRESH,
    EngineConfig,
)
from clubhouse_sync.jobs import JOB_BODIES, RunContext
from clubhouse_sync.reconcile import SIMILARITY_FUNCTIONS, EntityReconciler
from clubhouse_sync.run_log import RunLogSink, RunRecord, RunStatus, derive_status
from clubhouse_sync.session_pool import SessionPool
from clubhouse_sync.shared import RejectWriter
from clubhouse_sync.sources import SourceFetcher
from clubhouse_sync.store import ACTIVE, Competition, Store

log = logging.getLogger(__name__)

JobBody = Callable[[RunContext], object]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerResult:
    STARTED = "started"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Single-flight guard
# ---------------------------------------------------------------------------

class SingleFlightGuard:
    """At most one in-flight run per job kind; contenders are turned away."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: set[str] = set()

    def try_claim(self, kind: str) -> bool:
        with self._lock:
            if kind in self._running:
                return False
            self._running.add(kind)
            return True

    def release(self, kind: str) -> None:
        with self._lock:
            self._running.discard(kind)

    def is_running(self, kind: str) -> bool:
        with self._lock:
            return kind in self._running

    def running(self) -> list[str]:
        with self._lock:
            return sorted(self._running)

    @contextmanager
    def claim(self, kind: str) -> Iterator[bool]:
        """Yield whether the slot was claimed; a claimed slot is always released."""
        claimed = self.try_claim(kind)
        try:
            yield claimed
        finally:
            if claimed:
                self.release(kind)


# ---------------------------------------------------------------------------
# SyncEngine
# ---------------------------------------------------------------------------

class SyncEngine:
    def __init__(
        self,
        config: EngineConfig,
        store: Store,
        pool: SessionPool | None = None,
        fetcher: SourceFetcher | None = None,
        run_log: RunLogSink | None = None,
        bodies: dict[str, JobBody] | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.pool = pool or SessionPool(
            max_sessions=config.max_sessions, user_agent=config.user_agent
        )
        self.fetcher = fetcher or SourceFetcher(
            [*config.sources, *config.fallback_sources],
            timeout_seconds=config.fetch_timeout_seconds,
            max_retries=config.max_retries,
            backoff_seconds=config.retry_backoff_seconds,
            max_rows=config.max_rows,
        )
        self.run_log = run_log or RunLogSink(store, config.report_dir)
        self.bodies = dict(bodies or JOB_BODIES)
        self.guard = SingleFlightGuard()
        self._clock = clock
        self._executor = ThreadPoolExecutor(
            max_workers=len(JOB_KINDS), thread_name_prefix="sync-job"
        )
        self._scheduler: BackgroundScheduler | None = None
        self._active: dict[str, RunContext] = {}
        self._active_lock = threading.Lock()
        self._closed = False

    # -- trigger interface --------------------------------------------------

    def trigger(self, kind: str) -> str:
        """Start a run of kind in the background unless one is in flight."""
        self._check_kind(kind)
        if self._closed:
            log.info("%s trigger ignored: engine is shut down", kind)
            return TriggerResult.SKIPPED
        if not self.guard.try_claim(kind):
            log.info("%s already running, skipped", kind)
            return TriggerResult.SKIPPED
        try:
            self._executor.submit(self._run_claimed, kind)
        except RuntimeError:
            self.guard.release(kind)
            log.info("%s trigger ignored: executor is shut down", kind)
            return TriggerResult.SKIPPED
        return TriggerResult.STARTED

    def trigger_ranking_refresh(self) -> str:
        return self.trigger(JOB_RANKING_REFRESH)

    def trigger_live_score_refresh(self) -> str:
        return self.trigger(JOB_LIVE_SCORE_REFRESH)

    def trigger_lifecycle_sweep(self) -> str:
        return self.trigger(JOB_LIFECYCLE_SWEEP)

    def run_job(self, kind: str) -> RunRecord | None:
        """Run kind in the calling thread; None if a run is already in flight."""
        self._check_kind(kind)
        with self.guard.claim(kind) as claimed:
            if not claimed:
                log.info("%s already running, skipped", kind)
                return None
            return self._execute(kind)

    def _check_kind(self, kind: str) -> None:
        if kind not in self.bodies:
            raise ValueError(f"Unknown job kind '{kind}'. Must be one of {sorted(self.bodies)}.")

    def _run_claimed(self, kind: str) -> RunRecord:
        try:
            return self._execute(kind)
        finally:
            self.guard.release(kind)

    def _execute(self, kind: str) -> RunRecord:
        run_id = str(uuid.uuid4())
        started_at = self._clock()
        timeout = self.config.job_timeout(kind)
        rejects = None
        if self.config.rejects_dir is not None:
            rejects = RejectWriter(self.config.rejects_dir / f"{kind}_{run_id}.csv")
        ctx = RunContext(
            run_id=run_id,
            job_kind=kind,
            config=self.config,
            store=self.store,
            fetcher=self.fetcher,
            pool=self.pool,
            reconciler=EntityReconciler(
                self.store,
                similarity=SIMILARITY_FUNCTIONS[self.config.similarity],
                fuzzy_threshold=self.config.fuzzy_threshold,
                fuzzy_margin=self.config.fuzzy_margin,
                clock=self._clock,
            ),
            deadline=time.monotonic() + timeout,
            rejects=rejects,
            clock=self._clock,
        )
        timer = threading.Timer(timeout, ctx.interrupt)
        timer.daemon = True
        with self._active_lock:
            self._active[kind] = ctx

        log.info("[%s] %s started (timeout=%ss)", run_id, kind, timeout)
        timer.start()
        try:
            self.bodies[kind](ctx)
            status = derive_status(ctx.counters, ctx.interrupted)
        except Exception as exc:  # noqa: BLE001
            log.exception("[%s] %s failed", run_id, kind)
            ctx.counters.warn(f"fatal:{type(exc).__name__}: {exc}")
            status = RunStatus.FAILED
        finally:
            timer.cancel()
            with self._active_lock:
                self._active.pop(kind, None)
            if rejects is not None:
                rejects.close()

        run = RunRecord.from_counters(
            run_id, kind, started_at, self._clock(), status, ctx.counters
        )
        self.run_log.record(run)
        log.info(
            "[%s] %s finished status=%s seen=%d created=%d updated=%d skipped=%d errored=%d",
            run_id, kind, run.status, run.records_seen, run.created,
            run.updated, run.skipped, run.errored,
        )
        return run

    # -- status interface ---------------------------------------------------

    def get_last_run(self, kind: str) -> RunRecord | None:
        return self.run_log.get_last_run(kind)

    def get_active_competitions(self) -> list[Competition]:
        return self.store.list_competitions(states=(ACTIVE,))

    def check_health(self) -> dict[str, Any]:
        """Probe the health URL and the store.  Never raises."""
        health: dict[str, Any] = {
            "status": "healthy",
            "checked_at": self._clock().isoformat(),
            "probe_url": self.config.health_probe_url,
            "probe_status": None,
            "entity_count": None,
            "active_competitions": None,
            "running": self.guard.running(),
            "last_runs": {},
            "errors": [],
        }
        for kind in self.bodies:
            run = self.get_last_run(kind)
            health["last_runs"][kind] = run.status if run else None

        try:
            health["entity_count"] = self.store.count_entities()
            health["active_competitions"] = len(self.get_active_competitions())
        except Exception as exc:  # noqa: BLE001
            health["status"] = "error"
            health["errors"].append(f"store: {exc}")

        if self.config.health_probe_url:
            try:
                with self.pool.lease(self.config.session_acquire_timeout_seconds) as lease:
                    resp = lease.session.get(
                        self.config.health_probe_url,
                        timeout=self.config.fetch_timeout_seconds,
                    )
                health["probe_status"] = resp.status_code
                if resp.status_code >= 400:
                    health["status"] = "error"
                    health["errors"].append(f"probe: HTTP {resp.status_code}")
            except Exception as exc:  # noqa: BLE001
                health["status"] = "error"
                health["errors"].append(f"probe: {exc}")
        return health

    # -- scheduling ---------------------------------------------------------

    def start(self) -> BackgroundScheduler:
        """Register every job kind on its cadence and start firing."""
        if self._scheduler is not None:
            log.warning("Scheduler already started, skipping duplicate initialization")
            return self._scheduler
        scheduler = BackgroundScheduler(timezone="UTC")
        for kind in self.bodies:
            cadence = self.config.cadences[kind]
            scheduler.add_job(
                self.trigger,
                trigger=CronTrigger.from_crontab(cadence, timezone="UTC"),
                args=[kind],
                id=kind,
                name=f"{kind} ({cadence})",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            log.info("scheduled %s: %s", kind, cadence)
        scheduler.start()
        self._scheduler = scheduler
        return scheduler

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduling, interrupt in-flight runs and close every session."""
        if self._closed:
            return
        self._closed = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            log.info("Scheduler stopped")
        with self._active_lock:
            active = list(self._active.values())
        for ctx in active:
            ctx.interrupt("shutdown")
        self.pool.shutdown()
        self._executor.shutdown(wait=wait)
