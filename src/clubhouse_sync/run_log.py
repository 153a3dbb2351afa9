"""clubhouse_sync.run_log

RunRecord (one per scheduler execution) and the best-effort Run Log Sink.

The sink appends each record to the store, remembers the latest record per
job kind for the status interface, and optionally writes a JSON report.
A failure in any of those is logged and swallowed: observability never
changes the outcome of the run it describes.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from clubhouse_sync.shared import RunCounters
from clubhouse_sync.store import Store

log = logging.getLogger(__name__)

MAX_ERRORS = 50


class RunStatus:
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    job_kind: str
    started_at: datetime
    finished_at: datetime
    status: str
    records_seen: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    errors: list[str] = field(default_factory=list)
    counters: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_counters(
        cls,
        run_id: str,
        job_kind: str,
        started_at: datetime,
        finished_at: datetime,
        status: str,
        counters: RunCounters,
    ) -> RunRecord:
        data = counters.to_dict()
        return cls(
            run_id=run_id,
            job_kind=job_kind,
            started_at=started_at,
            finished_at=finished_at,
            status=status,
            records_seen=data["records_seen"],
            created=data["created"],
            updated=data["updated"],
            skipped=data["skipped"],
            errored=data["errored"] + data["sources_failed"],
            errors=list(data["warnings"][:MAX_ERRORS]),
            counters={k: v for k, v in data.items() if k != "warnings"},
        )

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["started_at"] = self.started_at.isoformat()
        d["finished_at"] = self.finished_at.isoformat()
        d["duration_seconds"] = self.duration_seconds
        return d


def derive_status(counters: RunCounters, interrupted: bool = False) -> str:
    """success when nothing failed; partial when a source or record failed or the run was interrupted."""
    if interrupted or counters.sources_failed or counters.errored:
        return RunStatus.PARTIAL
    return RunStatus.SUCCESS


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

class RunLogSink:
    def __init__(self, store: Store | None = None, report_dir: Path | None = None) -> None:
        self._store = store
        self._report_dir = report_dir
        self._lock = threading.Lock()
        self._last: dict[str, RunRecord] = {}

    def record(self, run: RunRecord) -> None:
        with self._lock:
            self._last[run.job_kind] = run

        if self._store is not None:
            try:
                self._store.append_run(run)
            except Exception as exc:  # noqa: BLE001
                log.warning("run log write failed for %s (%s): %s", run.run_id, run.job_kind, exc)

        if self._report_dir is not None:
            try:
                write_run_report(run, self._report_dir)
            except Exception as exc:  # noqa: BLE001
                log.warning("run report write failed for %s: %s", run.run_id, exc)

    def get_last_run(self, job_kind: str) -> RunRecord | None:
        """Latest run seen by this process, else the latest persisted one."""
        with self._lock:
            run = self._last.get(job_kind)
        if run is not None or self._store is None:
            return run
        try:
            return self._store.get_last_run(job_kind)
        except Exception as exc:  # noqa: BLE001
            log.warning("run log read failed for %s: %s", job_kind, exc)
            return None

    def last_runs(self) -> dict[str, RunRecord]:
        with self._lock:
            return dict(self._last)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def write_run_report(run: RunRecord, report_dir: Path) -> Path:
    report_path = report_dir / f"{run.run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(run.to_dict(), indent=2, default=str))
    return report_path


def build_run_report(run: RunRecord) -> str:
    lines = [
        "=" * 60,
        f"Sync Run Report: {run.job_kind}",
        f"  run_id: {run.run_id}",
        f"  status: {run.status}",
        f"  duration: {run.duration_seconds:.1f}s",
        "=" * 60,
        f"  records seen:   {run.records_seen}",
        f"  created:        {run.created}",
        f"  updated:        {run.updated}",
        f"  skipped:        {run.skipped}",
        f"  errored:        {run.errored}",
    ]
    for key in ("sources_fetched", "sources_failed", "scores_upserted",
                "competitions_processed", "fuzzy_matches", "ambiguous_matches"):
        if run.counters.get(key):
            lines.append(f"  {key.replace('_', ' ')}: {run.counters[key]}")
    if run.errors:
        lines.append(f"\nErrors ({len(run.errors)}):")
        for e in run.errors[:20]:
            lines.append(f"  {e}")
        if len(run.errors) > 20:
            lines.append(f"  ... and {len(run.errors) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
