"""clubhouse_sync.shared

Shared utilities used by every job kind: the exception hierarchy,
RejectWriter for dropped source rows, and the RunCounters accumulated
during one scheduler execution.
"""

from __future__ import annotations

import csv
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for engine errors."""


class FetchError(SyncError):
    """A source could not be fetched or parsed; the source is skipped for this run."""

    def __init__(self, source_id: str, message: str, attempts: int = 0) -> None:
        super().__init__(f"{source_id}: {message}")
        self.source_id = source_id
        self.attempts = attempts


class TransientFetchError(FetchError):
    """Network/timeout/5xx failure that is worth retrying."""


class FetchCancelled(FetchError):
    """The owning run was cancelled (wall-clock timeout or shutdown)."""


class SessionPoolClosed(SyncError):
    """Raised by SessionPool.acquire() after shutdown()."""


class SessionUnavailable(SyncError):
    """No session could be leased within the acquire timeout."""


class AmbiguousMatchError(SyncError):
    """Raised when a fuzzy lookup has two or more near-equal candidates."""

    def __init__(self, name_norm: str, candidates: list[tuple[str, float]]) -> None:
        listed = ", ".join(f"{k!r}={s:.3f}" for k, s in candidates)
        super().__init__(f"ambiguous_match: {name_norm!r} -> {listed}")
        self.name_norm = name_norm
        self.candidates = candidates


class ConfigValidationError(ValueError):
    """Raised when the engine YAML config fails schema validation."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

REJECT_FIELDNAMES = (
    "source_id",
    "name",
    "country",
    "rank",
    "points",
    "events",
    "position",
    "total_score",
    "_reject_reason",
)


class RejectWriter:
    """Lazy-open CSV writer for rejected source rows.

    Every source of a run shares one file, so the header is the fixed union
    of canonical row fields rather than the first rejected row's keys.
    Safe to share between the worker threads of a single run.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self._lock = threading.Lock()

    def write(self, row: dict[str, Any], reason: str) -> None:
        with self._lock:
            if self._fh is None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = open(self._path, "w", newline="", encoding="utf-8")
                self._writer = csv.DictWriter(
                    self._fh, fieldnames=REJECT_FIELDNAMES, extrasaction="ignore"
                )
                self._writer.writeheader()
            out = dict(row)
            out["_reject_reason"] = reason
            self._writer.writerow(out)
            self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._fh:
                self._fh.close()
                self._fh = None


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    records_seen: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    sources_fetched: int = 0
    sources_failed: int = 0
    scores_upserted: int = 0
    competitions_processed: int = 0
    ambiguous_matches: int = 0
    fuzzy_matches: int = 0
    warnings: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def add(self, name: str, n: int = 1) -> None:
        """Increment a counter; callable from concurrent worker threads."""
        with self._lock:
            setattr(self, name, getattr(self, name) + n)

    def warn(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            d = {
                k: v for k, v in self.__dict__.items()
                if k not in ("warnings", "_lock")
            }
            d["warnings"] = self.warnings[:50]
        return d
