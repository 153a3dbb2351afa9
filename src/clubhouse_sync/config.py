"""clubhouse_sync.config

YAML engine configuration: cadences, matching thresholds, fetch limits,
and the source registry.

Usage:
    from clubhouse_sync.config import load_config

    config = load_config(Path("config/engine.yml"))
    config.cadences["ranking_refresh"]   # "0 6 * * *"

Environment overrides (applied after the file is read, before validation):
    CLUBHOUSE_SYNC_FUZZY_THRESHOLD          matching.fuzzy_threshold
    CLUBHOUSE_SYNC_FETCH_TIMEOUT            fetch.timeout_seconds
    CLUBHOUSE_SYNC_RANKING_REFRESH_CADENCE  cadences.ranking_refresh
    CLUBHOUSE_SYNC_LIVE_SCORE_REFRESH_CADENCE
    CLUBHOUSE_SYNC_LIFECYCLE_SWEEP_CADENCE
"""

from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from apscheduler.triggers.cron import CronTrigger

from clubhouse_sync.shared import ConfigValidationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JOB_RANKING_REFRESH = "ranking_refresh"
JOB_LIVE_SCORE_REFRESH = "live_score_refresh"
JOB_LIFECYCLE_SWEEP = "lifecycle_sweep"

JOB_KINDS = (JOB_RANKING_REFRESH, JOB_LIVE_SCORE_REFRESH, JOB_LIFECYCLE_SWEEP)

SOURCE_KINDS = frozenset({"ranking", "leaderboard"})
SIMILARITY_NAMES = frozenset({"trigram", "sequence"})

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "engine.yml"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_DEFAULTS: dict[str, Any] = {
    "cadences": {
        JOB_RANKING_REFRESH: "0 6 * * *",
        JOB_LIVE_SCORE_REFRESH: "*/15 * * * *",
        JOB_LIFECYCLE_SWEEP: "0 * * * *",
    },
    "job_timeouts_seconds": {
        JOB_RANKING_REFRESH: 900,
        JOB_LIVE_SCORE_REFRESH: 600,
        JOB_LIFECYCLE_SWEEP: 120,
    },
    "matching": {
        "fuzzy_threshold": 0.85,
        "fuzzy_margin": 0.05,
        "similarity": "sequence",
    },
    "fetch": {
        "timeout_seconds": 30,
        "max_retries": 2,
        "retry_backoff_seconds": 5.0,
        "user_agent": DEFAULT_USER_AGENT,
        "leaderboard_workers": 4,
        "max_sessions": 2,
        "session_acquire_timeout_seconds": 60,
        "max_rows": 250,
    },
    "health_probe_url": None,
    "report_dir": None,
    "rejects_dir": None,
    "sources": [],
    "fallback_sources": [],
}


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceSpec:
    """One entry of the source registry.

    Exactly one of url / path is set.  Leaderboard URLs are templates
    formatted with the competition's source_ref as ``{ref}``.
    """

    source_id: str
    kind: str
    url: str | None = None
    path: Path | None = None
    max_rows: int | None = None

    @property
    def is_file(self) -> bool:
        return self.path is not None


@dataclass
class EngineConfig:
    cadences: dict[str, str] = field(
        default_factory=lambda: dict(_DEFAULTS["cadences"])
    )
    job_timeouts_seconds: dict[str, float] = field(
        default_factory=lambda: dict(_DEFAULTS["job_timeouts_seconds"])
    )
    fuzzy_threshold: float = 0.85
    fuzzy_margin: float = 0.05
    similarity: str = "sequence"
    fetch_timeout_seconds: float = 30
    max_retries: int = 2
    retry_backoff_seconds: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT
    leaderboard_workers: int = 4
    max_sessions: int = 2
    session_acquire_timeout_seconds: float = 60
    max_rows: int = 250
    health_probe_url: str | None = None
    report_dir: Path | None = None
    rejects_dir: Path | None = None
    sources: list[SourceSpec] = field(default_factory=list)
    fallback_sources: list[SourceSpec] = field(default_factory=list)

    def sources_of_kind(self, kind: str) -> list[SourceSpec]:
        return [s for s in self.sources if s.kind == kind]

    def job_timeout(self, job_kind: str) -> float:
        return float(self.job_timeouts_seconds[job_kind])


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_config(
    yaml_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load, override from the environment, validate, and return an EngineConfig.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_CONFIG_PATH
    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")
    return config_from_dict(data, base_dir=path.parent, environ=environ)


def config_from_dict(
    data: dict[str, Any],
    base_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    merged = _merge_defaults(data)
    _apply_env_overrides(merged, os.environ if environ is None else environ)
    validate_config(merged)

    matching = merged["matching"]
    fetch = merged["fetch"]
    return EngineConfig(
        cadences={k: str(v) for k, v in merged["cadences"].items()},
        job_timeouts_seconds={
            k: float(v) for k, v in merged["job_timeouts_seconds"].items()
        },
        fuzzy_threshold=float(matching["fuzzy_threshold"]),
        fuzzy_margin=float(matching["fuzzy_margin"]),
        similarity=str(matching["similarity"]),
        fetch_timeout_seconds=float(fetch["timeout_seconds"]),
        max_retries=int(fetch["max_retries"]),
        retry_backoff_seconds=float(fetch["retry_backoff_seconds"]),
        user_agent=str(fetch["user_agent"]),
        leaderboard_workers=int(fetch["leaderboard_workers"]),
        max_sessions=int(fetch["max_sessions"]),
        session_acquire_timeout_seconds=float(fetch["session_acquire_timeout_seconds"]),
        max_rows=int(fetch["max_rows"]),
        health_probe_url=merged.get("health_probe_url"),
        report_dir=Path(merged["report_dir"]) if merged.get("report_dir") else None,
        rejects_dir=Path(merged["rejects_dir"]) if merged.get("rejects_dir") else None,
        sources=[_source_spec(s, base_dir) for s in merged["sources"]],
        fallback_sources=[_source_spec(s, base_dir) for s in merged["fallback_sources"]],
    )


def validate_config(data: dict[str, Any]) -> None:
    """Raise ConfigValidationError if data does not match the required schema.

    Validates:
      - every job kind has a parseable cron cadence and a positive timeout
      - 0 < fuzzy_threshold <= 1 and 0 <= fuzzy_margin < fuzzy_threshold
      - fetch limits are positive (max_retries may be 0)
      - each source has a unique id, a known kind, and exactly one of url/path
      - fallback sources are ranking sources
    """
    cadences = data.get("cadences") or {}
    timeouts = data.get("job_timeouts_seconds") or {}
    for kind in JOB_KINDS:
        cadence = cadences.get(kind)
        if not cadence:
            raise ConfigValidationError(f"Missing cadence for job '{kind}'.")
        try:
            CronTrigger.from_crontab(str(cadence))
        except ValueError as exc:
            raise ConfigValidationError(
                f"Cadence for '{kind}' is not a valid crontab: {cadence!r} ({exc})"
            )
        timeout = _as_float(timeouts.get(kind), f"job_timeouts_seconds.{kind}")
        if timeout <= 0:
            raise ConfigValidationError(f"Timeout for '{kind}' must be > 0.")

    matching = data.get("matching") or {}
    threshold = _as_float(matching.get("fuzzy_threshold"), "matching.fuzzy_threshold")
    margin = _as_float(matching.get("fuzzy_margin"), "matching.fuzzy_margin")
    if not (0.0 < threshold <= 1.0):
        raise ConfigValidationError(
            f"fuzzy_threshold {threshold} must be in (0.0, 1.0]."
        )
    if not (0.0 <= margin < threshold):
        raise ConfigValidationError(
            f"fuzzy_margin {margin} must be >= 0 and < fuzzy_threshold."
        )
    if matching.get("similarity") not in SIMILARITY_NAMES:
        raise ConfigValidationError(
            f"Unknown similarity '{matching.get('similarity')}'. "
            f"Must be one of {sorted(SIMILARITY_NAMES)}."
        )

    fetch = data.get("fetch") or {}
    for key in ("timeout_seconds", "leaderboard_workers", "max_sessions",
                "session_acquire_timeout_seconds", "max_rows"):
        if _as_float(fetch.get(key), f"fetch.{key}") <= 0:
            raise ConfigValidationError(f"fetch.{key} must be > 0.")
    for key in ("max_retries", "retry_backoff_seconds"):
        if _as_float(fetch.get(key), f"fetch.{key}") < 0:
            raise ConfigValidationError(f"fetch.{key} must be >= 0.")

    seen_ids: set[str] = set()
    for group in ("sources", "fallback_sources"):
        entries = data.get(group) or []
        if not isinstance(entries, list):
            raise ConfigValidationError(f"'{group}' must be a list.")
        for entry in entries:
            if not isinstance(entry, dict):
                raise ConfigValidationError(f"'{group}' entries must be mappings.")
            sid = entry.get("id")
            if not sid:
                raise ConfigValidationError(f"'{group}' entry missing 'id'.")
            if sid in seen_ids:
                raise ConfigValidationError(f"Duplicate source id '{sid}'.")
            seen_ids.add(sid)
            if entry.get("kind") not in SOURCE_KINDS:
                raise ConfigValidationError(
                    f"Source '{sid}' has invalid kind '{entry.get('kind')}'."
                )
            if bool(entry.get("url")) == bool(entry.get("path")):
                raise ConfigValidationError(
                    f"Source '{sid}' must set exactly one of 'url' or 'path'."
                )
            if group == "fallback_sources" and entry["kind"] != "ranking":
                raise ConfigValidationError(
                    f"Fallback source '{sid}' must be a ranking source."
                )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _merge_defaults(data: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(_DEFAULTS)
    for key, value in data.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(merged: dict[str, Any], environ: Mapping[str, str]) -> None:
    threshold = environ.get("CLUBHOUSE_SYNC_FUZZY_THRESHOLD")
    if threshold:
        merged["matching"]["fuzzy_threshold"] = threshold
    timeout = environ.get("CLUBHOUSE_SYNC_FETCH_TIMEOUT")
    if timeout:
        merged["fetch"]["timeout_seconds"] = timeout
    for kind in JOB_KINDS:
        cadence = environ.get(f"CLUBHOUSE_SYNC_{kind.upper()}_CADENCE")
        if cadence:
            merged["cadences"][kind] = cadence


def _as_float(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"'{label}' value {value!r} is not numeric.")


def _source_spec(entry: dict[str, Any], base_dir: Path | None) -> SourceSpec:
    path = None
    if entry.get("path"):
        path = Path(entry["path"])
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
    return SourceSpec(
        source_id=str(entry["id"]),
        kind=str(entry["kind"]),
        url=entry.get("url"),
        path=path,
        max_rows=int(entry["max_rows"]) if entry.get("max_rows") else None,
    )
