"""clubhouse_sync.sources

Source Fetcher: turns a configured source into validated SourceRecords.

Transports:
  - http(s) URL  -> first HTML table with a recognizable name column,
                    parsed with BeautifulSoup; headers mapped via aliases.
  - local path   -> CSV file with the same header aliases (curated data).

Kinds:
  - ranking      -> name, country, rank, points, events
  - leaderboard  -> name, country, position, total_score.  The URL (or
                    path) is a template formatted with the competition's
                    source_ref as {ref}.

Failure handling:
  - connection errors, timeouts and HTTP 429/5xx are transient and are
    retried up to max_retries times with exponential backoff, then raised
    as TransientFetchError.  A connection error also recreates the leased
    session.
  - other HTTP errors and pages with no usable table raise FetchError
    straight away.
  - a page that parses but has no rows is a valid empty result.
  - rows with implausible names are dropped, counted as skipped, and
    written to the RejectWriter when one is given.

The fetcher never touches the store.
"""

from __future__ import annotations

import csv
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable

import requests
from bs4 import BeautifulSoup

from clubhouse_sync.config import SourceSpec
from clubhouse_sync.normalize import (
    normalize_country,
    normalize_space,
    parse_int,
    parse_numeric,
    parse_position,
    parse_rank,
    parse_score_to_par,
    validate_name,
)
from clubhouse_sync.shared import (
    FetchCancelled,
    FetchError,
    RejectWriter,
    TransientFetchError,
)

if TYPE_CHECKING:
    from clubhouse_sync.session_pool import PooledSession

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Header aliases
# ---------------------------------------------------------------------------

_COMMON_ALIASES = {
    "name": "name",
    "player": "name",
    "player name": "name",
    "golfer": "name",
    "country": "country",
    "ctry": "country",
    "nat": "country",
    "nationality": "country",
}

HEADER_ALIASES: dict[str, dict[str, str]] = {
    "ranking": {
        **_COMMON_ALIASES,
        "rank": "rank",
        "rk": "rank",
        "ranking": "rank",
        "owgr": "rank",
        "pos": "rank",
        "position": "rank",
        "points": "points",
        "pts": "points",
        "total points": "points",
        "avg points": "points",
        "events": "events",
        "events played": "events",
        "evts": "events",
    },
    "leaderboard": {
        **_COMMON_ALIASES,
        "pos": "position",
        "position": "position",
        "place": "position",
        "to par": "total_score",
        "topar": "total_score",
        "score": "total_score",
    },
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceRecord:
    raw_name: str
    source_id: str
    fetched_at: datetime
    country: str | None = None
    rank: int | None = None
    points: Decimal | None = None
    events_played: int | None = None
    position: str | None = None
    total_score: int | None = None
    competition_id: str | None = None


@dataclass
class FetchResult:
    source_id: str
    records: list[SourceRecord] = field(default_factory=list)
    skipped: int = 0
    attempts: int = 1


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

def map_headers(headers: Iterable[str], kind: str) -> list[str | None]:
    """Map raw header labels to canonical field names (None = ignored column)."""
    aliases = HEADER_ALIASES[kind]
    mapped: list[str | None] = []
    for h in headers:
        label = (normalize_space(h) or "").lower().rstrip(".")
        mapped.append(aliases.get(label))
    return mapped


def parse_table_rows(html: str, kind: str) -> list[dict[str, str]]:
    """Extract rows from the first HTML table that has a name column.

    Raises:
        ValueError: If no table on the page has a recognizable name column.
    """
    soup = BeautifulSoup(html, "html.parser")
    for table in soup.find_all("table"):
        first_row = table.find("tr")
        header_cells = table.select("thead th")
        if not header_cells and first_row is not None:
            header_cells = first_row.find_all(["th", "td"])
        fields = map_headers([c.get_text(" ", strip=True) for c in header_cells], kind)
        if "name" not in fields:
            continue
        body_rows = table.select("tbody tr") or table.find_all("tr")[1:]
        rows: list[dict[str, str]] = []
        for tr in body_rows:
            cells = tr.find_all("td")
            if not cells:
                continue
            row: dict[str, str] = {}
            for fname, cell in zip(fields, cells):
                if fname is None or fname in row:
                    continue
                link = cell.find("a") if fname == "name" else None
                row[fname] = (link or cell).get_text(" ", strip=True)
            rows.append(row)
        return rows
    raise ValueError("no table with a name column found")


def read_csv_rows(path: Path, kind: str) -> list[dict[str, str]]:
    with path.open(newline="", encoding="utf-8-sig") as fh:
        reader = csv.reader(fh)
        header = next(reader, None)
        if header is None:
            return []
        fields = map_headers(header, kind)
        if "name" not in fields:
            raise ValueError(f"{path.name} has no name column")
        rows: list[dict[str, str]] = []
        for raw in reader:
            row = {
                fname: value
                for fname, value in zip(fields, raw)
                if fname is not None
            }
            if any(v.strip() for v in row.values()):
                rows.append(row)
        return rows


def row_to_record(
    row: dict[str, str],
    source_id: str,
    fetched_at: datetime,
    competition_id: str | None = None,
) -> SourceRecord:
    """Build a SourceRecord; unparseable optional fields become None."""
    position, _ = parse_position(row.get("position"))
    return SourceRecord(
        raw_name=normalize_space(row.get("name")) or "",
        source_id=source_id,
        fetched_at=fetched_at,
        country=normalize_country(row.get("country")),
        rank=parse_rank(row.get("rank")),
        points=parse_numeric(row.get("points")),
        events_played=parse_int(row.get("events")),
        position=position,
        total_score=parse_score_to_par(row.get("total_score")),
        competition_id=competition_id,
    )


# ---------------------------------------------------------------------------
# SourceFetcher
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SourceFetcher:
    """Fetch, parse and validate rows for one configured source at a time."""

    def __init__(
        self,
        sources: Iterable[SourceSpec],
        timeout_seconds: float = 30,
        max_retries: int = 2,
        backoff_seconds: float = 5.0,
        max_rows: int = 250,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sources = {s.source_id: s for s in sources}
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_rows = max_rows
        self._sleep = sleep
        self._clock = clock

    def source(self, source_id: str) -> SourceSpec:
        try:
            return self._sources[source_id]
        except KeyError:
            raise FetchError(source_id, "unknown source") from None

    def fetch(
        self,
        source_id: str,
        params: dict[str, str] | None = None,
        lease: PooledSession | None = None,
        cancel: threading.Event | None = None,
        rejects: RejectWriter | None = None,
    ) -> FetchResult:
        """Return validated records for source_id.

        params may carry 'ref' (leaderboard template value) and
        'competition_id' (stamped on every record).

        Raises:
            FetchError: Unknown source, bad template, unusable page, or
                non-retryable HTTP status.
            TransientFetchError: Retries exhausted.
            FetchCancelled: cancel was set before or between attempts.
        """
        spec = self.source(source_id)
        params = params or {}
        rows, attempts = self._fetch_rows(spec, params, lease, cancel)
        fetched_at = self._clock()
        limit = spec.max_rows or self.max_rows

        result = FetchResult(source_id=source_id, attempts=attempts)
        for row in rows[:limit]:
            reason = validate_name(row.get("name"))
            if reason is not None:
                result.skipped += 1
                if rejects is not None:
                    rejects.write({"source_id": source_id, **row}, reason)
                continue
            result.records.append(
                row_to_record(row, source_id, fetched_at, params.get("competition_id"))
            )
        log.info(
            "source=%s rows=%d records=%d skipped=%d attempts=%d",
            source_id, len(rows), len(result.records), result.skipped, attempts,
        )
        return result

    # -- transports ---------------------------------------------------------

    def _fetch_rows(
        self,
        spec: SourceSpec,
        params: dict[str, str],
        lease: PooledSession | None,
        cancel: threading.Event | None,
    ) -> tuple[list[dict[str, str]], int]:
        if spec.is_file:
            path = Path(_fill_template(spec, str(spec.path), params))
            try:
                return read_csv_rows(path, spec.kind), 1
            except (OSError, ValueError) as exc:
                raise FetchError(spec.source_id, str(exc), attempts=1)

        if lease is None:
            raise FetchError(spec.source_id, "http source needs a session lease")
        url = _fill_template(spec, spec.url or "", params)

        attempts = 0
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                if cancel is not None:
                    if cancel.wait(delay):
                        raise FetchCancelled(spec.source_id, "run cancelled", attempts)
                else:
                    self._sleep(delay)
            if cancel is not None and cancel.is_set():
                raise FetchCancelled(spec.source_id, "run cancelled", attempts)

            attempts += 1
            try:
                html = self._get(spec, url, lease)
            except TransientFetchError as exc:
                last_error = exc
                log.warning(
                    "source=%s attempt=%d/%d transient failure: %s",
                    spec.source_id, attempts, self.max_retries + 1, exc,
                )
                continue

            try:
                return parse_table_rows(html, spec.kind), attempts
            except ValueError as exc:
                raise FetchError(spec.source_id, str(exc), attempts)

        raise TransientFetchError(
            spec.source_id,
            f"gave up after {attempts} attempts: {last_error}",
            attempts,
        )

    def _get(self, spec: SourceSpec, url: str, lease: PooledSession) -> str:
        try:
            resp = lease.session.get(url, timeout=self.timeout_seconds)
        except requests.Timeout as exc:
            raise TransientFetchError(spec.source_id, f"timeout: {exc}")
        except requests.ConnectionError as exc:
            log.warning("source=%s connection error; recreating session", spec.source_id)
            lease.recreate()
            raise TransientFetchError(spec.source_id, f"connection error: {exc}")
        except requests.RequestException as exc:
            raise FetchError(spec.source_id, f"request failed: {exc}")

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientFetchError(spec.source_id, f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise FetchError(spec.source_id, f"HTTP {resp.status_code}")
        return resp.text


def _fill_template(spec: SourceSpec, template: str, params: dict[str, str]) -> str:
    if spec.kind != "leaderboard":
        return template
    try:
        return template.format(**params)
    except (KeyError, IndexError) as exc:
        raise FetchError(spec.source_id, f"missing template parameter {exc}")
