"""clubhouse_sync.store

Canonical store for ranked entities, competitions, competition scores and
the sync run log.

Two implementations share the Store protocol:
  - PgStore:     psycopg against the schema in migrations/.  Every write is
                 its own transaction so one bad record never rolls back a run.
  - MemoryStore: thread-safe in-process dicts, used by unit tests and by
                 the CLI when no --db-dsn is given.

All writes are upserts keyed by identity_key or (competition_id,
identity_key); competition state changes are compare-and-set.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Protocol

import psycopg

from clubhouse_sync.normalize import UNRANKED

if TYPE_CHECKING:
    from clubhouse_sync.run_log import RunRecord

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Competition states
# ---------------------------------------------------------------------------

UPCOMING = "upcoming"
ACTIVE = "active"
COMPLETED = "completed"

COMPETITION_STATES = (UPCOMING, ACTIVE, COMPLETED)
STATE_ORDER = {state: idx for idx, state in enumerate(COMPETITION_STATES)}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CanonicalEntity:
    identity_key: str
    display_name: str
    country: str | None = None
    world_ranking: int = UNRANKED
    points: Decimal = Decimal("0")
    events_played: int = 0
    last_reconciled_at: datetime | None = None
    data_source: str | None = None

    def same_fields(self, other: CanonicalEntity) -> bool:
        """Field equality ignoring last_reconciled_at."""
        return replace(self, last_reconciled_at=None) == replace(
            other, last_reconciled_at=None
        )


@dataclass(frozen=True)
class Competition:
    competition_id: str
    name: str
    start_at: datetime
    end_at: datetime
    state: str = UPCOMING
    source_ref: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ScoreRecord:
    competition_id: str
    identity_key: str
    position: str | None = None
    position_rank: int | None = None
    total_score: int | None = None
    updated_at: datetime | None = None


class Store(Protocol):
    def get_entity(self, identity_key: str) -> CanonicalEntity | None: ...

    def list_identity_keys(self) -> list[str]: ...

    def upsert_entity(self, entity: CanonicalEntity) -> None: ...

    def count_entities(self) -> int: ...

    def upsert_competition(self, competition: Competition) -> None: ...

    def list_competitions(
        self, states: Iterable[str] | None = None
    ) -> list[Competition]: ...

    def transition_competition(
        self, competition_id: str, from_state: str, to_state: str, now: datetime
    ) -> bool: ...

    def upsert_score(self, score: ScoreRecord) -> None: ...

    def get_score(
        self, competition_id: str, identity_key: str
    ) -> ScoreRecord | None: ...

    def append_run(self, run: RunRecord) -> None: ...

    def get_last_run(self, job_kind: str) -> RunRecord | None: ...


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    """In-process store; every method holds a single lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.entities: dict[str, CanonicalEntity] = {}
        self.competitions: dict[str, Competition] = {}
        self.scores: dict[tuple[str, str], ScoreRecord] = {}
        self.runs: list[RunRecord] = []

    def get_entity(self, identity_key: str) -> CanonicalEntity | None:
        with self._lock:
            return self.entities.get(identity_key)

    def list_identity_keys(self) -> list[str]:
        with self._lock:
            return sorted(self.entities)

    def upsert_entity(self, entity: CanonicalEntity) -> None:
        with self._lock:
            self.entities[entity.identity_key] = entity

    def count_entities(self) -> int:
        with self._lock:
            return len(self.entities)

    def upsert_competition(self, competition: Competition) -> None:
        with self._lock:
            self.competitions[competition.competition_id] = competition

    def list_competitions(
        self, states: Iterable[str] | None = None
    ) -> list[Competition]:
        wanted = set(states) if states is not None else None
        with self._lock:
            comps = [
                c for c in self.competitions.values()
                if wanted is None or c.state in wanted
            ]
        return sorted(comps, key=lambda c: (c.start_at, c.competition_id))

    def transition_competition(
        self, competition_id: str, from_state: str, to_state: str, now: datetime
    ) -> bool:
        with self._lock:
            comp = self.competitions.get(competition_id)
            if comp is None or comp.state != from_state:
                return False
            self.competitions[competition_id] = replace(
                comp, state=to_state, updated_at=now
            )
            return True

    def upsert_score(self, score: ScoreRecord) -> None:
        with self._lock:
            self.scores[(score.competition_id, score.identity_key)] = score

    def get_score(
        self, competition_id: str, identity_key: str
    ) -> ScoreRecord | None:
        with self._lock:
            return self.scores.get((competition_id, identity_key))

    def append_run(self, run: RunRecord) -> None:
        with self._lock:
            self.runs.append(run)

    def get_last_run(self, job_kind: str) -> RunRecord | None:
        with self._lock:
            for run in reversed(self.runs):
                if run.job_kind == job_kind:
                    return run
        return None


# ---------------------------------------------------------------------------
# PgStore
# ---------------------------------------------------------------------------

_ENTITY_COLS = (
    "identity_key, display_name, country, world_ranking, points, "
    "events_played, last_reconciled_at, data_source"
)
_COMPETITION_COLS = (
    "id, name, start_at, end_at, state, source_ref, created_at, updated_at"
)


class PgStore:
    """psycopg-backed store.

    A single connection is shared by the engine's worker threads, so access
    is serialized through a lock and each operation runs in its own
    transaction block.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    @classmethod
    def connect(cls, dsn: str) -> PgStore:
        return cls(psycopg.connect(dsn, autocommit=True))

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- entities -----------------------------------------------------------

    def get_entity(self, identity_key: str) -> CanonicalEntity | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_ENTITY_COLS} FROM ranked_entity WHERE identity_key = %s",
                (identity_key,),
            ).fetchone()
        return _entity_from_row(row) if row else None

    def list_identity_keys(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT identity_key FROM ranked_entity ORDER BY identity_key"
            ).fetchall()
        return [r[0] for r in rows]

    def upsert_entity(self, entity: CanonicalEntity) -> None:
        with self._lock, self._conn.transaction():
            self._conn.execute(
                f"""
                INSERT INTO ranked_entity ({_ENTITY_COLS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (identity_key) DO UPDATE SET
                    display_name       = EXCLUDED.display_name,
                    country            = EXCLUDED.country,
                    world_ranking      = EXCLUDED.world_ranking,
                    points             = EXCLUDED.points,
                    events_played      = EXCLUDED.events_played,
                    last_reconciled_at = EXCLUDED.last_reconciled_at,
                    data_source        = EXCLUDED.data_source,
                    updated_at         = now()
                """,
                (
                    entity.identity_key, entity.display_name, entity.country,
                    entity.world_ranking, entity.points, entity.events_played,
                    entity.last_reconciled_at, entity.data_source,
                ),
            )

    def count_entities(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT count(*) FROM ranked_entity").fetchone()
        return int(row[0])

    # -- competitions -------------------------------------------------------

    def upsert_competition(self, competition: Competition) -> None:
        """Insert or update schedule fields.  State is never moved here."""
        with self._lock, self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO competition (id, name, start_at, end_at, state, source_ref)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name       = EXCLUDED.name,
                    start_at   = EXCLUDED.start_at,
                    end_at     = EXCLUDED.end_at,
                    source_ref = EXCLUDED.source_ref,
                    updated_at = now()
                """,
                (
                    competition.competition_id, competition.name,
                    competition.start_at, competition.end_at,
                    competition.state, competition.source_ref,
                ),
            )

    def list_competitions(
        self, states: Iterable[str] | None = None
    ) -> list[Competition]:
        with self._lock:
            if states is None:
                rows = self._conn.execute(
                    f"SELECT {_COMPETITION_COLS} FROM competition ORDER BY start_at, id"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"""
                    SELECT {_COMPETITION_COLS} FROM competition
                    WHERE state = ANY(%s) ORDER BY start_at, id
                    """,
                    (list(states),),
                ).fetchall()
        return [_competition_from_row(r) for r in rows]

    def transition_competition(
        self, competition_id: str, from_state: str, to_state: str, now: datetime
    ) -> bool:
        with self._lock, self._conn.transaction():
            cur = self._conn.execute(
                """
                UPDATE competition
                SET state = %s, updated_at = %s
                WHERE id = %s AND state = %s
                """,
                (to_state, now, competition_id, from_state),
            )
            return cur.rowcount == 1

    # -- scores -------------------------------------------------------------

    def upsert_score(self, score: ScoreRecord) -> None:
        with self._lock, self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO competition_score
                    (competition_id, identity_key, position, position_rank,
                     total_score, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (competition_id, identity_key) DO UPDATE SET
                    position      = EXCLUDED.position,
                    position_rank = EXCLUDED.position_rank,
                    total_score   = EXCLUDED.total_score,
                    updated_at    = EXCLUDED.updated_at
                """,
                (
                    score.competition_id, score.identity_key, score.position,
                    score.position_rank, score.total_score, score.updated_at,
                ),
            )

    def get_score(
        self, competition_id: str, identity_key: str
    ) -> ScoreRecord | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT competition_id, identity_key, position, position_rank,
                       total_score, updated_at
                FROM competition_score
                WHERE competition_id = %s AND identity_key = %s
                """,
                (competition_id, identity_key),
            ).fetchone()
        return ScoreRecord(*row) if row else None

    # -- run log ------------------------------------------------------------

    def append_run(self, run: RunRecord) -> None:
        with self._lock, self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO sync_run_log
                    (run_id, job_kind, started_at, finished_at, status,
                     records_seen, created, updated, skipped, errored, errors)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (run_id) DO NOTHING
                """,
                (
                    run.run_id, run.job_kind, run.started_at, run.finished_at,
                    run.status, run.records_seen, run.created, run.updated,
                    run.skipped, run.errored, json.dumps(run.errors),
                ),
            )

    def get_last_run(self, job_kind: str) -> RunRecord | None:
        from clubhouse_sync.run_log import RunRecord

        with self._lock:
            row = self._conn.execute(
                """
                SELECT run_id, job_kind, started_at, finished_at, status,
                       records_seen, created, updated, skipped, errored, errors
                FROM sync_run_log
                WHERE job_kind = %s
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (job_kind,),
            ).fetchone()
        if row is None:
            return None
        return RunRecord(
            run_id=row[0],
            job_kind=row[1],
            started_at=row[2],
            finished_at=row[3],
            status=row[4],
            records_seen=row[5],
            created=row[6],
            updated=row[7],
            skipped=row[8],
            errored=row[9],
            errors=list(row[10] or []),
        )


def _entity_from_row(row: tuple) -> CanonicalEntity:
    return CanonicalEntity(
        identity_key=row[0],
        display_name=row[1],
        country=row[2],
        world_ranking=row[3],
        points=row[4] if row[4] is not None else Decimal("0"),
        events_played=row[5] or 0,
        last_reconciled_at=row[6],
        data_source=row[7],
    )


def _competition_from_row(row: tuple) -> Competition:
    return Competition(
        competition_id=row[0],
        name=row[1],
        start_at=row[2],
        end_at=row[3],
        state=row[4],
        source_ref=row[5],
        created_at=row[6],
        updated_at=row[7],
    )
