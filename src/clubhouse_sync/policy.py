"""clubhouse_sync.policy

Conflict resolution between a stored CanonicalEntity and an incoming
SourceRecord, plus the in-run combination of records that share an
identity key.

Both functions are pure: no I/O, no clock reads, no dependence on input
order.

Rules (merge_entity):
  ranking   -- a missing or UNRANKED incoming rank never replaces a known
               rank; otherwise the incoming rank is authoritative.
  country   -- adopted only when the stored country is unknown.
  counters  -- points / events_played take the incoming value when it is
               non-zero, else the stored value is kept.
  identity  -- identity_key and display_name are never rewritten.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from clubhouse_sync.normalize import (
    UNRANKED,
    is_ranked,
    is_unknown_country,
    normalize_name,
    normalize_space,
)
from clubhouse_sync.sources import SourceRecord
from clubhouse_sync.store import CanonicalEntity


# ---------------------------------------------------------------------------
# Rule 1: merge_entity
# ---------------------------------------------------------------------------

def merge_entity(
    existing: CanonicalEntity | None,
    incoming: SourceRecord,
    now: datetime,
) -> CanonicalEntity:
    """Return the entity that results from applying incoming to existing.

    When existing is None a new entity is built from the record alone.

    Raises:
        ValueError: If existing is None and the record's name normalizes
            to nothing.
    """
    if existing is None:
        key = normalize_name(incoming.raw_name)
        if key is None:
            raise ValueError(f"cannot derive identity key from {incoming.raw_name!r}")
        return CanonicalEntity(
            identity_key=key,
            display_name=normalize_space(incoming.raw_name) or key,
            country=None if is_unknown_country(incoming.country) else incoming.country,
            world_ranking=incoming.rank if is_ranked(incoming.rank) else UNRANKED,
            points=incoming.points or Decimal("0"),
            events_played=incoming.events_played or 0,
            last_reconciled_at=now,
            data_source=incoming.source_id,
        )

    if is_ranked(incoming.rank):
        ranking = incoming.rank
    else:
        ranking = existing.world_ranking

    if is_unknown_country(existing.country) and not is_unknown_country(incoming.country):
        country = incoming.country
    else:
        country = existing.country

    return CanonicalEntity(
        identity_key=existing.identity_key,
        display_name=existing.display_name,
        country=country,
        world_ranking=ranking,
        points=incoming.points if incoming.points else existing.points,
        events_played=(
            incoming.events_played if incoming.events_played else existing.events_played
        ),
        last_reconciled_at=now,
        data_source=incoming.source_id,
    )


# ---------------------------------------------------------------------------
# Rule 2: combine_records
# ---------------------------------------------------------------------------

def combine_records(records: Iterable[SourceRecord]) -> SourceRecord:
    """Fold same-key records of one run into a single record.

    best (lowest) rank, most frequent known country (ties alphabetical),
    largest counters.  Leaderboard fields come from the most recently
    fetched record.  The result does not depend on input order.

    Raises:
        ValueError: If records is empty.
    """
    recs = list(records)
    if not recs:
        raise ValueError("combine_records() needs at least one record")
    if len(recs) == 1:
        return recs[0]

    ranked = [r.rank for r in recs if is_ranked(r.rank)]
    if ranked:
        rank = min(ranked)
    elif any(r.rank == UNRANKED for r in recs):
        rank = UNRANKED
    else:
        rank = None

    countries = Counter(r.country for r in recs if not is_unknown_country(r.country))
    country = None
    if countries:
        country = sorted(countries.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    points = max((r.points for r in recs if r.points is not None), default=None)
    events = max((r.events_played for r in recs if r.events_played is not None), default=None)

    names = Counter(r.raw_name for r in recs)
    raw_name = sorted(names.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]

    latest = sorted(
        recs,
        key=lambda r: (
            -r.fetched_at.timestamp(),
            r.source_id,
            r.position or "",
            r.total_score if r.total_score is not None else 0,
        ),
    )[0]

    return SourceRecord(
        raw_name=raw_name,
        source_id=",".join(sorted({r.source_id for r in recs})),
        fetched_at=latest.fetched_at,
        country=country,
        rank=rank,
        points=points,
        events_played=events,
        position=latest.position,
        total_score=latest.total_score,
        competition_id=latest.competition_id,
    )
