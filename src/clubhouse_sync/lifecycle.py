"""clubhouse_sync.lifecycle

Tournament Lifecycle Automator.

State is a pure function of (current state, start, end, now):

    upcoming  --(start <= now <= end)-->  active
    active    --(end < now)----------->   completed
    upcoming  --(end < now)----------->   completed   (window missed entirely)

completed is terminal and no transition ever moves backward.  Changes are
applied with a compare-and-set on the stored state, so a sweep that races
another writer simply loses and reports nothing for that competition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from clubhouse_sync.shared import RunCounters
from clubhouse_sync.store import (
    ACTIVE,
    COMPLETED,
    STATE_ORDER,
    UPCOMING,
    Competition,
    Store,
)

log = logging.getLogger(__name__)


@dataclass
class LifecycleResult:
    activated: list[Competition] = field(default_factory=list)
    completed: list[Competition] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.activated) + len(self.completed)


def derive_state(current: str, start: datetime, end: datetime, now: datetime) -> str:
    """Return the state a competition should be in at now; never earlier than current.

    An upcoming competition whose whole window has passed goes straight to
    completed on purpose, rather than only completing competitions that
    were seen active; otherwise a missed competition stays upcoming forever.
    """
    if current == COMPLETED:
        return COMPLETED
    if end < now:
        target = COMPLETED
    elif start <= now:
        target = ACTIVE
    else:
        target = UPCOMING
    return target if STATE_ORDER[target] > STATE_ORDER[current] else current


def reconcile_lifecycle(
    store: Store,
    now: datetime,
    counters: RunCounters | None = None,
) -> LifecycleResult:
    """Move every non-terminal competition to its derived state.

    A store error on one competition is logged (and counted as errored
    when counters are given); the sweep continues with the rest.
    """
    result = LifecycleResult()
    for comp in store.list_competitions(states=(UPCOMING, ACTIVE)):
        if counters is not None:
            counters.add("competitions_processed")
        target = derive_state(comp.state, comp.start_at, comp.end_at, now)
        if target == comp.state:
            continue
        try:
            applied = store.transition_competition(comp.competition_id, comp.state, target, now)
        except Exception as exc:  # noqa: BLE001
            log.error("transition %s %s->%s failed: %s", comp.competition_id, comp.state, target, exc)
            if counters is not None:
                counters.add("errored")
                counters.warn(f"transition_error:{comp.competition_id}: {exc}")
            continue
        if not applied:
            log.info("transition %s %s->%s lost compare-and-set", comp.competition_id, comp.state, target)
            continue

        log.info("competition %s (%s): %s -> %s", comp.competition_id, comp.name, comp.state, target)
        moved = replace(comp, state=target, updated_at=now)
        if target == ACTIVE:
            result.activated.append(moved)
        else:
            result.completed.append(moved)
        if counters is not None:
            counters.add("updated")
    return result
