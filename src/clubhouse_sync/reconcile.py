"""clubhouse_sync.reconcile

Entity Reconciler: resolves SourceRecords to canonical entities and writes
the merged result.

Matching, in order:
  1. exact      -- normalize_name(raw_name) equals a stored identity_key
  2. fuzzy      -- best similarity(key, candidate) >= fuzzy_threshold, and
                   no other candidate scores within fuzzy_margin of it
  3. create     -- no match, or an ambiguous fuzzy match (logged at WARNING)

Writes for one identity key are serialized by KeyedLocks.  When a fuzzy
match redirects a record to another key, that key's lock is taken while the
record's own lock is still held.  A redirect target always exists in the
store already, and a record whose key exists exactly never takes a second
lock, so the nesting cannot deadlock.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Callable, Iterable, Iterator

from clubhouse_sync.normalize import normalize_name, parse_position, validate_name
from clubhouse_sync.policy import combine_records, merge_entity
from clubhouse_sync.shared import AmbiguousMatchError, RunCounters
from clubhouse_sync.sources import SourceRecord
from clubhouse_sync.store import CanonicalEntity, ScoreRecord, Store

log = logging.getLogger(__name__)

Similarity = Callable[[str, str], float]

# ---------------------------------------------------------------------------
# Similarity functions
# ---------------------------------------------------------------------------

def _trigrams(value: str) -> set[str]:
    grams: set[str] = set()
    for word in value.split():
        padded = f"  {word} "
        grams.update(padded[i:i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard similarity of word-padded character trigrams (pg_trgm style)."""
    ta, tb = _trigrams(a), _trigrams(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def sequence_similarity(a: str, b: str) -> float:
    """difflib ratio; more forgiving of transposed or dropped letters."""
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


SIMILARITY_FUNCTIONS: dict[str, Similarity] = {
    "trigram": trigram_similarity,
    "sequence": sequence_similarity,
}


# ---------------------------------------------------------------------------
# KeyedLocks
# ---------------------------------------------------------------------------

class KeyedLocks:
    """One lock per identity key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

class ReconcileAction:
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ReconcileOutcome:
    action: str
    entity: CanonicalEntity | None
    matched_by: str | None = None   # 'exact' | 'fuzzy' | None
    ambiguous: bool = False
    reason: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# EntityReconciler
# ---------------------------------------------------------------------------

class EntityReconciler:
    def __init__(
        self,
        store: Store,
        similarity: Similarity = sequence_similarity,
        fuzzy_threshold: float = 0.85,
        fuzzy_margin: float = 0.05,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.similarity = similarity
        self.fuzzy_threshold = fuzzy_threshold
        self.fuzzy_margin = fuzzy_margin
        self._clock = clock
        self._locks = KeyedLocks()
        self._index_lock = threading.Lock()
        self._index: set[str] | None = None

    # -- fuzzy index --------------------------------------------------------

    def _known_keys(self) -> list[str]:
        with self._index_lock:
            if self._index is None:
                self._index = set(self.store.list_identity_keys())
            return sorted(self._index)

    def _remember(self, key: str) -> None:
        with self._index_lock:
            if self._index is not None:
                self._index.add(key)

    def fuzzy_match(self, key: str) -> tuple[str, float] | None:
        """Return (identity_key, score) of an unambiguous fuzzy match.

        Raises:
            AmbiguousMatchError: The best candidate clears the threshold but
                another candidate scores within fuzzy_margin of it.
        """
        scored = sorted(
            ((cand, self.similarity(key, cand)) for cand in self._known_keys() if cand != key),
            key=lambda kv: (-kv[1], kv[0]),
        )
        if not scored or scored[0][1] < self.fuzzy_threshold:
            return None
        best_key, best_score = scored[0]
        rivals = [kv for kv in scored[1:] if best_score - kv[1] <= self.fuzzy_margin]
        if rivals:
            raise AmbiguousMatchError(key, [scored[0], *rivals[:4]])
        return best_key, best_score

    # -- single record ------------------------------------------------------

    def reconcile(self, record: SourceRecord) -> ReconcileOutcome:
        """Match, merge and upsert one record.

        Store errors propagate; reconcile_batch() counts them.
        """
        reason = validate_name(record.raw_name)
        key = normalize_name(record.raw_name) if reason is None else None
        if key is None:
            return ReconcileOutcome(ReconcileAction.SKIPPED, None, reason=reason or "empty_name")

        with self._locks.hold(key):
            existing = self.store.get_entity(key)
            if existing is not None:
                return self._apply(existing, record, "exact")

            try:
                match = self.fuzzy_match(key)
            except AmbiguousMatchError as exc:
                log.warning("%s; creating new entity %r", exc, key)
                outcome = self._apply(None, record, None)
                return ReconcileOutcome(outcome.action, outcome.entity, None, ambiguous=True)

            if match is None:
                return self._apply(None, record, None)

            target_key, score = match
            log.info("fuzzy match %r -> %r (score=%.3f)", key, target_key, score)
            with self._locks.hold(target_key):
                existing = self.store.get_entity(target_key)
                return self._apply(existing, record, "fuzzy" if existing else None)

    def _apply(
        self,
        existing: CanonicalEntity | None,
        record: SourceRecord,
        matched_by: str | None,
    ) -> ReconcileOutcome:
        merged = merge_entity(existing, record, self._clock())
        self.store.upsert_entity(merged)
        if existing is None:
            self._remember(merged.identity_key)
            return ReconcileOutcome(ReconcileAction.CREATED, merged, None)
        return ReconcileOutcome(ReconcileAction.UPDATED, merged, matched_by)

    # -- batches ------------------------------------------------------------

    def reconcile_batch(
        self,
        records: Iterable[SourceRecord],
        counters: RunCounters,
        cancel: threading.Event | None = None,
    ) -> list[ReconcileOutcome]:
        """Group by identity key, combine each group, then reconcile it.

        Records with implausible names are counted as skipped.  A store
        error on one group is counted as errored and the batch continues.
        If cancel is set, remaining groups are left untouched.
        """
        groups = self._group(records, counters)
        outcomes: list[ReconcileOutcome] = []
        for key in sorted(groups):
            if cancel is not None and cancel.is_set():
                counters.warn(f"reconcile cancelled with {len(groups) - len(outcomes)} keys pending")
                break
            combined = combine_records(groups[key])
            try:
                outcome = self.reconcile(combined)
            except Exception as exc:  # noqa: BLE001
                log.error("store write failed for %r: %s", key, exc)
                counters.add("errored")
                counters.warn(f"store_error:{key}: {exc}")
                continue
            self._count(outcome, counters)
            outcomes.append(outcome)
        return outcomes

    def reconcile_scores(
        self,
        competition_id: str,
        records: Iterable[SourceRecord],
        counters: RunCounters,
        cancel: threading.Event | None = None,
    ) -> int:
        """Reconcile leaderboard rows and upsert one ScoreRecord per entity.

        Returns the number of scores written.
        """
        groups = self._group(records, counters)
        written = 0
        for key in sorted(groups):
            if cancel is not None and cancel.is_set():
                counters.warn(f"{competition_id}: score reconcile cancelled")
                break
            combined = combine_records(groups[key])
            try:
                outcome = self.reconcile(combined)
                self._count(outcome, counters)
                if outcome.entity is None:
                    continue
                _, position_rank = parse_position(combined.position)
                self.store.upsert_score(ScoreRecord(
                    competition_id=competition_id,
                    identity_key=outcome.entity.identity_key,
                    position=combined.position,
                    position_rank=position_rank,
                    total_score=combined.total_score,
                    updated_at=self._clock(),
                ))
            except Exception as exc:  # noqa: BLE001
                log.error("score write failed for %s/%r: %s", competition_id, key, exc)
                counters.add("errored")
                counters.warn(f"score_error:{competition_id}:{key}: {exc}")
                continue
            written += 1
            counters.add("scores_upserted")
        return written

    def _group(
        self,
        records: Iterable[SourceRecord],
        counters: RunCounters,
    ) -> dict[str, list[SourceRecord]]:
        groups: dict[str, list[SourceRecord]] = defaultdict(list)
        for rec in records:
            counters.add("records_seen")
            key = normalize_name(rec.raw_name) if validate_name(rec.raw_name) is None else None
            if key is None:
                counters.add("skipped")
                continue
            groups[key].append(rec)
        return groups

    @staticmethod
    def _count(outcome: ReconcileOutcome, counters: RunCounters) -> None:
        counters.add(outcome.action)
        if outcome.matched_by == "fuzzy":
            counters.add("fuzzy_matches")
        if outcome.ambiguous:
            counters.add("ambiguous_matches")
