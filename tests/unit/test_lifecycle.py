"""Unit tests for clubhouse_sync.lifecycle."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clubhouse_sync.lifecycle import derive_state, reconcile_lifecycle
from clubhouse_sync.shared import RunCounters
from clubhouse_sync.store import ACTIVE, COMPLETED, UPCOMING, Competition, MemoryStore

T0 = datetime(2025, 4, 10, 8, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


def _store(*comps: Competition) -> MemoryStore:
    store = MemoryStore()
    for c in comps:
        store.upsert_competition(c)
    return store


def _comp(cid="masters-2025", start=T0, end=T0 + 3 * DAY, state=UPCOMING) -> Competition:
    return Competition(cid, cid.replace("-", " ").title(), start, end, state=state)


# ---------------------------------------------------------------------------
# derive_state
# ---------------------------------------------------------------------------

class TestDeriveState:
    @pytest.mark.parametrize("now,expected", [
        (T0 - DAY, UPCOMING),
        (T0, ACTIVE),
        (T0 + DAY, ACTIVE),
        (T0 + 3 * DAY, ACTIVE),
        (T0 + 4 * DAY, COMPLETED),
    ])
    def test_from_upcoming(self, now, expected):
        assert derive_state(UPCOMING, T0, T0 + 3 * DAY, now) == expected

    def test_completed_is_terminal(self):
        assert derive_state(COMPLETED, T0, T0 + 3 * DAY, T0 + DAY) == COMPLETED

    def test_never_moves_backward(self):
        assert derive_state(ACTIVE, T0, T0 + 3 * DAY, T0 - DAY) == ACTIVE


# ---------------------------------------------------------------------------
# reconcile_lifecycle
# ---------------------------------------------------------------------------

class TestReconcileLifecycle:
    def test_full_lifecycle(self):
        store = _store(_comp())

        first = reconcile_lifecycle(store, T0 + DAY)
        assert [c.competition_id for c in first.activated] == ["masters-2025"]
        assert store.competitions["masters-2025"].state == ACTIVE

        second = reconcile_lifecycle(store, T0 + 4 * DAY)
        assert [c.competition_id for c in second.completed] == ["masters-2025"]
        assert store.competitions["masters-2025"].state == COMPLETED

        third = reconcile_lifecycle(store, T0 + 5 * DAY)
        assert third.changed == 0
        assert store.competitions["masters-2025"].state == COMPLETED

    def test_missed_window_goes_straight_to_completed(self):
        store = _store(_comp())
        result = reconcile_lifecycle(store, T0 + 10 * DAY)
        assert result.activated == []
        assert len(result.completed) == 1
        assert store.competitions["masters-2025"].state == COMPLETED

    def test_future_competition_untouched(self):
        store = _store(_comp(start=T0 + 7 * DAY, end=T0 + 10 * DAY))
        assert reconcile_lifecycle(store, T0).changed == 0
        assert store.competitions["masters-2025"].state == UPCOMING

    def test_updated_at_stamped(self):
        store = _store(_comp())
        reconcile_lifecycle(store, T0 + DAY)
        assert store.competitions["masters-2025"].updated_at == T0 + DAY

    def test_counters(self):
        store = _store(
            _comp("a"),
            _comp("b", start=T0 + 7 * DAY, end=T0 + 8 * DAY),
            _comp("c", state=COMPLETED),
        )
        counters = RunCounters()
        reconcile_lifecycle(store, T0 + DAY, counters)
        assert counters.competitions_processed == 2
        assert counters.updated == 1

    def test_lost_compare_and_set_reports_nothing(self):
        class RacingStore(MemoryStore):
            def transition_competition(self, competition_id, from_state, to_state, now):
                super().transition_competition(competition_id, from_state, COMPLETED, now)
                return super().transition_competition(competition_id, from_state, to_state, now)

        store = RacingStore()
        store.upsert_competition(_comp())
        result = reconcile_lifecycle(store, T0 + DAY)
        assert result.changed == 0
        assert store.competitions["masters-2025"].state == COMPLETED

    def test_store_error_isolated(self):
        class FlakyStore(MemoryStore):
            def transition_competition(self, competition_id, from_state, to_state, now):
                if competition_id == "a":
                    raise RuntimeError("connection reset")
                return super().transition_competition(competition_id, from_state, to_state, now)

        store = FlakyStore()
        store.upsert_competition(_comp("a"))
        store.upsert_competition(_comp("b"))
        counters = RunCounters()
        result = reconcile_lifecycle(store, T0 + DAY, counters)
        assert [c.competition_id for c in result.activated] == ["b"]
        assert counters.errored == 1
