"""Tests for recurrence collapsing and the processed-event set."""

from __future__ import annotations

from datetime import timedelta

import pytest

from ringback.calendar.collapse import PROCESSED_EVENTS_KEY, ProcessedEventTracker, collapse

pytestmark = pytest.mark.unit


class TestCollapse:
    def test_keeps_earliest_occurrence_of_series(self, make_event):
        # Fetched out of order: 09:00, 09:30, 08:30 of one series.
        events = [
            make_event("occ-0900", starts_in=0, series="S123"),
            make_event("occ-0930", starts_in=1800, series="S123"),
            make_event("occ-0830", starts_in=-1800, series="S123"),
        ]

        assert [event.id for event in collapse(events)] == ["occ-0830"]

    def test_one_off_events_untouched(self, make_event):
        events = [make_event("a"), make_event("b"), make_event("c", series="S1")]
        assert [event.id for event in collapse(events)] == ["a", "b", "c"]

    def test_survivors_keep_original_order(self, make_event):
        events = [
            make_event("solo", starts_in=900),
            make_event("s1-late", starts_in=600, series="S1"),
            make_event("s2", starts_in=60, series="S2"),
            make_event("s1-early", starts_in=120, series="S1"),
        ]
        assert [event.id for event in collapse(events)] == ["solo", "s2", "s1-early"]

    def test_tie_goes_to_first_seen(self, make_event):
        events = [
            make_event("first", starts_in=60, series="S1"),
            make_event("second", starts_in=60, series="S1"),
        ]
        assert [event.id for event in collapse(events)] == ["first"]

    def test_empty(self):
        assert collapse([]) == []


class TestProcessedEventTracker:
    async def test_mark_is_idempotent(self, tracker, clock):
        assert await tracker.mark_processed("evt-1", clock()) is True
        assert await tracker.mark_processed("evt-1", clock()) is False
        assert await tracker.is_processed("evt-1")
        assert await tracker.processed_ids() == {"evt-1"}

    async def test_persisted_as_id_to_end_map(self, tracker, store, clock):
        await tracker.mark_processed("evt-1", clock())
        await tracker.mark_processed("evt-2")

        assert store.snapshot()[PROCESSED_EVENTS_KEY] == {
            "evt-1": "2026-03-02T09:00:00Z",
            "evt-2": None,
        }

    async def test_legacy_id_list_is_read(self, store):
        await store.set({PROCESSED_EVENTS_KEY: ["old-1", "old-2"]})
        tracker = ProcessedEventTracker(store)
        assert await tracker.processed_ids() == {"old-1", "old-2"}

    async def test_prune_drops_only_old_entries(self, tracker, clock):
        await tracker.mark_processed("ended-last-week", clock() - timedelta(days=8))
        await tracker.mark_processed("ended-yesterday", clock() - timedelta(days=1))
        await tracker.mark_processed("undated")

        assert await tracker.prune(clock()) == 1
        assert await tracker.processed_ids() == {"ended-yesterday", "undated"}

    async def test_prune_with_custom_retention(self, store, clock):
        tracker = ProcessedEventTracker(store, retention=timedelta(hours=1))
        await tracker.mark_processed("ended-two-hours-ago", clock() - timedelta(hours=2))

        assert await tracker.prune(clock()) == 1
        assert await tracker.processed_ids() == set()

    async def test_prune_keeps_ids_still_upcoming(self, tracker, clock):
        await tracker.mark_processed("still-listed", clock() - timedelta(days=8))
        await tracker.mark_processed("gone", clock() - timedelta(days=8))

        assert await tracker.prune(clock(), keep=["still-listed"]) == 1
        assert await tracker.processed_ids() == {"still-listed"}
