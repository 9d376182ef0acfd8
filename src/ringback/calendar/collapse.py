"""Recurrence collapsing and the processed-event set.

A recurring series only ever rings for its next occurrence: :func:`collapse`
keeps the earliest occurrence of each series and lets one-off events through
untouched.

:class:`ProcessedEventTracker` remembers which event ids already produced an
alert.  The set lives in the store under ``processed_event_ids`` as a mapping
of event id to the event's end time so entries can be pruned once the
meeting is long over.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from ringback.calendar.models import CalendarEvent
from ringback.core.clock import parse_optional_timestamp, rfc3339
from ringback.core.state import StateStore

logger = logging.getLogger(__name__)

PROCESSED_EVENTS_KEY = "processed_event_ids"
DEFAULT_RETENTION = timedelta(days=7)


def collapse(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Keep one occurrence per recurring series.

    The survivor of a series is the occurrence with the earliest ``start_at``;
    on a tie the one seen first wins.  Survivors keep their original order.
    """
    ordered = list(events)
    earliest: dict[str, int] = {}
    for index, event in enumerate(ordered):
        series_id = event.recurring_series_id
        if series_id is None:
            continue
        current = earliest.get(series_id)
        if current is None or event.start_at < ordered[current].start_at:
            earliest[series_id] = index

    survivors = set(earliest.values())
    return [
        event
        for index, event in enumerate(ordered)
        if event.recurring_series_id is None or index in survivors
    ]


class ProcessedEventTracker:
    """Durable set of event ids that have already been presented."""

    def __init__(self, store: StateStore, *, retention: timedelta = DEFAULT_RETENTION) -> None:
        self._store = store
        self._retention = retention
        # Serializes read-modify-write of the stored mapping within this process.
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, str | None]:
        raw = await self._store.get_value(PROCESSED_EVENTS_KEY, {})
        if isinstance(raw, list):
            # Bare id lists carry no end time and are never pruned.
            return {str(event_id): None for event_id in raw}
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed %s value", PROCESSED_EVENTS_KEY)
            return {}
        return {
            str(event_id): end if isinstance(end, str) else None
            for event_id, end in raw.items()
        }

    async def processed_ids(self) -> set[str]:
        return set(await self._load())

    async def is_processed(self, event_id: str) -> bool:
        return event_id in await self._load()

    async def mark_processed(self, event_id: str, end_at: datetime | None = None) -> bool:
        """Add *event_id*.  Returns False when it was already present.

        The store write has completed when this returns.
        """
        async with self._lock:
            processed = await self._load()
            if event_id in processed:
                return False
            processed[event_id] = rfc3339(end_at) if end_at is not None else None
            await self._store.set({PROCESSED_EVENTS_KEY: processed})
            return True

    async def prune(self, now: datetime, *, keep: Iterable[str] = ()) -> int:
        """Drop ids whose event ended more than the retention window ago.

        Ids in *keep* (the events still upcoming) are never dropped, whatever
        their recorded end.
        """
        cutoff = now - self._retention
        still_upcoming = set(keep)
        async with self._lock:
            processed = await self._load()
            kept = {
                event_id: end
                for event_id, end in processed.items()
                if event_id in still_upcoming
                or (ended := parse_optional_timestamp(end)) is None
                or ended >= cutoff
            }
            removed = len(processed) - len(kept)
            if removed:
                await self._store.set({PROCESSED_EVENTS_KEY: kept})
                logger.debug(
                    "Pruned %d processed event ids older than %s", removed, rfc3339(cutoff)
                )
        return removed
