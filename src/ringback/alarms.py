"""Per-event alarm scheduling.

Each upcoming event moves through ``Unscheduled -> Scheduled -> Fired`` or
straight from ``Unscheduled`` to ``Fired``, and never back.  The processed
set is authoritative for ``Fired``; the timer service is authoritative for
``Scheduled``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import StrEnum

from ringback.calendar.collapse import ProcessedEventTracker
from ringback.calendar.models import CalendarEvent
from ringback.config import AlarmConfig
from ringback.core.clock import Clock, rfc3339, utcnow
from ringback.core.timers import TimerService
from ringback.dispatcher import NotificationDispatcher
from ringback.settings import Settings, SettingsStore

logger = logging.getLogger(__name__)

MEETING_ALARM_PREFIX = "meeting::"


class AlarmOutcome(StrEnum):
    TOO_EARLY = "too_early"
    ALREADY_SCHEDULED = "already_scheduled"
    SCHEDULED = "scheduled"
    FIRED = "fired"


def alarm_name_for(event_id: str) -> str:
    return f"{MEETING_ALARM_PREFIX}{event_id}"


def event_id_from_alarm(name: str) -> str | None:
    """Return the event id encoded in a meeting alarm name, else None."""
    if not name.startswith(MEETING_ALARM_PREFIX):
        return None
    event_id = name[len(MEETING_ALARM_PREFIX) :]
    return event_id or None


class AlarmScheduler:
    """Decides, per event, whether to wait, arm an alarm or ring right away."""

    def __init__(
        self,
        timers: TimerService,
        tracker: ProcessedEventTracker,
        dispatcher: NotificationDispatcher,
        settings: SettingsStore,
        config: AlarmConfig | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._timers = timers
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._settings = settings
        self._config = config or AlarmConfig()
        self._clock = clock

    async def ensure_alarm(
        self,
        event: CalendarEvent,
        *,
        now: datetime | None = None,
        settings: Settings | None = None,
    ) -> AlarmOutcome:
        """Make sure *event* will ring exactly once.

        Raises
        ------
        PresentationFailed
            The alert was due immediately and could not be shown.
        """
        if await self._tracker.is_processed(event.id):
            return AlarmOutcome.FIRED

        current = now or self._clock()
        if settings is None:
            settings = await self._settings.load()
        if event.minutes_until_start(current) > settings.notification_lead_minutes:
            return AlarmOutcome.TOO_EARLY

        name = alarm_name_for(event.id)
        if await self._timers.get(name) is not None:
            return AlarmOutcome.ALREADY_SCHEDULED

        fire_at = event.start_at - timedelta(seconds=self._config.lead_offset_seconds)
        if fire_at <= current:
            logger.info("Event %s is due now; dispatching immediately", event.id)
            await self._dispatcher.dispatch(event.id)
            return AlarmOutcome.FIRED

        await self._timers.create(name, when=fire_at)
        logger.info("Scheduled alarm %s for %s", name, rfc3339(fire_at))
        return AlarmOutcome.SCHEDULED
