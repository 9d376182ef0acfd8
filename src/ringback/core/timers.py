"""Scheduled-wake timer service with durable, named alarms.

Alarms are kept in the state store under ``scheduled_alarms`` so they
survive process restarts: a process that is reconstituted for a wake reads
the alarm table, fires whatever is due and goes away again.

An alarm is either one-shot (``when``) or periodic (``period_seconds``,
optionally with a first ``when``).  Creating an alarm under an existing
name replaces it.  At each :meth:`TimerService.tick` due alarms are
consumed first (one-shot alarms removed, periodic ones advanced past *now*
without replaying missed periods) and persisted, and only then is the wake
callback invoked with each alarm's name.  A crash between consumption and
callback therefore loses a wake rather than repeating one.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ringback.core.clock import Clock, rfc3339, to_utc, utcnow
from ringback.core.state import StateStore

logger = logging.getLogger(__name__)

ALARMS_KEY = "scheduled_alarms"

WakeCallback = Callable[[str], Awaitable[Any]]


class Alarm(BaseModel):
    """A named, time-keyed wake request."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    fire_at: datetime
    period_seconds: float | None = Field(default=None, gt=0)

    @property
    def periodic(self) -> bool:
        return self.period_seconds is not None

    def to_storage(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "fire_at": rfc3339(self.fire_at),
            "period_seconds": self.period_seconds,
        }


class TimerService:
    """Durable alarm table with create/get/clear and a tick-driven dispatcher."""

    def __init__(self, store: StateStore, *, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _load(self) -> dict[str, Alarm]:
        raw = await self._store.get_value(ALARMS_KEY, {})
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed alarm table (type=%s)", type(raw).__name__)
            return {}
        alarms: dict[str, Alarm] = {}
        for name, payload in raw.items():
            try:
                alarm = Alarm.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Dropping unreadable alarm %r: %s", name, exc.errors()[0]["msg"])
                continue
            alarms[alarm.name] = alarm
        return alarms

    async def _save(self, alarms: dict[str, Alarm]) -> None:
        await self._store.set(
            {ALARMS_KEY: {name: alarm.to_storage() for name, alarm in alarms.items()}}
        )

    async def create(
        self,
        name: str,
        *,
        when: datetime | None = None,
        period_seconds: float | None = None,
    ) -> Alarm:
        """Register (or replace) the alarm *name*.

        Raises
        ------
        ValueError
            If neither *when* nor *period_seconds* is given.
        """
        if when is None and period_seconds is None:
            raise ValueError("an alarm needs a fire time, a period, or both")
        fire_at = (
            to_utc(when)
            if when is not None
            else self._clock() + timedelta(seconds=float(period_seconds or 0))
        )
        alarm = Alarm(name=name, fire_at=fire_at, period_seconds=period_seconds)
        async with self._lock:
            alarms = await self._load()
            alarms[name] = alarm
            await self._save(alarms)
        logger.debug("Alarm %s set for %s", name, rfc3339(alarm.fire_at))
        return alarm

    async def get(self, name: str) -> Alarm | None:
        alarms = await self._load()
        return alarms.get(name)

    async def clear(self, name: str) -> bool:
        """Remove the alarm *name*.  Returns True when something was removed."""
        async with self._lock:
            alarms = await self._load()
            if alarms.pop(name, None) is None:
                return False
            await self._save(alarms)
        logger.debug("Alarm %s cleared", name)
        return True

    async def list_alarms(self) -> list[Alarm]:
        alarms = await self._load()
        return sorted(alarms.values(), key=lambda alarm: alarm.fire_at)

    async def next_fire_at(self) -> datetime | None:
        alarms = await self.list_alarms()
        return alarms[0].fire_at if alarms else None

    async def due(self, now: datetime | None = None) -> list[Alarm]:
        """Alarms whose fire time has passed, earliest first.  Nothing is consumed."""
        current = to_utc(now) if now is not None else self._clock()
        return [alarm for alarm in await self.list_alarms() if alarm.fire_at <= current]

    async def _consume_due(self, now: datetime) -> list[Alarm]:
        async with self._lock:
            alarms = await self._load()
            due = sorted(
                (alarm for alarm in alarms.values() if alarm.fire_at <= now),
                key=lambda alarm: alarm.fire_at,
            )
            if not due:
                return []
            for alarm in due:
                if alarm.period_seconds is None:
                    del alarms[alarm.name]
                    continue
                elapsed = (now - alarm.fire_at).total_seconds()
                periods = math.floor(elapsed / alarm.period_seconds) + 1
                alarms[alarm.name] = alarm.model_copy(
                    update={
                        "fire_at": alarm.fire_at
                        + timedelta(seconds=periods * alarm.period_seconds)
                    }
                )
            await self._save(alarms)
        return due

    async def tick(self, callback: WakeCallback, *, now: datetime | None = None) -> int:
        """Fire every due alarm through *callback*.

        Callback failures are logged and do not stop the remaining alarms.

        Returns
        -------
        int
            The number of alarms whose callback completed without raising.
        """
        tracer = trace.get_tracer("ringback")
        with tracer.start_as_current_span("ringback.timers.tick") as span:
            current = to_utc(now) if now is not None else self._clock()
            due = await self._consume_due(current)
            span.set_attribute("alarms_due", len(due))

            fired = 0
            for alarm in due:
                try:
                    await callback(alarm.name)
                    fired += 1
                except Exception:
                    logger.exception("Wake callback failed for alarm %s", alarm.name)
            span.set_attribute("alarms_fired", fired)
            return fired
