"""Ringback service: wake routing, the poll cycle and the message protocol.

The service is rebuilt from the store on every process start.  Nothing here
relies on in-memory state surviving between wakes; every decision re-reads
the store.

Wakes
-----
``calendar_poll``
    Periodic.  Runs :meth:`RingbackService.poll`.
``token_refresh``
    One-shot refresh-ahead wake scheduled by the session manager.
``meeting::<event id>``
    One-shot alarm armed by the alarm scheduler; presents the alert.

Messages
--------
:meth:`RingbackService.handle_message` answers ``{"action": ...}`` requests
from a UI (popup, CLI) with a JSON-serialisable dict.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import httpx
from opentelemetry import trace
from pydantic import BaseModel, Field, ValidationError

from ringback.alarms import AlarmOutcome, AlarmScheduler, event_id_from_alarm
from ringback.auth.oauth import TokenProvider
from ringback.auth.session import TOKEN_REFRESH_ALARM, SessionManager
from ringback.calendar.collapse import ProcessedEventTracker, collapse
from ringback.calendar.fetcher import EventFetcher
from ringback.calendar.models import load_upcoming_events, save_upcoming_events
from ringback.config import RingbackConfig
from ringback.core.clock import Clock, Sleeper, rfc3339, utcnow
from ringback.core.logging import wake_context
from ringback.core.state import StateStore
from ringback.core.timers import TimerService
from ringback.dispatcher import NotificationDispatcher
from ringback.errors import (
    AuthDenied,
    AuthError,
    AuthExhausted,
    AuthRequired,
    AuthTransient,
    CalendarError,
    CalendarUnauthorizedError,
    PresentationError,
    PresentationFailed,
    build_structured_error,
)
from ringback.presenters import Presenter
from ringback.settings import Settings, SettingsStore

logger = logging.getLogger(__name__)

CALENDAR_POLL_ALARM = "calendar_poll"
LAST_POLL_KEY = "last_poll"


class PollStatus(StrEnum):
    OK = "ok"
    SIGNED_OUT = "signed_out"
    NEEDS_SIGN_IN = "needs_sign_in"
    FAILED = "failed"


class PollReport(BaseModel):
    """Summary of one poll cycle."""

    status: PollStatus
    polled_at: datetime
    events: int = 0
    partial: bool = False
    warnings: list[str] = Field(default_factory=list)
    outcomes: dict[str, AlarmOutcome] = Field(default_factory=dict)
    pruned: int = 0
    error: dict[str, Any] | None = None


class RingbackService:
    """Wires the session, fetcher, scheduler and dispatcher together."""

    def __init__(
        self,
        config: RingbackConfig,
        store: StateStore,
        timers: TimerService,
        session: SessionManager,
        fetcher: EventFetcher,
        tracker: ProcessedEventTracker,
        scheduler: AlarmScheduler,
        dispatcher: NotificationDispatcher,
        settings: SettingsStore,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config
        self.store = store
        self.timers = timers
        self.session = session
        self.fetcher = fetcher
        self.tracker = tracker
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.settings = settings
        self._clock = clock
        self._handlers: dict[str, Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]]] = {
            "refreshMeetings": self._msg_refresh_meetings,
            "authenticationUpdated": self._msg_refresh_meetings,
            "checkAuth": self._msg_check_auth,
            "signIn": self._msg_sign_in,
            "signOut": self._msg_sign_out,
            "getStatusUpdate": self._msg_status_update,
            "getUpcomingMeetings": self._msg_upcoming_meetings,
            "getSettings": self._msg_get_settings,
            "updateSettings": self._msg_update_settings,
            "notificationAction": self._msg_notification_action,
        }

    @classmethod
    def build(
        cls,
        config: RingbackConfig,
        store: StateStore,
        provider: TokenProvider,
        presenter: Presenter,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
        sleep: Sleeper = asyncio.sleep,
    ) -> RingbackService:
        """Assemble a service from configuration and its external collaborators."""
        timers = TimerService(store, clock=clock)
        session = SessionManager(store, provider, timers, config.session, clock=clock, sleep=sleep)
        fetcher = EventFetcher(session, config.poll, http_client=http_client)
        tracker = ProcessedEventTracker(
            store, retention=timedelta(days=config.alarms.processed_retention_days)
        )
        settings = SettingsStore(
            store, Settings(notification_lead_minutes=config.alarms.lead_minutes)
        )
        dispatcher = NotificationDispatcher(
            store,
            tracker,
            presenter,
            settings,
            config.alarms,
            overlay_url=config.presenter.overlay_url,
        )
        scheduler = AlarmScheduler(
            timers, tracker, dispatcher, settings, config.alarms, clock=clock
        )
        return cls(
            config,
            store,
            timers,
            session,
            fetcher,
            tracker,
            scheduler,
            dispatcher,
            settings,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load settings, register the poll wake and attempt a silent sign-in."""
        await self.settings.ensure_initialized()

        if await self.timers.get(CALENDAR_POLL_ALARM) is None:
            await self.timers.create(
                CALENDAR_POLL_ALARM,
                when=self._clock(),
                period_seconds=self.config.poll.interval_seconds,
            )
            logger.info(
                "Registered %s every %gs", CALENDAR_POLL_ALARM, self.config.poll.interval_seconds
            )

        provider = self.session.provider
        if provider.supports_silent_sign_in and not await self.session.is_authenticated():
            try:
                await self.session.sign_in()
            except AuthError as exc:
                logger.warning("Silent sign-in via %s failed: %s", provider.name, exc)

    async def shutdown(self) -> None:
        await self.fetcher.shutdown()
        await self.session.provider.shutdown()
        await self.store.close()

    # ------------------------------------------------------------------
    # Wakes
    # ------------------------------------------------------------------

    async def handle_wake(self, name: str) -> Any:
        """Route a fired alarm to its handler."""
        with wake_context(name):
            return await self._route_wake(name)

    async def _route_wake(self, name: str) -> Any:
        if name == CALENDAR_POLL_ALARM:
            return await self.poll()

        if name == TOKEN_REFRESH_ALARM:
            try:
                return await self.session.handle_refresh_alarm()
            except AuthError as exc:
                logger.warning("Refresh-ahead failed: %s", exc)
                return None

        event_id = event_id_from_alarm(name)
        if event_id is not None:
            try:
                return await self.dispatcher.dispatch(event_id)
            except PresentationFailed:
                return None

        logger.warning("Ignoring unknown wake %r", name)
        return None

    async def poll(self) -> PollReport:
        """Run one poll cycle and persist its report."""
        tracer = trace.get_tracer("ringback")
        with tracer.start_as_current_span("ringback.poll") as span:
            report = await self._poll()
            span.set_attribute("status", report.status.value)
            span.set_attribute("events", report.events)
        await self.store.set({LAST_POLL_KEY: report.model_dump(mode="json")})
        return report

    async def _poll(self) -> PollReport:
        now = self._clock()
        if not await self.session.is_authenticated():
            logger.debug("Poll skipped: not signed in")
            return PollReport(status=PollStatus.SIGNED_OUT, polled_at=now)

        window_end = now + timedelta(minutes=self.config.poll.lookahead_minutes)
        try:
            result = await self.fetcher.fetch_upcoming(now, window_end)
        except (CalendarUnauthorizedError, AuthRequired, AuthExhausted, AuthDenied) as exc:
            logger.warning("Poll needs sign-in: %s", exc)
            return PollReport(
                status=PollStatus.NEEDS_SIGN_IN, polled_at=now, error=build_structured_error(exc)
            )
        except (CalendarError, AuthTransient) as exc:
            logger.warning("Poll failed; will retry on the next cycle: %s", exc)
            return PollReport(
                status=PollStatus.FAILED, polled_at=now, error=build_structured_error(exc)
            )

        events = collapse(result.events)
        await save_upcoming_events(self.store, events)

        settings = await self.settings.load()
        outcomes: dict[str, AlarmOutcome] = {}
        for event in events:
            try:
                outcomes[event.id] = await self.scheduler.ensure_alarm(
                    event, now=now, settings=settings
                )
            except PresentationFailed:
                # Already marked processed; the alert is lost, not retried.
                outcomes[event.id] = AlarmOutcome.FIRED

        pruned = await self.tracker.prune(now, keep=(event.id for event in events))
        logger.info(
            "Poll complete: %d upcoming, %d scheduled or fired",
            len(events),
            sum(
                1
                for outcome in outcomes.values()
                if outcome in (AlarmOutcome.SCHEDULED, AlarmOutcome.FIRED)
            ),
        )
        return PollReport(
            status=PollStatus.OK,
            polled_at=now,
            events=len(events),
            partial=result.partial,
            warnings=[warning.message for warning in result.warnings],
            outcomes=outcomes,
            pruned=pruned,
        )

    # ------------------------------------------------------------------
    # Message protocol
    # ------------------------------------------------------------------

    async def handle_message(self, message: Mapping[str, Any]) -> dict[str, Any]:
        action = message.get("action") if isinstance(message, Mapping) else None
        handler = self._handlers.get(action) if isinstance(action, str) else None
        if handler is None:
            logger.warning("Unknown message action: %r", action)
            return {"success": False, "error": "unknown_action"}
        return await handler(message)

    async def _meetings(self) -> list[dict[str, Any]]:
        events = await load_upcoming_events(self.store)
        return [event.meeting_payload() for event in events]

    async def _msg_refresh_meetings(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        report = await self.poll()
        return {
            "success": report.status == PollStatus.OK,
            "status": report.status.value,
            "report": report.model_dump(mode="json"),
            "meetings": await self._meetings(),
        }

    async def _msg_check_auth(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        status = await self.session.status()
        return {"success": True, **status}

    async def _msg_sign_in(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        try:
            await self.session.sign_in()
        except AuthError as exc:
            logger.warning("Sign-in failed: %s", exc)
            return {"success": False, **build_structured_error(exc)}
        return {"success": True, **await self.session.status()}

    async def _msg_sign_out(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        await self.session.sign_out(revoke=True)
        return {"success": True}

    async def _msg_status_update(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        next_poll = await self.timers.get(CALENDAR_POLL_ALARM)
        return {
            "success": True,
            "auth": await self.session.status(),
            "last_poll": await self.store.get_value(LAST_POLL_KEY),
            "next_poll_at": rfc3339(next_poll.fire_at) if next_poll else None,
            "alarms": [
                {"name": alarm.name, "fire_at": rfc3339(alarm.fire_at)}
                for alarm in await self.timers.list_alarms()
            ],
        }

    async def _msg_upcoming_meetings(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        return {"success": True, "meetings": await self._meetings()}

    async def _msg_get_settings(self, _message: Mapping[str, Any]) -> dict[str, Any]:
        settings = await self.settings.load()
        return {"success": True, "settings": settings.model_dump(mode="json")}

    async def _msg_update_settings(self, message: Mapping[str, Any]) -> dict[str, Any]:
        changes = message.get("settings")
        if not isinstance(changes, Mapping):
            return {"success": False, "error": "settings must be an object"}
        try:
            settings = await self.settings.update(**changes)
        except (ValueError, ValidationError) as exc:
            return {"success": False, **build_structured_error(exc)}
        return {"success": True, "settings": settings.model_dump(mode="json")}

    async def _msg_notification_action(self, message: Mapping[str, Any]) -> dict[str, Any]:
        notification_id = message.get("notificationId")
        action = message.get("buttonAction")
        if not isinstance(notification_id, str) or not isinstance(action, str):
            return {"success": False, "error": "notificationId and buttonAction are required"}
        try:
            joined = await self.dispatcher.handle_notification_action(notification_id, action)
        except PresentationError as exc:
            return {"success": False, **build_structured_error(exc)}
        return {"success": True, "joined": joined}
