"""Notification dispatcher: turns a fired meeting alarm into an alert.

The dispatcher is the only place that adds ids to the processed-event set,
and it does so before any presentation side effect.  A crash after marking
loses the alert; it never doubles it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from enum import StrEnum
from urllib.parse import quote

from opentelemetry import trace

from ringback.calendar.collapse import ProcessedEventTracker
from ringback.calendar.models import CalendarEvent, load_upcoming_events
from ringback.config import DEFAULT_OVERLAY_URL, AlarmConfig
from ringback.core.state import StateStore
from ringback.errors import PresentationFailed
from ringback.presenters import Presenter
from ringback.settings import SettingsStore

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Incoming Meeting"
JOIN_ACTION = "Join"
DISMISS_ACTION = "Dismiss"
NOTIFICATION_ACTIONS = (JOIN_ACTION, DISMISS_ACTION)
_NOTIFICATION_PREFIX = "meeting_"


class DispatchOutcome(StrEnum):
    SKIPPED_MISSING = "skipped_missing"
    SKIPPED_PROCESSED = "skipped_processed"
    PRESENTED = "presented"


def notification_id_for(event_id: str) -> str:
    return f"{_NOTIFICATION_PREFIX}{event_id}"


def build_overlay_url(base_url: str, event: CalendarEvent) -> str:
    """Overlay URL carrying the URL-encoded JSON meeting payload."""
    payload = json.dumps(event.meeting_payload(), separators=(",", ":"))
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}meeting={quote(payload, safe='')}"


class NotificationDispatcher:
    """Presents an event's alert at most once."""

    def __init__(
        self,
        store: StateStore,
        tracker: ProcessedEventTracker,
        presenter: Presenter,
        settings: SettingsStore,
        config: AlarmConfig | None = None,
        *,
        overlay_url: str = DEFAULT_OVERLAY_URL,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._presenter = presenter
        self._settings = settings
        self._config = config or AlarmConfig()
        self._overlay_url = overlay_url

    async def dispatch(self, event_id: str) -> DispatchOutcome:
        """Present the alert for *event_id* unless it is unknown or already shown.

        Raises
        ------
        PresentationFailed
            Neither the window nor the notification could be shown, or
            presentation did not finish within the dispatch timeout.
        """
        try:
            return await asyncio.wait_for(
                self._dispatch(event_id), timeout=self._config.dispatch_timeout_seconds
            )
        except TimeoutError as exc:
            logger.error("Dispatch for event %s timed out", event_id)
            raise PresentationFailed(f"Dispatch for event {event_id} timed out") from exc

    async def _dispatch(self, event_id: str) -> DispatchOutcome:
        tracer = trace.get_tracer("ringback")
        with tracer.start_as_current_span("ringback.dispatch") as span:
            span.set_attribute("event_id", event_id)

            events = await load_upcoming_events(self._store)
            event = next((candidate for candidate in events if candidate.id == event_id), None)
            if event is None:
                logger.info("Event %s is no longer upcoming; nothing to present", event_id)
                span.set_attribute("outcome", DispatchOutcome.SKIPPED_MISSING.value)
                return DispatchOutcome.SKIPPED_MISSING

            if not await self._tracker.mark_processed(event.id, event.end_at):
                logger.debug("Event %s already presented", event_id)
                span.set_attribute("outcome", DispatchOutcome.SKIPPED_PROCESSED.value)
                return DispatchOutcome.SKIPPED_PROCESSED

            settings = await self._settings.load()
            if settings.auto_join and event.conference_link:
                window_url = event.conference_link
            else:
                window_url = build_overlay_url(self._overlay_url, event)

            window_shown = await self._attempt(
                "window", event_id, self._presenter.create_window(window_url)
            )
            notification_shown = await self._attempt(
                "notification",
                event_id,
                self._presenter.create_notification(
                    notification_id_for(event.id),
                    NOTIFICATION_TITLE,
                    event.title,
                    NOTIFICATION_ACTIONS,
                ),
            )

            if not window_shown and not notification_shown:
                logger.error(
                    "Could not present event %s: window and notification both failed", event_id
                )
                span.set_attribute("outcome", "failed")
                raise PresentationFailed(f"Could not present event {event_id}")

            logger.info(
                "Presented event %s (window=%s, notification=%s)",
                event_id,
                window_shown,
                notification_shown,
            )
            span.set_attribute("outcome", DispatchOutcome.PRESENTED.value)
            return DispatchOutcome.PRESENTED

    async def _attempt(self, kind: str, event_id: str, presentation: Awaitable[None]) -> bool:
        try:
            await presentation
        except Exception as exc:
            logger.warning("Failed to create %s for event %s: %s", kind, event_id, exc)
            return False
        return True

    async def handle_notification_action(self, notification_id: str, action: str) -> bool:
        """React to a notification button.  Returns True when a join window opened."""
        if not notification_id.startswith(_NOTIFICATION_PREFIX):
            logger.debug("Ignoring action for foreign notification %s", notification_id)
            return False
        if action != JOIN_ACTION:
            return False

        event_id = notification_id[len(_NOTIFICATION_PREFIX) :]
        events = await load_upcoming_events(self._store)
        event = next((candidate for candidate in events if candidate.id == event_id), None)
        if event is None or not event.conference_link:
            logger.info("No join link known for event %s", event_id)
            return False
        await self._presenter.create_window(event.conference_link)
        return True
