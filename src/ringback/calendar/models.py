"""Calendar event model and Google Calendar payload parsing."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ringback.core.clock import parse_timestamp, rfc3339
from ringback.core.state import StateStore
from ringback.errors import MalformedEventError

logger = logging.getLogger(__name__)

UPCOMING_EVENTS_KEY = "upcoming_events"
UNTITLED_MEETING = "Unnamed meeting"

# Meet, Zoom and Teams join URLs as they appear in free-text fields.
_CONFERENCE_URL_PATTERN = re.compile(
    r"https://(?:"
    r"meet\.google\.com/[a-z0-9-]+"
    r"|(?:[a-z0-9-]+\.)?zoom\.us/(?:j|my|w)/[^\s<>\"')]+"
    r"|teams\.microsoft\.com/l/meetup-join/[^\s<>\"')]+"
    r"|teams\.live\.com/meet/[^\s<>\"')]+"
    r")",
    re.IGNORECASE,
)


class AttendeeResponseStatus(StrEnum):
    """RSVP response status for a calendar event attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class AttendeeInfo(BaseModel):
    """One entry of an event's attendee list."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    email: str
    display_name: str | None = None
    response_status: AttendeeResponseStatus = AttendeeResponseStatus.needs_action
    organizer: bool = False
    self_: bool = Field(default=False, alias="self")


class CalendarEvent(BaseModel):
    """A single timed occurrence on the user's calendar."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    recurring_series_id: str | None = None
    start_at: datetime
    end_at: datetime
    title: str = UNTITLED_MEETING
    conference_link: str | None = None
    attendees: list[AttendeeInfo] = Field(default_factory=list)
    location: str | None = None
    description: str | None = None
    organizer: str | None = None

    @property
    def self_attendee(self) -> AttendeeInfo | None:
        return next((attendee for attendee in self.attendees if attendee.self_), None)

    @property
    def declined_by_self(self) -> bool:
        """True only when the user's own attendee entry says declined."""
        attendee = self.self_attendee
        return attendee is not None and attendee.response_status == AttendeeResponseStatus.declined

    def minutes_until_start(self, now: datetime) -> float:
        return (self.start_at - now).total_seconds() / 60.0

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def meeting_payload(self) -> dict[str, Any]:
        """The compact meeting description handed to the overlay window."""
        return {
            "id": self.id,
            "title": self.title,
            "startTime": rfc3339(self.start_at),
            "meetLink": self.conference_link,
            "attendees": [
                {
                    "email": attendee.email,
                    "name": attendee.display_name or attendee.email,
                    "responseStatus": attendee.response_status.value,
                    "organizer": attendee.organizer,
                }
                for attendee in self.attendees
            ],
        }


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _extract_google_attendees(payload: Any) -> list[AttendeeInfo]:
    """Parse a Google Calendar attendees array, skipping entries without an email."""
    if not isinstance(payload, list):
        return []

    attendees: list[AttendeeInfo] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue

        response_status = AttendeeResponseStatus.needs_action
        response_status_raw = entry.get("responseStatus")
        if isinstance(response_status_raw, str):
            try:
                response_status = AttendeeResponseStatus(response_status_raw.strip())
            except ValueError:
                pass

        attendees.append(
            AttendeeInfo(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=response_status,
                organizer=entry.get("organizer") is True,
                self_=entry.get("self") is True,
            )
        )
    return attendees


def _extract_google_organizer(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    return _normalize_optional_text(payload.get("email"))


def find_conference_url(text: str | None) -> str | None:
    """Return the first Meet/Zoom/Teams join URL found in *text*."""
    if not text:
        return None
    match = _CONFERENCE_URL_PATTERN.search(text)
    return match.group(0) if match else None


def resolve_conference_link(payload: dict[str, Any]) -> str | None:
    """Pick the join URL for a raw Google event.

    Order: ``hangoutLink``, the first ``video`` conference entry point, then a
    recognised conference URL in the location or the description.
    """
    hangout_link = _normalize_optional_text(payload.get("hangoutLink"))
    if hangout_link:
        return hangout_link

    conference = payload.get("conferenceData")
    if isinstance(conference, dict):
        entry_points = conference.get("entryPoints")
        if isinstance(entry_points, list):
            for entry in entry_points:
                if not isinstance(entry, dict) or entry.get("entryPointType") != "video":
                    continue
                uri = _normalize_optional_text(entry.get("uri"))
                if uri:
                    return uri

    return find_conference_url(
        _normalize_optional_text(payload.get("location"))
    ) or find_conference_url(_normalize_optional_text(payload.get("description")))


def _parse_event_boundary(event_id: str, name: str, payload: Any) -> datetime | None:
    """Parse a start/end object; None means all-day (``date`` only)."""
    if not isinstance(payload, dict):
        raise MalformedEventError(f"Event {event_id!r} is missing its {name} payload")
    date_time = payload.get("dateTime")
    if date_time is None:
        if isinstance(payload.get("date"), str):
            return None
        raise MalformedEventError(f"Event {event_id!r} has neither {name}.dateTime nor {name}.date")
    if not isinstance(date_time, str):
        raise MalformedEventError(f"Event {event_id!r} has a non-string {name}.dateTime")
    try:
        return parse_timestamp(date_time)
    except ValueError as exc:
        raise MalformedEventError(
            f"Event {event_id!r} has an invalid {name}.dateTime: {date_time}"
        ) from exc


def parse_google_event(payload: Any) -> CalendarEvent | None:
    """Convert one raw Google Calendar event into a :class:`CalendarEvent`.

    Returns None for events that can never ring (cancelled or all-day).

    Raises
    ------
    MalformedEventError
        The payload lacks an id or usable start/end timestamps.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError(f"Event payload is not an object ({type(payload).__name__})")

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise MalformedEventError("Event payload is missing a non-empty id")

    status = payload.get("status")
    if isinstance(status, str) and status.lower() == "cancelled":
        return None

    start_at = _parse_event_boundary(event_id, "start", payload.get("start"))
    end_at = _parse_event_boundary(event_id, "end", payload.get("end"))
    if start_at is None or end_at is None:
        return None
    if end_at < start_at:
        raise MalformedEventError(f"Event {event_id!r} ends before it starts")

    return CalendarEvent(
        id=event_id,
        recurring_series_id=_normalize_optional_text(payload.get("recurringEventId")),
        start_at=start_at,
        end_at=end_at,
        title=_normalize_optional_text(payload.get("summary")) or UNTITLED_MEETING,
        conference_link=resolve_conference_link(payload),
        attendees=_extract_google_attendees(payload.get("attendees")),
        location=_normalize_optional_text(payload.get("location")),
        description=_normalize_optional_text(payload.get("description")),
        organizer=_extract_google_organizer(payload.get("organizer")),
    )


async def load_upcoming_events(store: StateStore) -> list[CalendarEvent]:
    """Read the last poll's event snapshot, skipping unreadable entries."""
    raw = await store.get_value(UPCOMING_EVENTS_KEY, [])
    if not isinstance(raw, list):
        return []
    events: list[CalendarEvent] = []
    for entry in raw:
        try:
            events.append(CalendarEvent.model_validate(entry))
        except ValidationError:
            logger.warning("Dropping unreadable entry from %s snapshot", UPCOMING_EVENTS_KEY)
    return events


async def save_upcoming_events(store: StateStore, events: Iterable[CalendarEvent]) -> None:
    """Replace the snapshot with *events*."""
    await store.set({UPCOMING_EVENTS_KEY: [event.to_storage() for event in events]})
