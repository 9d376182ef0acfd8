"""Calendar access: event model, fetcher, recurrence collapsing and dedup."""

from ringback.calendar.collapse import PROCESSED_EVENTS_KEY, ProcessedEventTracker, collapse
from ringback.calendar.fetcher import (
    GOOGLE_CALENDAR_API_BASE_URL,
    EventFetcher,
    FetchResult,
    PaginationCapped,
)
from ringback.calendar.models import (
    UPCOMING_EVENTS_KEY,
    AttendeeInfo,
    AttendeeResponseStatus,
    CalendarEvent,
    load_upcoming_events,
    parse_google_event,
    resolve_conference_link,
    save_upcoming_events,
)

__all__ = [
    "AttendeeInfo",
    "AttendeeResponseStatus",
    "CalendarEvent",
    "EventFetcher",
    "FetchResult",
    "GOOGLE_CALENDAR_API_BASE_URL",
    "PROCESSED_EVENTS_KEY",
    "PaginationCapped",
    "ProcessedEventTracker",
    "UPCOMING_EVENTS_KEY",
    "collapse",
    "load_upcoming_events",
    "parse_google_event",
    "resolve_conference_link",
    "save_upcoming_events",
]
