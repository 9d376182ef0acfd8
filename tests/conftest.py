"""Shared fixtures for the ringback test suite.

Time never comes from the wall clock in tests: components take a ``clock``
callable and a ``sleep`` coroutine, and the fixtures here hand them a
:class:`FakeClock` whose sleeps advance the clock instead of waiting.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from ringback.auth.oauth import TokenGrant, TokenProvider
from ringback.auth.session import SessionManager
from ringback.calendar.collapse import ProcessedEventTracker
from ringback.calendar.models import CalendarEvent
from ringback.config import SessionConfig
from ringback.core.clock import rfc3339
from ringback.core.state import MemoryStateStore
from ringback.core.timers import TimerService
from ringback.dispatcher import NotificationDispatcher
from ringback.presenters import RecordingPresenter
from ringback.settings import SettingsStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock; ``sleep`` records the delay and advances time."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class StubTokenProvider(TokenProvider):
    """Provider that replays scripted grants or errors, one per ``acquire``."""

    def __init__(self, *results: TokenGrant | Exception, silent: bool = False) -> None:
        self.results = list(results)
        self.calls: list[bool] = []
        self.revoked: list[str] = []
        self._silent = silent

    @property
    def name(self) -> str:
        return "stub"

    @property
    def supports_silent_sign_in(self) -> bool:
        return self._silent

    async def acquire(self, *, interactive: bool) -> TokenGrant:
        self.calls.append(interactive)
        if not self.results:
            raise AssertionError("unexpected token acquisition")
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def revoke(self, access_token: str) -> None:
        self.revoked.append(access_token)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def timers(store: MemoryStateStore, clock: FakeClock) -> TimerService:
    return TimerService(store, clock=clock)


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig()


@pytest.fixture
def make_session(
    store: MemoryStateStore,
    timers: TimerService,
    clock: FakeClock,
    session_config: SessionConfig,
) -> Callable[..., SessionManager]:
    """Build a SessionManager around a StubTokenProvider."""

    def _make(provider: TokenProvider) -> SessionManager:
        return SessionManager(
            store, provider, timers, session_config, clock=clock, sleep=clock.sleep
        )

    return _make


@pytest.fixture
def seed_token(store: MemoryStateStore, clock: FakeClock) -> Callable[..., Any]:
    """Write a signed-in session straight into the store."""

    async def _seed(
        token: str = "cached-token",
        *,
        expires_in: float = 3600,
        last_attempt_ago: float | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "oauth_token": token,
            "token_expiry": rfc3339(clock() + timedelta(seconds=expires_in)),
            "auth_refresh_attempts": 0,
        }
        if last_attempt_ago is not None:
            values["auth_last_refresh_attempt"] = rfc3339(
                clock() - timedelta(seconds=last_attempt_ago)
            )
        await store.set(values)

    return _seed


@pytest.fixture
def make_event(clock: FakeClock) -> Callable[..., CalendarEvent]:
    """Factory for conference events starting relative to the fake clock."""

    def _make(
        event_id: str = "evt-1",
        *,
        starts_in: float = 180,
        duration: float = 1800,
        series: str | None = None,
        title: str = "Team Sync",
        link: str | None = "https://meet.google.com/abc-defg-hij",
    ) -> CalendarEvent:
        start = clock() + timedelta(seconds=starts_in)
        return CalendarEvent(
            id=event_id,
            recurring_series_id=series,
            start_at=start,
            end_at=start + timedelta(seconds=duration),
            title=title,
            conference_link=link,
        )

    return _make


@pytest.fixture
def google_event() -> Callable[..., dict[str, Any]]:
    """Factory for raw Google Calendar event payloads."""

    def _make(
        event_id: str = "evt-1",
        *,
        start: str = "2026-03-02T09:03:00Z",
        end: str = "2026-03-02T09:30:00Z",
        summary: str = "Team Sync",
        hangout_link: str | None = "https://meet.google.com/abc-defg-hij",
        **extra: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": event_id,
            "status": "confirmed",
            "summary": summary,
            "start": {"dateTime": start},
            "end": {"dateTime": end},
        }
        if hangout_link is not None:
            payload["hangoutLink"] = hangout_link
        payload.update(extra)
        return payload

    return _make


@pytest.fixture
def tracker(store: MemoryStateStore) -> ProcessedEventTracker:
    return ProcessedEventTracker(store)


@pytest.fixture
def settings_store(store: MemoryStateStore) -> SettingsStore:
    return SettingsStore(store)


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def dispatcher(
    store: MemoryStateStore,
    tracker: ProcessedEventTracker,
    presenter: RecordingPresenter,
    settings_store: SettingsStore,
) -> NotificationDispatcher:
    return NotificationDispatcher(store, tracker, presenter, settings_store)
