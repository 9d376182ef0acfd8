"""Tests for ringback.auth.session: token lifecycle, cooldown, retry and single-flight."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import StubTokenProvider

from ringback.auth.oauth import TokenGrant
from ringback.auth.session import (
    KEY_ACCESS_TOKEN,
    KEY_AUTH_IN_PROGRESS,
    TOKEN_REFRESH_ALARM,
    Session,
    SessionManager,
)
from ringback.config import SessionConfig
from ringback.core.clock import rfc3339
from ringback.errors import (
    AuthDenied,
    AuthExhausted,
    AuthRequired,
    AuthTransient,
    RefreshCooldownActive,
    RefreshTimeout,
)

pytestmark = pytest.mark.unit


class TestSessionModel:
    def test_from_storage_ignores_junk(self):
        session = Session.from_storage(
            {"oauth_token": "", "auth_refresh_attempts": "three", "token_expiry": "garbage"}
        )
        assert not session.authenticated
        assert session.refresh_attempt_count == 0
        assert session.expires_at is None

    def test_is_fresh_respects_margin(self, clock):
        session = Session(access_token="t", expires_at=clock() + timedelta(minutes=4))
        assert not session.is_fresh(clock(), timedelta(minutes=5))
        assert session.is_fresh(clock(), timedelta(minutes=3))

    def test_repr_redacts_token(self):
        session = Session(access_token="ya29.secret")
        assert "ya29.secret" not in repr(session)
        assert "<REDACTED>" in repr(session)


class TestGetToken:
    async def test_fresh_token_needs_no_network(self, make_session, seed_token):
        provider = StubTokenProvider()
        await seed_token(expires_in=3600)

        token = await make_session(provider).get_token()

        assert token == "cached-token"
        assert provider.calls == []

    async def test_signed_out_non_interactive_raises_without_network(self, make_session):
        provider = StubTokenProvider()

        with pytest.raises(AuthRequired):
            await make_session(provider).get_token()
        assert provider.calls == []

    async def test_interactive_sign_in_from_scratch(self, make_session, store):
        provider = StubTokenProvider(TokenGrant(access_token="fresh"))

        token = await make_session(provider).get_token(interactive=True)

        assert token == "fresh"
        assert provider.calls == [True]
        assert store.snapshot()[KEY_ACCESS_TOKEN] == "fresh"

    async def test_near_expiry_token_is_refreshed(self, make_session, seed_token, store, clock):
        provider = StubTokenProvider(TokenGrant(access_token="renewed", expires_in=3600))
        await seed_token(expires_in=60)

        token = await make_session(provider).get_token()

        assert token == "renewed"
        assert provider.calls == [False]
        snapshot = store.snapshot()
        assert snapshot["token_expiry"] == rfc3339(clock() + timedelta(seconds=3600))
        assert snapshot["auth_refresh_attempts"] == 0
        assert snapshot.get(KEY_AUTH_IN_PROGRESS) is None


class TestCooldown:
    async def test_recent_attempt_returns_cached_token(self, make_session, seed_token):
        provider = StubTokenProvider()
        await seed_token(expires_in=60, last_attempt_ago=10)

        token = await make_session(provider).get_token()

        assert token == "cached-token"
        assert provider.calls == []

    async def test_recent_attempt_without_token_fails_fast(self, make_session, store, clock):
        provider = StubTokenProvider()
        await store.set({"auth_last_refresh_attempt": rfc3339(clock() - timedelta(seconds=5))})

        with pytest.raises(RefreshCooldownActive):
            await make_session(provider).refresh(interactive=True)
        assert provider.calls == []

    async def test_cooldown_elapsed_allows_refresh(self, make_session, seed_token):
        provider = StubTokenProvider(TokenGrant(access_token="renewed"))
        await seed_token(expires_in=60, last_attempt_ago=31)

        assert await make_session(provider).get_token() == "renewed"

    async def test_user_sign_in_bypasses_cooldown(self, make_session, seed_token):
        provider = StubTokenProvider(TokenGrant(access_token="interactive"))
        await seed_token(expires_in=60, last_attempt_ago=5)

        assert await make_session(provider).sign_in() == "interactive"
        assert provider.calls == [True]


class TestRetry:
    async def test_transient_failure_then_success(self, make_session, seed_token, store, clock):
        provider = StubTokenProvider(
            AuthTransient("503"), TokenGrant(access_token="renewed")
        )
        await seed_token(expires_in=60)

        assert await make_session(provider).get_token() == "renewed"
        assert clock.sleeps == [1.0]
        assert store.snapshot()["auth_refresh_attempts"] == 0

    async def test_three_failures_sign_out(self, make_session, seed_token, store, clock):
        provider = StubTokenProvider(
            AuthTransient("503"), AuthTransient("503"), AuthTransient("503")
        )
        await seed_token(expires_in=60)
        manager = make_session(provider)

        with pytest.raises(AuthExhausted):
            await manager.get_token()

        assert provider.calls == [False, False, False]
        assert clock.sleeps == [1.0, 2.0]
        assert KEY_ACCESS_TOKEN not in store.snapshot()
        assert not await manager.is_authenticated()

        clock.advance(60)
        with pytest.raises(AuthRequired):
            await manager.get_token()
        assert len(provider.calls) == 3

    async def test_backoff_is_capped(self, store, timers, clock):
        config = SessionConfig(backoff_base_seconds=10, backoff_cap_seconds=15)
        manager = SessionManager(store, StubTokenProvider(), timers, config, clock=clock)
        assert manager._backoff_delay(1) == 10
        assert manager._backoff_delay(2) == 15
        assert manager._backoff_delay(5) == 15

    async def test_revoked_grant_clears_session(
        self, make_session, seed_token, store, timers, clock
    ):
        provider = StubTokenProvider(AuthRequired("invalid_grant"))
        await seed_token(expires_in=60)
        await timers.create(TOKEN_REFRESH_ALARM, when=clock())

        with pytest.raises(AuthRequired):
            await make_session(provider).get_token()

        assert KEY_ACCESS_TOKEN not in store.snapshot()
        assert await timers.get(TOKEN_REFRESH_ALARM) is None

    async def test_denied_keeps_session_and_clears_marker(self, make_session, seed_token, store):
        provider = StubTokenProvider(AuthDenied("unauthorized_client"))
        await seed_token(expires_in=60)

        with pytest.raises(AuthDenied):
            await make_session(provider).get_token()

        snapshot = store.snapshot()
        assert snapshot[KEY_ACCESS_TOKEN] == "cached-token"
        assert KEY_AUTH_IN_PROGRESS not in snapshot
        assert provider.calls == [False]

    async def test_denial_resets_failure_count(self, make_session, seed_token, store, clock):
        provider = StubTokenProvider(
            AuthTransient("503"),
            AuthTransient("503"),
            AuthDenied("access_denied"),
            AuthTransient("503"),
            TokenGrant(access_token="renewed"),
        )
        await seed_token(expires_in=60)
        manager = make_session(provider)

        with pytest.raises(AuthDenied):
            await manager.get_token()
        assert store.snapshot()["auth_refresh_attempts"] == 0

        clock.advance(60)
        assert await manager.get_token() == "renewed"
        assert clock.sleeps == [1.0, 2.0, 1.0]
        assert await manager.is_authenticated()


class _GatedProvider(StubTokenProvider):
    """Stub whose acquisition yields to the event loop a few times first."""

    async def acquire(self, *, interactive: bool) -> TokenGrant:
        for _ in range(3):
            await asyncio.sleep(0)
        return await super().acquire(interactive=interactive)


class _HeldProvider(StubTokenProvider):
    """Stub whose acquisition blocks until the test releases it."""

    def __init__(self, *results: TokenGrant | Exception) -> None:
        super().__init__(*results)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def acquire(self, *, interactive: bool) -> TokenGrant:
        self.entered.set()
        await self.release.wait()
        return await super().acquire(interactive=interactive)


class TestSingleFlight:
    async def test_concurrent_callers_share_one_refresh(self, make_session, seed_token):
        provider = _GatedProvider(TokenGrant(access_token="shared"))
        await seed_token(expires_in=60)
        manager = make_session(provider)

        results = await asyncio.gather(manager.get_token(), manager.get_token())

        assert results == ["shared", "shared"]
        assert provider.calls == [False]

    async def test_waits_for_refresh_in_another_process(self, store, timers, clock, seed_token):
        provider = StubTokenProvider()
        await seed_token(expires_in=60)
        await store.set({KEY_AUTH_IN_PROGRESS: rfc3339(clock() - timedelta(seconds=5))})

        async def _other_process_finishes(seconds: float) -> None:
            await clock.sleep(seconds)
            if len(clock.sleeps) == 3:
                await store.set({KEY_ACCESS_TOKEN: "foreign-token", KEY_AUTH_IN_PROGRESS: None})

        manager = SessionManager(
            store, provider, timers, clock=clock, sleep=_other_process_finishes
        )

        assert await manager.get_token() == "foreign-token"
        assert provider.calls == []

    async def test_foreign_refresh_wait_is_bounded(self, make_session, seed_token, store, clock):
        provider = StubTokenProvider()
        await seed_token(expires_in=60)
        await store.set({KEY_AUTH_IN_PROGRESS: rfc3339(clock())})

        with pytest.raises(RefreshTimeout):
            await make_session(provider).get_token()
        assert provider.calls == []
        assert sum(clock.sleeps) >= 30

    async def test_abandoned_marker_is_taken_over(
        self, make_session, seed_token, store, clock, caplog
    ):
        provider = StubTokenProvider(TokenGrant(access_token="taken-over"))
        await seed_token(expires_in=60)
        await store.set({KEY_AUTH_IN_PROGRESS: rfc3339(clock() - timedelta(seconds=90))})

        assert await make_session(provider).get_token() == "taken-over"
        assert "Taking over abandoned token refresh" in caplog.text


class TestRefreshAhead:
    async def test_alarm_scheduled_before_expiry(self, make_session, timers, clock):
        provider = StubTokenProvider(TokenGrant(access_token="t", expires_in=3600))

        await make_session(provider).sign_in()

        alarm = await timers.get(TOKEN_REFRESH_ALARM)
        assert alarm is not None
        assert alarm.fire_at == clock() + timedelta(seconds=3300)

    async def test_short_lived_token_schedules_immediately(self, make_session, timers, clock):
        provider = StubTokenProvider(TokenGrant(access_token="t", expires_in=120))

        await make_session(provider).sign_in()

        alarm = await timers.get(TOKEN_REFRESH_ALARM)
        assert alarm.fire_at == clock()

    async def test_alarm_ignored_when_signed_out(self, make_session):
        provider = StubTokenProvider()
        assert await make_session(provider).handle_refresh_alarm() is None
        assert provider.calls == []

    async def test_alarm_refreshes_signed_in_session(self, make_session, seed_token):
        provider = StubTokenProvider(TokenGrant(access_token="ahead"))
        await seed_token(expires_in=300)

        assert await make_session(provider).handle_refresh_alarm() == "ahead"


class TestSignOut:
    async def test_sign_out_revokes_and_clears(
        self, make_session, seed_token, store, timers, clock
    ):
        provider = StubTokenProvider()
        await seed_token()
        await timers.create(TOKEN_REFRESH_ALARM, when=clock())
        manager = make_session(provider)

        await manager.sign_out(revoke=True)

        assert provider.revoked == ["cached-token"]
        assert KEY_ACCESS_TOKEN not in store.snapshot()
        assert await timers.get(TOKEN_REFRESH_ALARM) is None
        assert not await manager.is_authenticated()

    async def test_sign_out_is_idempotent(self, make_session):
        provider = StubTokenProvider()
        manager = make_session(provider)

        await manager.sign_out(revoke=True)
        await manager.sign_out(revoke=True)

        assert provider.revoked == []

    async def test_sign_out_during_refresh_discards_new_token(
        self, make_session, seed_token, store, timers
    ):
        provider = _HeldProvider(TokenGrant(access_token="late"))
        await seed_token(expires_in=60)
        manager = make_session(provider)

        refresh = asyncio.create_task(manager.get_token())
        await provider.entered.wait()
        await manager.sign_out()
        provider.release.set()

        with pytest.raises(AuthRequired):
            await refresh

        snapshot = store.snapshot()
        assert KEY_ACCESS_TOKEN not in snapshot
        assert KEY_AUTH_IN_PROGRESS not in snapshot
        assert await timers.get(TOKEN_REFRESH_ALARM) is None
        assert not await manager.is_authenticated()

    async def test_status(self, make_session, seed_token, clock):
        await seed_token(expires_in=600)

        status = await make_session(StubTokenProvider()).status()

        assert status == {
            "authenticated": True,
            "expires_at": rfc3339(clock() + timedelta(seconds=600)),
            "refresh_in_progress": False,
            "authenticating": False,
            "refresh_attempt_count": 0,
            "provider": "stub",
        }
