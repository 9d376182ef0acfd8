"""OAuth session lifecycle.

:class:`SessionManager` keeps a usable access token available to the rest of
ringback.  It owns the persisted :class:`Session` and layers three guards on
top of the one-shot :class:`~ringback.auth.oauth.TokenProvider`:

Cooldown
    A refresh attempted within ``cooldown_seconds`` of the previous one
    returns the cached (possibly stale) token instead of hitting the network,
    or fails fast with :class:`RefreshCooldownActive` when there is no token.

Single-flight
    Concurrent callers in this process share one refresh task.  Across
    processes the ``auth_in_progress`` key records the start of an in-flight
    refresh; other processes poll the store until it clears, for at most
    ``wait_timeout_seconds``.  A marker older than that bound is considered
    abandoned and taken over.

Retry
    Only :class:`AuthTransient` failures are retried, with capped exponential
    backoff.  Hitting ``max_refresh_attempts`` signs the session out and
    raises :class:`AuthExhausted`.

All session fields are written back to the store on every mutation; nothing
is cached across suspension points.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from ringback.auth.oauth import TokenProvider
from ringback.config import SessionConfig
from ringback.core.clock import Clock, Sleeper, parse_optional_timestamp, rfc3339, utcnow
from ringback.core.state import StateStore
from ringback.core.timers import TimerService
from ringback.errors import (
    AuthDenied,
    AuthExhausted,
    AuthRequired,
    AuthTransient,
    RefreshCooldownActive,
    RefreshTimeout,
)

logger = logging.getLogger(__name__)

KEY_ACCESS_TOKEN = "oauth_token"
KEY_TOKEN_EXPIRY = "token_expiry"
KEY_AUTH_IN_PROGRESS = "auth_in_progress"
KEY_LAST_REFRESH_ATTEMPT = "auth_last_refresh_attempt"
KEY_REFRESH_ATTEMPTS = "auth_refresh_attempts"
SESSION_KEYS = (
    KEY_ACCESS_TOKEN,
    KEY_TOKEN_EXPIRY,
    KEY_AUTH_IN_PROGRESS,
    KEY_LAST_REFRESH_ATTEMPT,
    KEY_REFRESH_ATTEMPTS,
)

TOKEN_REFRESH_ALARM = "token_refresh"


class Session(BaseModel):
    """Credential state persisted across wakes."""

    access_token: str | None = None
    expires_at: datetime | None = None
    refresh_started_at: datetime | None = None
    last_refresh_attempt: datetime | None = None
    refresh_attempt_count: int = 0
    # Process-local: an interactive flow is currently showing UI.
    authenticating: bool = False

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)

    @property
    def refresh_in_progress(self) -> bool:
        return self.refresh_started_at is not None

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        """True when the token exists and outlives *margin* from *now*."""
        if not self.access_token or self.expires_at is None:
            return False
        return self.expires_at - now > margin

    @classmethod
    def from_storage(cls, values: Mapping[str, Any]) -> Session:
        token = values.get(KEY_ACCESS_TOKEN)
        attempts = values.get(KEY_REFRESH_ATTEMPTS)
        return cls(
            access_token=token if isinstance(token, str) and token else None,
            expires_at=parse_optional_timestamp(values.get(KEY_TOKEN_EXPIRY)),
            refresh_started_at=parse_optional_timestamp(values.get(KEY_AUTH_IN_PROGRESS)),
            last_refresh_attempt=parse_optional_timestamp(values.get(KEY_LAST_REFRESH_ATTEMPT)),
            refresh_attempt_count=attempts if isinstance(attempts, int) and attempts > 0 else 0,
        )

    def to_storage(self) -> dict[str, Any]:
        def _ts(value: datetime | None) -> str | None:
            return rfc3339(value) if value is not None else None

        return {
            KEY_ACCESS_TOKEN: self.access_token,
            KEY_TOKEN_EXPIRY: _ts(self.expires_at),
            KEY_AUTH_IN_PROGRESS: _ts(self.refresh_started_at),
            KEY_LAST_REFRESH_ATTEMPT: _ts(self.last_refresh_attempt),
            KEY_REFRESH_ATTEMPTS: self.refresh_attempt_count,
        }

    def __repr__(self) -> str:
        return (
            f"Session(access_token={'<REDACTED>' if self.access_token else None}, "
            f"expires_at={self.expires_at!r}, "
            f"refresh_in_progress={self.refresh_in_progress}, "
            f"refresh_attempt_count={self.refresh_attempt_count})"
        )

    __str__ = __repr__


class SessionManager:
    """Owns the OAuth session and hands out access tokens."""

    def __init__(
        self,
        store: StateStore,
        provider: TokenProvider,
        timers: TimerService,
        config: SessionConfig | None = None,
        *,
        clock: Clock = utcnow,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._timers = timers
        self._config = config or SessionConfig()
        self._clock = clock
        self._sleep = sleep
        self._inflight: asyncio.Task[str] | None = None
        # Bumped whenever the session is cleared; a refresh begun earlier is stale.
        self._generation = 0
        self.session = Session()

    @property
    def provider(self) -> TokenProvider:
        return self._provider

    async def load(self) -> Session:
        """Re-read the session from the store."""
        values = await self._store.get(SESSION_KEYS)
        authenticating = self.session.authenticating
        self.session = Session.from_storage(values)
        self.session.authenticating = authenticating
        return self.session

    async def _persist(self, session: Session) -> None:
        await self._store.set(session.to_storage())

    async def is_authenticated(self) -> bool:
        session = await self.load()
        return session.authenticated

    async def get_token(self, interactive: bool = False) -> str:
        """Return a usable access token, refreshing when it is close to expiry.

        Raises
        ------
        AuthRequired
            Non-interactive call with no token at all (no network call made),
            or the grant was revoked.
        AuthDenied
            The user or policy declined authorization.
        AuthTransient
            Refresh could not complete right now.
        """
        session = await self.load()
        margin = timedelta(seconds=self._config.expiry_margin_seconds)
        if session.is_fresh(self._clock(), margin):
            return session.access_token  # type: ignore[return-value]
        if not session.authenticated and not interactive:
            raise AuthRequired("Not signed in")
        return await self.refresh(interactive)

    async def refresh(self, interactive: bool = False) -> str:
        """Obtain a new token, honouring the cooldown and single-flight guards."""
        return await self._refresh(interactive, honor_cooldown=True)

    async def sign_in(self) -> str:
        """User-initiated interactive sign-in.  Skips the cooldown."""
        logger.info("Interactive sign-in requested via %s", self._provider.name)
        return await self._refresh(True, honor_cooldown=False)

    async def handle_refresh_alarm(self) -> str | None:
        """Refresh-ahead wake.  Returns the new token, or None when signed out."""
        if not await self.is_authenticated():
            logger.debug("Refresh-ahead wake ignored: not signed in")
            return None
        return await self.refresh(False)

    async def _refresh(self, interactive: bool, *, honor_cooldown: bool) -> str:
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            logger.debug("Joining in-flight token refresh")
            return await self._await_inflight(inflight)

        session = await self.load()
        now = self._clock()
        cooldown = timedelta(seconds=self._config.cooldown_seconds)
        if (
            honor_cooldown
            and session.last_refresh_attempt is not None
            and now - session.last_refresh_attempt < cooldown
        ):
            if session.access_token:
                logger.debug("Refresh cooldown active; reusing cached token")
                return session.access_token
            raise RefreshCooldownActive("Token refresh attempted too recently")

        if not interactive and not session.authenticated:
            raise AuthRequired("Not signed in")

        wait_bound = timedelta(seconds=self._config.wait_timeout_seconds)
        if session.refresh_started_at is not None:
            if now - session.refresh_started_at < wait_bound:
                return await self._wait_for_foreign_refresh()
            logger.warning(
                "Taking over abandoned token refresh started at %s",
                rfc3339(session.refresh_started_at),
            )

        # load() yielded; another coroutine may have started a refresh meanwhile.
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            return await self._await_inflight(inflight)

        task = asyncio.create_task(self._run_refresh(interactive))
        self._inflight = task
        try:
            return await task
        finally:
            if self._inflight is task:
                self._inflight = None

    async def _await_inflight(self, task: asyncio.Task[str]) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.shield(task), timeout=self._config.wait_timeout_seconds
            )
        except TimeoutError as exc:
            raise RefreshTimeout("Timed out waiting for in-flight token refresh") from exc

    async def _wait_for_foreign_refresh(self) -> str:
        """Poll the store until another process finishes its refresh."""
        logger.info("Token refresh in progress elsewhere; waiting for it")
        waited = 0.0
        while waited < self._config.wait_timeout_seconds:
            await self._sleep(self._config.wait_poll_seconds)
            waited += self._config.wait_poll_seconds
            session = await self.load()
            if session.refresh_started_at is None:
                if session.access_token:
                    return session.access_token
                raise AuthRequired("Concurrent token refresh finished without a token")
        raise RefreshTimeout(
            f"Timed out after {self._config.wait_timeout_seconds:g}s waiting for token refresh"
        )

    def _backoff_delay(self, attempt: int) -> float:
        delay = self._config.backoff_base_seconds * self._config.backoff_factor ** (attempt - 1)
        return min(delay, self._config.backoff_cap_seconds)

    async def _run_refresh(self, interactive: bool) -> str:
        generation = self._generation
        session = self.session
        now = self._clock()
        session.refresh_started_at = now
        session.last_refresh_attempt = now
        session.authenticating = interactive
        await self._persist(session)

        try:
            while True:
                self._check_not_signed_out(generation)
                try:
                    grant = await self._provider.acquire(interactive=interactive)
                except AuthDenied:
                    logger.warning("Token refresh denied by authorization server")
                    await self._end_attempt_run(session, generation)
                    raise
                except AuthRequired:
                    if interactive:
                        await self._end_attempt_run(session, generation)
                    else:
                        logger.warning("Token grant no longer valid; clearing session")
                        await self._clear_session()
                    raise
                except AuthTransient as exc:
                    self._check_not_signed_out(generation)
                    session.refresh_attempt_count += 1
                    await self._persist(session)
                    attempt = session.refresh_attempt_count
                    if attempt >= self._config.max_refresh_attempts:
                        logger.error(
                            "Token refresh failed %d times; signing out: %s", attempt, exc
                        )
                        await self.sign_out()
                        raise AuthExhausted(
                            f"Token refresh failed after {attempt} attempts"
                        ) from exc
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "Token refresh attempt %d failed (%s); retrying in %.1fs",
                        attempt,
                        exc,
                        delay,
                    )
                    await self._sleep(delay)
                    continue

                self._check_not_signed_out(generation)
                issued_at = self._clock()
                session.access_token = grant.access_token
                session.expires_at = grant.expires_at(issued_at)
                session.refresh_attempt_count = 0
                session.refresh_started_at = None
                await self._persist(session)
                self.session = session
                await self._schedule_refresh_ahead(session, issued_at)
                logger.info("Access token refreshed; expires at %s", rfc3339(session.expires_at))
                return grant.access_token
        finally:
            session.authenticating = False
            self.session.authenticating = False
            if session.refresh_started_at is not None:
                session.refresh_started_at = None
                await self._store.remove([KEY_AUTH_IN_PROGRESS])

    def _check_not_signed_out(self, generation: int) -> None:
        """Raise AuthRequired when the session was cleared after *generation* began."""
        if generation != self._generation:
            logger.info("Signed out during token refresh; discarding its result")
            raise AuthRequired("Signed out while the token refresh was running")

    async def _end_attempt_run(self, session: Session, generation: int) -> None:
        # A definitive answer ends the run of consecutive transient failures.
        session.refresh_attempt_count = 0
        if generation == self._generation:
            await self._persist(session)

    async def _schedule_refresh_ahead(self, session: Session, now: datetime) -> None:
        if session.expires_at is None:
            return
        ahead = timedelta(seconds=self._config.refresh_ahead_seconds)
        when = max(session.expires_at - ahead, now)
        await self._timers.create(TOKEN_REFRESH_ALARM, when=when)

    async def _clear_session(self) -> None:
        self._generation += 1
        self.session = Session()
        await self._store.remove(SESSION_KEYS)
        await self._timers.clear(TOKEN_REFRESH_ALARM)

    async def sign_out(self, *, revoke: bool = False) -> None:
        """Forget the credential.  Safe to call when already signed out.

        With *revoke*, the provider is also asked to revoke the token at the
        authorization server.
        """
        session = await self.load()
        token = session.access_token
        await self._clear_session()
        if revoke and token:
            await self._provider.revoke(token)
        logger.info("Signed out")

    async def status(self) -> dict[str, Any]:
        session = await self.load()
        return {
            "authenticated": session.authenticated,
            "expires_at": rfc3339(session.expires_at) if session.expires_at else None,
            "refresh_in_progress": session.refresh_in_progress,
            "authenticating": session.authenticating,
            "refresh_attempt_count": session.refresh_attempt_count,
            "provider": self._provider.name,
        }
