"""Google OAuth token providers.

A :class:`TokenProvider` performs exactly one network round-trip that yields
a :class:`TokenGrant`, and classifies failures into the auth taxonomy:

- :class:`AuthRequired`: the grant is gone and the user must sign in again.
- :class:`AuthDenied`: the user declined or the client is not allowed.
- :class:`AuthTransient`: network trouble, rate limiting, 5xx.

Retries, cooldowns and single-flight are the session manager's job; the
providers never retry.

Two flows are supported:

``ImplicitGrantTokenProvider``
    Browser-style implicit grant.  The authorization URL is handed to a
    ``launch_web_auth_flow(url, interactive)`` coroutine supplied by the UI
    layer, which returns the redirect URL.  The token and its lifetime are
    read from the redirect fragment.  Non-interactive attempts add
    ``prompt=none`` so Google answers silently or with
    ``interaction_required``.

``RefreshTokenProvider``
    Exchanges an operator-provisioned refresh token at the token endpoint.
"""

from __future__ import annotations

import abc
import logging
import secrets
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from ringback.config import OAuthConfig
from ringback.errors import (
    AuthDenied,
    AuthError,
    AuthRequired,
    AuthTransient,
    safe_google_error,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
DEFAULT_EXPIRES_IN_SECONDS = 3600

# Redirect-fragment error codes that mean "the user has to act".
_REQUIRES_INTERACTION_ERRORS = {
    "interaction_required",
    "login_required",
    "consent_required",
    "account_selection_required",
}
_DENIED_ERRORS = {"access_denied", "unauthorized_client", "invalid_scope"}

# Launches the browser flow: (authorization_url, interactive) -> redirect_url.
WebAuthLauncher = Callable[[str, bool], Awaitable[str]]


class TokenGrant(BaseModel):
    """An access token and its lifetime as returned by Google."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_in: int = DEFAULT_EXPIRES_IN_SECONDS

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)

    def __repr__(self) -> str:
        return f"TokenGrant(access_token=<REDACTED>, expires_in={self.expires_in})"

    __str__ = __repr__


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return (
            f"GoogleOAuthCredentials("
            f"client_id={self.client_id!r}, "
            f"client_secret=<REDACTED>, "
            f"refresh_token=<REDACTED>)"
        )

    __str__ = __repr__


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def build_authorization_url(
    *,
    client_id: str,
    redirect_uri: str,
    scopes: Iterable[str],
    interactive: bool,
    state: str | None = None,
    login_hint: str | None = None,
) -> str:
    """Build an implicit-grant authorization URL."""
    params: dict[str, str] = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "token",
        "scope": " ".join(scopes),
        "include_granted_scopes": "true",
    }
    if not interactive:
        params["prompt"] = "none"
    if state:
        params["state"] = state
    if login_hint:
        params["login_hint"] = login_hint
    return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"


def parse_redirect_fragment(redirect_url: str) -> dict[str, str]:
    """Return the key/value pairs carried in the redirect URL fragment.

    Google puts implicit-grant results after ``#``; some launchers hand the
    fragment back as a query string instead, so the query is used as a
    fallback when the fragment is empty.
    """
    parts = urlsplit(redirect_url.strip())
    raw = parts.fragment or parts.query
    return {key: values[0] for key, values in parse_qs(raw).items() if values}


def grant_from_redirect(redirect_url: str, *, expected_state: str | None = None) -> TokenGrant:
    """Turn an implicit-grant redirect URL into a :class:`TokenGrant`.

    Raises
    ------
    AuthDenied
        The user declined (``error=access_denied``) or the state did not match.
    AuthRequired
        Google needs user interaction (silent attempt failed).
    AuthTransient
        The redirect carried neither a token nor a recognised error.
    """
    params = parse_redirect_fragment(redirect_url)

    error = params.get("error")
    if error:
        description = params.get("error_description", error)
        if error in _REQUIRES_INTERACTION_ERRORS:
            raise AuthRequired(f"Google requires user interaction: {description}")
        if error in _DENIED_ERRORS:
            raise AuthDenied(f"Authorization denied: {description}")
        raise AuthTransient(f"Authorization failed: {sanitize_error_message(description)}")

    if expected_state is not None and params.get("state") != expected_state:
        raise AuthDenied("Authorization response state mismatch")

    access_token = params.get("access_token", "").strip()
    if not access_token:
        raise AuthTransient("Authorization redirect did not carry an access_token")

    return TokenGrant(
        access_token=access_token,
        expires_in=_coerce_expires_in_seconds(params.get("expires_in")),
    )


class TokenProvider(abc.ABC):
    """One-shot token acquisition against an OAuth authorization server."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier used in logs and status output."""

    @property
    def supports_silent_sign_in(self) -> bool:
        """True when a token can be obtained without any prior user consent."""
        return False

    @abc.abstractmethod
    async def acquire(self, *, interactive: bool) -> TokenGrant:
        """Obtain a new access token."""

    async def revoke(self, access_token: str) -> None:  # noqa: ARG002
        """Revoke *access_token* at the authorization server (best effort)."""
        return None

    async def shutdown(self) -> None:
        return None


class _HttpTokenProvider(TokenProvider):
    def __init__(self, http_client: httpx.AsyncClient | None, timeout: float) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class ImplicitGrantTokenProvider(_HttpTokenProvider):
    """Implicit-grant flow driven through a UI-supplied browser launcher."""

    def __init__(
        self,
        *,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        launcher: WebAuthLauncher,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not client_id.strip():
            raise ValueError("client_id must be a non-empty string")
        super().__init__(http_client, timeout)
        self._client_id = client_id.strip()
        self._redirect_uri = redirect_uri
        self._scopes = tuple(scopes)
        self._launcher = launcher

    @property
    def name(self) -> str:
        return "google-implicit"

    def authorization_url(self, *, interactive: bool, state: str | None = None) -> str:
        return build_authorization_url(
            client_id=self._client_id,
            redirect_uri=self._redirect_uri,
            scopes=self._scopes,
            interactive=interactive,
            state=state,
        )

    async def acquire(self, *, interactive: bool) -> TokenGrant:
        state = secrets.token_urlsafe(16)
        url = self.authorization_url(interactive=interactive, state=state)
        try:
            redirect_url = await self._launcher(url, interactive)
        except AuthError:
            raise
        except Exception as exc:
            raise AuthTransient(
                f"Web auth flow failed: {sanitize_error_message(str(exc))}"
            ) from exc

        if not redirect_url:
            if interactive:
                raise AuthDenied("Authorization was cancelled by the user")
            raise AuthRequired("Silent authorization returned no redirect")

        return grant_from_redirect(redirect_url, expected_state=state)

    async def revoke(self, access_token: str) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_REVOKE_URL,
                data={"token": access_token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Token revocation request failed: %s", exc)
            return
        if response.status_code >= 400:
            _, message = safe_google_error(response)
            logger.warning("Token revocation rejected (%d): %s", response.status_code, message)


class RefreshTokenProvider(_HttpTokenProvider):
    """Refresh-token exchange against Google's token endpoint."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client, timeout)
        self._credentials = credentials

    @property
    def name(self) -> str:
        return "google-refresh-token"

    @property
    def supports_silent_sign_in(self) -> bool:
        return True

    async def acquire(self, *, interactive: bool) -> TokenGrant:  # noqa: ARG002
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthTransient(f"Google OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            error_code, message = safe_google_error(response)
            detail = f"Google OAuth token refresh failed ({response.status_code}): {message}"
            if response.status_code == 429 or response.status_code >= 500:
                raise AuthTransient(detail)
            if error_code == "invalid_grant":
                raise AuthRequired(detail)
            raise AuthDenied(detail)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthTransient("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthTransient("Google OAuth token response is missing a non-empty access_token")

        expires_in_raw = payload.get("expires_in") if isinstance(payload, dict) else None
        return TokenGrant(
            access_token=access_token.strip(),
            expires_in=_coerce_expires_in_seconds(expires_in_raw),
        )


def build_token_provider(
    config: OAuthConfig,
    *,
    launcher: WebAuthLauncher | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> TokenProvider:
    """Create the provider selected by ``[ringback.oauth] mode``.

    Raises
    ------
    ValueError
        Implicit mode without a *launcher*, or an unknown mode.
    """
    if config.mode == "refresh_token":
        credentials = GoogleOAuthCredentials(
            client_id=config.client_id,
            client_secret=config.client_secret or "",
            refresh_token=config.refresh_token or "",
        )
        return RefreshTokenProvider(credentials, http_client=http_client)
    if config.mode == "implicit":
        if launcher is None:
            raise ValueError("implicit OAuth mode needs a web auth launcher")
        return ImplicitGrantTokenProvider(
            client_id=config.client_id,
            redirect_uri=config.redirect_uri,
            scopes=config.scopes,
            launcher=launcher,
            http_client=http_client,
        )
    raise ValueError(f"Unknown OAuth mode: {config.mode}")
