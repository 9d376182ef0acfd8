"""Authentication: OAuth token providers and the session manager."""

from ringback.auth.oauth import (
    GoogleOAuthCredentials,
    ImplicitGrantTokenProvider,
    RefreshTokenProvider,
    TokenGrant,
    TokenProvider,
    WebAuthLauncher,
    build_authorization_url,
    build_token_provider,
    grant_from_redirect,
    parse_redirect_fragment,
)
from ringback.auth.session import TOKEN_REFRESH_ALARM, Session, SessionManager

__all__ = [
    "GoogleOAuthCredentials",
    "ImplicitGrantTokenProvider",
    "RefreshTokenProvider",
    "Session",
    "SessionManager",
    "TOKEN_REFRESH_ALARM",
    "TokenGrant",
    "TokenProvider",
    "WebAuthLauncher",
    "build_authorization_url",
    "build_token_provider",
    "grant_from_redirect",
    "parse_redirect_fragment",
]
