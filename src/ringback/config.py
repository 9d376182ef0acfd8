"""Ringback configuration loading and validation.

Reads ``ringback.toml``, resolves ``${VAR}`` environment references and
returns a validated :class:`RingbackConfig` dataclass.  Every numeric
default below is tunable; none is a hard protocol constant.

Example::

    [ringback]
    name = "desk"

    [ringback.logging]
    level = "INFO"
    format = "text"

    [ringback.store]
    backend = "postgres"
    db_name = "ringback"

    [ringback.oauth]
    mode = "refresh_token"
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    refresh_token = "${GOOGLE_REFRESH_TOKEN}"

    [ringback.alarms]
    lead_minutes = 5
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "ringback.toml"
DEFAULT_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
)
DEFAULT_OVERLAY_URL = "http://localhost:40300/call-overlay"
VALID_STORE_BACKENDS = ("postgres", "memory")
VALID_OAUTH_MODES = ("implicit", "refresh_token")


class ConfigError(Exception):
    """Raised when ringback configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [ringback.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class StoreConfig:
    """Persistent store configuration from [ringback.store].

    Connection fields left unset fall back to ``DATABASE_URL`` /
    ``POSTGRES_*`` environment variables.
    """

    backend: str = "postgres"
    db_name: str = "ringback"
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    ssl: str | None = None


@dataclass
class OAuthConfig:
    """OAuth client configuration from [ringback.oauth]."""

    mode: str = "implicit"
    client_id: str = ""
    client_secret: str | None = None
    refresh_token: str | None = None
    redirect_uri: str = "http://localhost:40300/oauth/callback"
    scopes: tuple[str, ...] = DEFAULT_SCOPES

    def __repr__(self) -> str:
        return (
            f"OAuthConfig(mode={self.mode!r}, client_id={self.client_id!r}, "
            f"client_secret={'<REDACTED>' if self.client_secret else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"redirect_uri={self.redirect_uri!r}, scopes={self.scopes!r})"
        )


@dataclass
class SessionConfig:
    """Session manager tuning from [ringback.session]."""

    expiry_margin_seconds: float = 300.0
    cooldown_seconds: float = 30.0
    max_refresh_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 30.0
    wait_timeout_seconds: float = 30.0
    wait_poll_seconds: float = 0.1
    refresh_ahead_seconds: float = 300.0


@dataclass
class PollConfig:
    """Poll cycle tuning from [ringback.poll]."""

    interval_seconds: float = 30.0
    lookahead_minutes: float = 10.0
    page_cap: int = 5
    page_size: int = 50
    calendar_id: str = "primary"
    request_timeout_seconds: float = 30.0


@dataclass
class AlarmConfig:
    """Alarm and dispatch tuning from [ringback.alarms]."""

    lead_minutes: float = 5.0
    lead_offset_seconds: float = 30.0
    processed_retention_days: float = 7.0
    dispatch_timeout_seconds: float = 30.0


@dataclass
class PresenterConfig:
    """Presentation settings from [ringback.presenter]."""

    overlay_url: str = DEFAULT_OVERLAY_URL


@dataclass
class RingbackConfig:
    """Parsed ringback.toml."""

    name: str = "ringback"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    alarms: AlarmConfig = field(default_factory=AlarmConfig)
    presenter: PresenterConfig = field(default_factory=PresenterConfig)
    daemon_max_idle_seconds: float = 5.0


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return value


def _positive(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive number.")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    value = _positive(section, key, default, path)
    if value != int(value):
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return int(value)


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    normalized = str(raw).strip()
    return normalized or None


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid ringback.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def _parse_store(section: dict[str, Any]) -> StoreConfig:
    backend = str(section.get("backend", "postgres")).strip().lower()
    if backend not in VALID_STORE_BACKENDS:
        raise ConfigError(
            f"Invalid ringback.store.backend: {backend!r}. "
            f"Expected one of: {', '.join(VALID_STORE_BACKENDS)}."
        )
    db_name = str(section.get("db_name", "ringback")).strip()
    if not db_name:
        raise ConfigError("ringback.store.db_name must be a non-empty string")
    port_raw = section.get("port")
    return StoreConfig(
        backend=backend,
        db_name=db_name,
        host=_optional_str(section, "host"),
        port=int(port_raw) if port_raw is not None else None,
        user=_optional_str(section, "user"),
        password=_optional_str(section, "password"),
        ssl=_optional_str(section, "ssl"),
    )


def _parse_oauth(section: dict[str, Any]) -> OAuthConfig:
    mode = str(section.get("mode", "implicit")).strip().lower()
    if mode not in VALID_OAUTH_MODES:
        raise ConfigError(
            f"Invalid ringback.oauth.mode: {mode!r}. "
            f"Expected one of: {', '.join(VALID_OAUTH_MODES)}."
        )
    client_id = _optional_str(section, "client_id") or ""
    client_secret = _optional_str(section, "client_secret")
    refresh_token = _optional_str(section, "refresh_token")
    if mode == "refresh_token":
        missing = [
            name
            for name, value in (
                ("client_id", client_id),
                ("client_secret", client_secret),
                ("refresh_token", refresh_token),
            )
            if not value
        ]
        if missing:
            raise ConfigError(
                "ringback.oauth.mode = 'refresh_token' requires: " + ", ".join(missing)
            )

    raw_scopes = section.get("scopes")
    if raw_scopes is None:
        scopes = DEFAULT_SCOPES
    elif isinstance(raw_scopes, list) and all(isinstance(s, str) for s in raw_scopes):
        scopes = tuple(s.strip() for s in raw_scopes if s.strip())
    else:
        raise ConfigError("ringback.oauth.scopes must be a list of strings")

    return OAuthConfig(
        mode=mode,
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        redirect_uri=str(section.get("redirect_uri", OAuthConfig.redirect_uri)),
        scopes=scopes,
    )


def _parse_session(section: dict[str, Any]) -> SessionConfig:
    path = "ringback.session"
    defaults = SessionConfig()
    backoff_factor = _positive(section, "backoff_factor", defaults.backoff_factor, path)
    if backoff_factor < 1:
        raise ConfigError(f"Invalid {path}.backoff_factor: {backoff_factor!r}. Must be >= 1.")
    return SessionConfig(
        expiry_margin_seconds=_positive(
            section, "expiry_margin_seconds", defaults.expiry_margin_seconds, path
        ),
        cooldown_seconds=_positive(section, "cooldown_seconds", defaults.cooldown_seconds, path),
        max_refresh_attempts=_positive_int(
            section, "max_refresh_attempts", defaults.max_refresh_attempts, path
        ),
        backoff_base_seconds=_positive(
            section, "backoff_base_seconds", defaults.backoff_base_seconds, path
        ),
        backoff_factor=backoff_factor,
        backoff_cap_seconds=_positive(
            section, "backoff_cap_seconds", defaults.backoff_cap_seconds, path
        ),
        wait_timeout_seconds=_positive(
            section, "wait_timeout_seconds", defaults.wait_timeout_seconds, path
        ),
        wait_poll_seconds=_positive(section, "wait_poll_seconds", defaults.wait_poll_seconds, path),
        refresh_ahead_seconds=_positive(
            section, "refresh_ahead_seconds", defaults.refresh_ahead_seconds, path
        ),
    )


def _parse_poll(section: dict[str, Any]) -> PollConfig:
    path = "ringback.poll"
    defaults = PollConfig()
    page_size = _positive_int(section, "page_size", defaults.page_size, path)
    if page_size > 2500:
        raise ConfigError(f"Invalid {path}.page_size: {page_size!r}. Google caps pages at 2500.")
    calendar_id = str(section.get("calendar_id", defaults.calendar_id)).strip()
    if not calendar_id:
        raise ConfigError(f"{path}.calendar_id must be a non-empty string")
    return PollConfig(
        interval_seconds=_positive(section, "interval_seconds", defaults.interval_seconds, path),
        lookahead_minutes=_positive(
            section, "lookahead_minutes", defaults.lookahead_minutes, path
        ),
        page_cap=_positive_int(section, "page_cap", defaults.page_cap, path),
        page_size=page_size,
        calendar_id=calendar_id,
        request_timeout_seconds=_positive(
            section, "request_timeout_seconds", defaults.request_timeout_seconds, path
        ),
    )


def _parse_alarms(section: dict[str, Any]) -> AlarmConfig:
    path = "ringback.alarms"
    defaults = AlarmConfig()
    return AlarmConfig(
        lead_minutes=_positive(section, "lead_minutes", defaults.lead_minutes, path),
        lead_offset_seconds=_positive(
            section, "lead_offset_seconds", defaults.lead_offset_seconds, path
        ),
        processed_retention_days=_positive(
            section, "processed_retention_days", defaults.processed_retention_days, path
        ),
        dispatch_timeout_seconds=_positive(
            section, "dispatch_timeout_seconds", defaults.dispatch_timeout_seconds, path
        ),
    )


def parse_config(data: dict[str, Any]) -> RingbackConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    ringback_section = data.get("ringback")
    if not isinstance(ringback_section, dict):
        raise ConfigError("Missing [ringback] section in config")

    name = str(ringback_section.get("name", "ringback")).strip()
    if not name:
        raise ConfigError("ringback.name must be a non-empty string")

    presenter_section = _section(ringback_section, "presenter", "ringback.presenter")
    daemon_section = _section(ringback_section, "daemon", "ringback.daemon")

    return RingbackConfig(
        name=name,
        logging=_parse_logging(_section(ringback_section, "logging", "ringback.logging")),
        store=_parse_store(_section(ringback_section, "store", "ringback.store")),
        oauth=_parse_oauth(_section(ringback_section, "oauth", "ringback.oauth")),
        session=_parse_session(_section(ringback_section, "session", "ringback.session")),
        poll=_parse_poll(_section(ringback_section, "poll", "ringback.poll")),
        alarms=_parse_alarms(_section(ringback_section, "alarms", "ringback.alarms")),
        presenter=PresenterConfig(
            overlay_url=str(presenter_section.get("overlay_url", DEFAULT_OVERLAY_URL))
        ),
        daemon_max_idle_seconds=_positive(
            daemon_section, "max_idle_seconds", 5.0, "ringback.daemon"
        ),
    )


def load_config(path: Path) -> RingbackConfig:
    """Load and validate ``ringback.toml``.

    Parameters
    ----------
    path:
        The TOML file, or a directory containing ``ringback.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
