"""PostgreSQL connection handling for the state store.

Connection details come from ``[ringback.store]``; any field left unset there
falls back to ``DATABASE_URL`` or, without one, the ``POSTGRES_*``
environment variables.  Servers that drop the connection during the SSL
upgrade are retried once with ``ssl=disable`` unless an sslmode was set
explicitly.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

from ringback.config import StoreConfig
from ringback.core.state import MemoryStateStore, PostgresStateStore, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_VALID_SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})
_SSL_UPGRADE_CONNECTION_LOST = "unexpected connection_lost() call"


def normalize_ssl_mode(value: str | None) -> str | None:
    """Return a valid asyncpg sslmode, or None when unset or unrecognised."""
    if value is None or not value.strip():
        return None
    normalized = value.strip().lower()
    if normalized not in _VALID_SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return normalized


@dataclass(frozen=True)
class PgParams:
    """Server coordinates shared by provisioning and the pool."""

    host: str = "localhost"
    port: int = 5432
    user: str = "ringback"
    password: str = "ringback"
    ssl: str | None = None

    @classmethod
    def from_url(cls, database_url: str) -> PgParams:
        """Parse a libpq-style ``postgres://user:pw@host:port/db?sslmode=...`` URL."""
        parsed = urlparse(database_url)
        defaults = cls()
        return cls(
            host=parsed.hostname or defaults.host,
            port=parsed.port or defaults.port,
            user=parsed.username or defaults.user,
            password=parsed.password or defaults.password,
            ssl=normalize_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(cls) -> PgParams:
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            return cls.from_url(database_url)
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", "ringback"),
            password=os.environ.get("POSTGRES_PASSWORD", "ringback"),
            ssl=normalize_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )

    def overlay(self, config: StoreConfig) -> PgParams:
        """Return a copy with every field set in *config* taking precedence."""
        overrides: dict[str, Any] = {
            "host": config.host,
            "port": config.port,
            "user": config.user,
            "password": config.password,
            "ssl": normalize_ssl_mode(config.ssl),
        }
        return dataclasses.replace(
            self, **{key: value for key, value in overrides.items() if value}
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs

    def __repr__(self) -> str:
        return (
            f"PgParams(host={self.host!r}, port={self.port}, user={self.user!r}, "
            f"password=<REDACTED>, ssl={self.ssl!r})"
        )


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when the server dropped the SSL upgrade and no sslmode was forced."""
    return (
        configured_ssl is None
        and isinstance(exc, ConnectionError)
        and _SSL_UPGRADE_CONNECTION_LOST in str(exc)
    )


async def _open_with_ssl_fallback(
    opener: Callable[..., Awaitable[T]],
    kwargs: dict[str, Any],
    *,
    configured_ssl: str | None,
    what: str,
) -> T:
    try:
        return await opener(**kwargs)
    except Exception as exc:
        if not should_retry_with_ssl_disable(exc, configured_ssl):
            raise
        logger.info("Retrying PostgreSQL %s with ssl=disable after SSL upgrade loss", what)
        return await opener(**{**kwargs, "ssl": "disable"})


class Database:
    """Provisions the ringback database and owns its connection pool."""

    def __init__(
        self,
        db_name: str,
        params: PgParams | None = None,
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
    ) -> None:
        self.db_name = db_name
        self.params = params or PgParams()
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        return cls(db_name, PgParams.from_env())

    @classmethod
    def from_config(cls, config: StoreConfig) -> Database:
        return cls(config.db_name, PgParams.from_env().overlay(config))

    async def provision(self) -> None:
        """Create the database through the ``postgres`` maintenance database if missing."""
        conn = await _open_with_ssl_fallback(
            asyncpg.connect,
            self.params.connect_kwargs("postgres"),
            configured_ssl=self.params.ssl,
            what="provision connection",
        )
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.debug("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no bind parameters.
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        kwargs = self.params.connect_kwargs(self.db_name)
        kwargs.update(min_size=self.min_pool_size, max_size=self.max_pool_size)
        self.pool = await _open_with_ssl_fallback(
            asyncpg.create_pool, kwargs, configured_ssl=self.params.ssl, what="pool creation"
        )
        logger.info("Connection pool created for: %s", self.db_name)
        return self.pool

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
            logger.info("Connection pool closed for: %s", self.db_name)


async def open_state_store(config: StoreConfig) -> StateStore:
    """Open the configured backend, provisioning PostgreSQL and its table if needed."""
    if config.backend == "memory":
        logger.warning("Using the in-memory state store; state will not survive restarts")
        return MemoryStateStore()

    db = Database.from_config(config)
    await db.provision()
    store = PostgresStateStore(await db.connect())
    await store.ensure_schema()
    return store
