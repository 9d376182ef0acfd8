"""Persistent key-value store.

All state that must survive between wakes lives here: the OAuth session,
the upcoming-events snapshot, the processed-event set, user settings and
scheduled alarms.  Each entity is kept under its own key and writes are
last-writer-wins per key, so no operation needs a cross-key transaction.

Two backends are provided:

- :class:`PostgresStateStore`: a ``state`` table with a JSONB ``value``
  column, accessed through an asyncpg pool.
- :class:`MemoryStateStore`: a process-local dict, used by tests and by
  ``backend = "memory"`` for throwaway runs.

Values must be JSON-serialisable.  Both backends round-trip values through
JSON so callers never observe shared mutable objects.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings (text representation)
    when no custom codec is registered.  Normally one ``json.loads`` pass
    suffices.  If the stored JSONB was accidentally double-encoded (a JSON
    string containing JSON text), a second pass is needed.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        try:
            decoded = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            return val
        logger.warning("Double-encoded JSONB detected, applied second decode pass")
        return decoded
    return val


class StateStore(abc.ABC):
    """Async key-value store contract used by every ringback component."""

    @abc.abstractmethod
    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return a mapping of the requested keys that exist to their values."""

    @abc.abstractmethod
    async def set(self, values: Mapping[str, Any]) -> None:
        """Upsert every key in *values*."""

    @abc.abstractmethod
    async def remove(self, keys: Iterable[str]) -> None:
        """Delete *keys*.  Missing keys are ignored."""

    async def get_value(self, key: str, default: Any = None) -> Any:
        """Return the value stored under *key*, or *default* when absent."""
        values = await self.get([key])
        return values.get(key, default)

    async def close(self) -> None:
        """Release backend resources."""
        return None


class MemoryStateStore(StateStore):
    """Process-local store.  Contents vanish with the process."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value)

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        async with self._lock:
            return {key: json.loads(self._data[key]) for key in keys if key in self._data}

    async def set(self, values: Mapping[str, Any]) -> None:
        encoded = {key: json.dumps(value) for key, value in values.items()}
        async with self._lock:
            self._data.update(encoded)

    async def remove(self, keys: Iterable[str]) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def snapshot(self) -> dict[str, Any]:
        """Return a decoded copy of the whole store (debugging and tests)."""
        return {key: json.loads(raw) for key, raw in self._data.items()}


class PostgresStateStore(StateStore):
    """Store backed by the ``state`` table in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        """Create the ``state`` table when it does not exist yet."""
        await self._pool.execute(STATE_TABLE_DDL)

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        key_list = list(keys)
        if not key_list:
            return {}
        rows = await self._pool.fetch(
            "SELECT key, value FROM state WHERE key = ANY($1::text[])",
            key_list,
        )
        return {row["key"]: decode_jsonb(row["value"]) for row in rows}

    async def set(self, values: Mapping[str, Any]) -> None:
        if not values:
            return
        await self._pool.executemany(
            """
            INSERT INTO state (key, value, updated_at, version)
            VALUES ($1, $2::jsonb, now(), 1)
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now(),
                    version = state.version + 1
            """,
            [(key, json.dumps(value)) for key, value in values.items()],
        )

    async def remove(self, keys: Iterable[str]) -> None:
        key_list = list(keys)
        if not key_list:
            return
        await self._pool.execute("DELETE FROM state WHERE key = ANY($1::text[])", key_list)

    async def close(self) -> None:
        await self._pool.close()
