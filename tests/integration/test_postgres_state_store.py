"""Integration tests for PostgresStateStore against a real PostgreSQL."""

from __future__ import annotations

import shutil
import uuid
from datetime import timedelta

import pytest
from conftest import FakeClock

from ringback.core.state import PostgresStateStore
from ringback.core.timers import TimerService
from ringback.db import Database, PgParams

# Skip all tests in this module if Docker is not available
docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]


def _unique_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="module")
def postgres_container():
    """Start a PostgreSQL container for the test module."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
async def pg_store(postgres_container):
    """Provision a fresh database and return a store with its schema in place."""
    params = PgParams(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
    )
    db = Database(
        _unique_db_name(),
        params,
        min_pool_size=1,
        max_pool_size=3,
    )
    await db.provision()
    pool = await db.connect()
    store = PostgresStateStore(pool)
    await store.ensure_schema()
    yield store
    await db.close()


async def test_values_round_trip_as_json(pg_store):
    await pg_store.set(
        {
            "oauth_token": "tok",
            "auth_refresh_attempts": 2,
            "processed_event_ids": {"evt-1": "2026-03-02T09:00:00Z"},
            "upcoming_events": [],
            "auth_in_progress": None,
        }
    )

    values = await pg_store.get(
        ["oauth_token", "auth_refresh_attempts", "processed_event_ids", "missing"]
    )

    assert values == {
        "oauth_token": "tok",
        "auth_refresh_attempts": 2,
        "processed_event_ids": {"evt-1": "2026-03-02T09:00:00Z"},
    }
    assert await pg_store.get_value("auth_in_progress", "absent") is None


async def test_overwrite_bumps_version(pg_store):
    await pg_store.set({"oauth_token": "first"})
    await pg_store.set({"oauth_token": "second"})

    row = await pg_store._pool.fetchrow(
        "SELECT value, version FROM state WHERE key = $1", "oauth_token"
    )
    assert row["version"] == 2
    assert await pg_store.get_value("oauth_token") == "second"


async def test_remove_deletes_keys(pg_store):
    await pg_store.set({"a": 1, "b": 2, "c": 3})

    await pg_store.remove(["a", "c", "never-set"])

    assert await pg_store.get(["a", "b", "c"]) == {"b": 2}


async def test_ensure_schema_is_idempotent(pg_store):
    await pg_store.set({"a": 1})

    await pg_store.ensure_schema()

    assert await pg_store.get_value("a") == 1


async def test_alarms_survive_a_new_timer_service(pg_store):
    clock = FakeClock()
    await TimerService(pg_store, clock=clock).create("calendar_poll", period_seconds=30)

    restarted = TimerService(pg_store, clock=clock)
    alarm = await restarted.get("calendar_poll")

    assert alarm is not None
    assert alarm.periodic
    assert alarm.fire_at == clock.now + timedelta(seconds=30)
