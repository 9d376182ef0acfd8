"""Tests for ringback.daemon: service assembly and the tick loop."""

from __future__ import annotations

import asyncio
import signal
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import StubTokenProvider

from ringback.auth.oauth import RefreshTokenProvider
from ringback.config import OAuthConfig, RingbackConfig, StoreConfig
from ringback.core.state import MemoryStateStore
from ringback.daemon import create_service, run_daemon
from ringback.service import CALENDAR_POLL_ALARM, LAST_POLL_KEY, RingbackService

pytestmark = pytest.mark.unit


@pytest.fixture
def service(store, presenter, clock) -> RingbackService:
    return RingbackService.build(
        RingbackConfig(),
        store,
        StubTokenProvider(),
        presenter,
        http_client=AsyncMock(spec=httpx.AsyncClient),
        clock=clock,
        sleep=clock.sleep,
    )


class TestCreateService:
    async def test_memory_backend_refresh_token_mode(self):
        config = RingbackConfig(
            store=StoreConfig(backend="memory"),
            oauth=OAuthConfig(
                mode="refresh_token", client_id="cid", client_secret="sec", refresh_token="rt"
            ),
        )

        service = await create_service(config)
        try:
            assert isinstance(service.store, MemoryStateStore)
            assert isinstance(service.session.provider, RefreshTokenProvider)
        finally:
            await service.shutdown()

    async def test_implicit_mode_needs_launcher(self):
        config = RingbackConfig(
            store=StoreConfig(backend="memory"), oauth=OAuthConfig(client_id="cid")
        )

        with pytest.raises(ValueError, match="launcher"):
            await create_service(config)


class TestRunDaemon:
    async def test_first_tick_runs_the_poll(self, service, store):
        stop = asyncio.Event()

        async def _on_tick(fired: int) -> None:
            assert fired == 1
            stop.set()

        await run_daemon(
            service, shutdown_event=stop, install_signal_handlers=False, on_tick=_on_tick
        )

        assert store.snapshot()[LAST_POLL_KEY]["status"] == "signed_out"
        assert await service.timers.get(CALENDAR_POLL_ALARM) is not None

    async def test_periodic_poll_fires_each_interval(self, service, clock):
        stop = asyncio.Event()
        fired_per_tick: list[int] = []

        async def _on_tick(fired: int) -> None:
            fired_per_tick.append(fired)
            if len(fired_per_tick) == 4:
                stop.set()
            clock.advance(15)

        await run_daemon(
            service,
            max_idle_seconds=0,
            shutdown_event=stop,
            install_signal_handlers=False,
            clock=clock,
            on_tick=_on_tick,
        )

        assert fired_per_tick == [1, 0, 1, 0]

    async def test_preset_shutdown_skips_ticks(self, service):
        stop = asyncio.Event()
        stop.set()
        on_tick = AsyncMock()

        await run_daemon(
            service, shutdown_event=stop, install_signal_handlers=False, on_tick=on_tick
        )

        on_tick.assert_not_awaited()
        assert await service.timers.get(CALENDAR_POLL_ALARM) is not None

    async def test_signal_handlers_removed_on_exit(self, service):
        stop = asyncio.Event()
        stop.set()
        loop = asyncio.get_running_loop()

        await run_daemon(service, shutdown_event=stop)

        assert not loop.remove_signal_handler(signal.SIGTERM)
