"""Long-running ringback process.

The daemon is a thin loop over the timer service: fire whatever is due,
then sleep until the next alarm (never longer than ``max_idle_seconds``, so
alarms written by other processes are picked up promptly).  SIGINT and
SIGTERM stop the loop between ticks.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable

from ringback.auth.oauth import WebAuthLauncher, build_token_provider
from ringback.config import RingbackConfig
from ringback.core.clock import Clock, utcnow
from ringback.db import open_state_store
from ringback.presenters import ConsolePresenter, Presenter
from ringback.service import RingbackService

logger = logging.getLogger(__name__)


async def create_service(
    config: RingbackConfig,
    *,
    launcher: WebAuthLauncher | None = None,
    presenter: Presenter | None = None,
) -> RingbackService:
    """Open the configured store and assemble a :class:`RingbackService`."""
    store = await open_state_store(config.store)
    provider = build_token_provider(config.oauth, launcher=launcher)
    return RingbackService.build(config, store, provider, presenter or ConsolePresenter())


async def run_daemon(
    service: RingbackService,
    *,
    max_idle_seconds: float = 5.0,
    shutdown_event: asyncio.Event | None = None,
    install_signal_handlers: bool = True,
    clock: Clock = utcnow,
    on_tick: Callable[[int], Awaitable[None]] | None = None,
) -> None:
    """Run the tick loop until *shutdown_event* is set or a signal arrives."""
    stop = shutdown_event or asyncio.Event()
    loop = asyncio.get_running_loop()

    def _signal_handler() -> None:
        logger.info("Shutdown requested")
        stop.set()

    handled: list[signal.Signals] = []
    if install_signal_handlers:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _signal_handler)
            handled.append(sig)

    await service.start()
    logger.info("Ringback daemon %s running", service.config.name)
    try:
        while not stop.is_set():
            fired = await service.timers.tick(service.handle_wake)
            if on_tick is not None:
                await on_tick(fired)

            next_fire_at = await service.timers.next_fire_at()
            if next_fire_at is None:
                delay = max_idle_seconds
            else:
                delay = (next_fire_at - clock()).total_seconds()
                delay = min(max(delay, 0.0), max_idle_seconds)

            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except TimeoutError:
                pass
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
        logger.info("Ringback daemon %s stopped", service.config.name)
