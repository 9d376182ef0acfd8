"""Presentation back ends: where an incoming-meeting alert is shown.

A presenter knows two things: open a window on a URL, and raise a desktop
style notification with action buttons.  Either may fail independently;
the dispatcher decides what counts as a delivered alert.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import webbrowser
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import click

from ringback.errors import PresentationError

logger = logging.getLogger(__name__)


class Presenter(abc.ABC):
    """Surface that shows meeting alerts to the user."""

    @abc.abstractmethod
    async def create_window(self, url: str) -> None:
        """Open a window on *url*.  Raises :class:`PresentationError` on failure."""

    @abc.abstractmethod
    async def create_notification(
        self,
        notification_id: str,
        title: str,
        body: str,
        actions: Sequence[str],
    ) -> None:
        """Raise a notification.  Raises :class:`PresentationError` on failure."""


class ConsolePresenter(Presenter):
    """Terminal presenter used by the CLI.

    Windows open in the default web browser; notifications are printed.
    """

    def __init__(self, *, opener: Callable[[str], bool] = webbrowser.open) -> None:
        self._opener = opener

    async def create_window(self, url: str) -> None:
        opened = await asyncio.to_thread(self._opener, url)
        if not opened:
            raise PresentationError(f"No browser available to open {url}")
        logger.info("Opened meeting window")

    async def create_notification(
        self,
        notification_id: str,
        title: str,
        body: str,
        actions: Sequence[str],
    ) -> None:
        click.secho(f"\a{title}: {body}", fg="green", bold=True)
        if actions:
            click.echo(f"  [{notification_id}] " + " | ".join(actions))


@dataclass
class RecordingPresenter(Presenter):
    """Presenter that records calls; either path can be told to fail."""

    fail_window: bool = False
    fail_notification: bool = False
    windows: list[str] = field(default_factory=list)
    notifications: list[dict[str, object]] = field(default_factory=list)

    async def create_window(self, url: str) -> None:
        if self.fail_window:
            raise PresentationError("window creation failed")
        self.windows.append(url)

    async def create_notification(
        self,
        notification_id: str,
        title: str,
        body: str,
        actions: Sequence[str],
    ) -> None:
        if self.fail_notification:
            raise PresentationError("notification creation failed")
        self.notifications.append(
            {"id": notification_id, "title": title, "body": body, "actions": list(actions)}
        )

    @property
    def presentations(self) -> int:
        return len(self.windows) + len(self.notifications)
