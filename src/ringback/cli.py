"""CLI for ringback: run the daemon, fire wakes and manage sign-in."""

from __future__ import annotations

import asyncio
import json
import sys
import webbrowser
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from ringback import __version__
from ringback.config import ConfigError, RingbackConfig, load_config
from ringback.core.logging import configure_logging
from ringback.daemon import create_service, run_daemon
from ringback.errors import AuthError, AuthRequired, build_structured_error
from ringback.service import RingbackService

DEFAULT_CONFIG_PATH = Path("ringback.toml")

T = TypeVar("T")


async def terminal_web_auth_flow(url: str, interactive: bool) -> str:
    """Browser sign-in driven from a terminal.

    The user opens *url*, authorizes, and pastes back the URL the browser was
    redirected to.  Silent attempts are impossible without a browser session.
    """
    if not interactive:
        raise AuthRequired("Silent sign-in needs a browser session; run `ringback signin`")
    click.echo("Open this URL in a browser and authorize ringback:")
    click.echo(f"  {url}")
    await asyncio.to_thread(webbrowser.open, url)
    return await asyncio.to_thread(
        click.prompt, "Paste the URL you were redirected to", default="", show_default=False
    )


def _load(config_path: Path) -> RingbackConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    if not config.oauth.client_id:
        click.echo("Configuration error: ringback.oauth.client_id is required", err=True)
        sys.exit(2)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=log_root,
        instance_name=config.name,
    )
    return config


async def _with_service(
    config: RingbackConfig, action: Callable[[RingbackService], Awaitable[T]]
) -> T:
    service = await create_service(config, launcher=terminal_web_auth_flow)
    try:
        return await action(service)
    finally:
        await service.shutdown()


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to ringback.toml (or the directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """Ringback: incoming-call alerts for upcoming video meetings."""
    ctx.obj = config_path


@cli.command()
@click.pass_obj
def run(config_path: Path) -> None:
    """Run the daemon until interrupted."""
    config = _load(config_path)

    async def _run(service: RingbackService) -> None:
        await run_daemon(service, max_idle_seconds=config.daemon_max_idle_seconds)

    click.echo(f"Starting ringback ({config.name})")
    asyncio.run(_with_service(config, _run))


@cli.command()
@click.argument("name")
@click.pass_obj
def wake(config_path: Path, name: str) -> None:
    """Handle a single wake NAME (calendar_poll, token_refresh, meeting::<id>)."""
    config = _load(config_path)

    async def _wake(service: RingbackService) -> Any:
        await service.settings.ensure_initialized()
        return await service.handle_wake(name)

    result = asyncio.run(_with_service(config, _wake))
    if hasattr(result, "model_dump"):
        _echo_json(result.model_dump(mode="json"))
    elif result is not None:
        click.echo(str(result))


@cli.command()
@click.pass_obj
def signin(config_path: Path) -> None:
    """Sign in to Google Calendar."""
    config = _load(config_path)

    async def _signin(service: RingbackService) -> dict[str, Any]:
        try:
            await service.session.sign_in()
        except AuthError as exc:
            return build_structured_error(exc)
        return await service.session.status()

    result = asyncio.run(_with_service(config, _signin))
    if result.get("status") == "error":
        click.echo(f"Sign-in failed: {result['error']}", err=True)
        sys.exit(1)
    click.echo(f"Signed in; token expires at {result['expires_at']}")


@cli.command()
@click.pass_obj
def signout(config_path: Path) -> None:
    """Forget the stored credential and revoke it."""
    config = _load(config_path)

    async def _signout(service: RingbackService) -> None:
        await service.session.sign_out(revoke=True)

    asyncio.run(_with_service(config, _signout))
    click.echo("Signed out")


@cli.command()
@click.pass_obj
def status(config_path: Path) -> None:
    """Show sign-in state, the last poll and pending alarms."""
    config = _load(config_path)

    async def _status(service: RingbackService) -> dict[str, Any]:
        return await service.handle_message({"action": "getStatusUpdate"})

    _echo_json(asyncio.run(_with_service(config, _status)))


@cli.command()
@click.option("--refresh", is_flag=True, help="Poll the calendar before listing")
@click.pass_obj
def meetings(config_path: Path, refresh: bool) -> None:
    """List the upcoming meetings from the last poll."""
    config = _load(config_path)
    action = "refreshMeetings" if refresh else "getUpcomingMeetings"

    async def _meetings(service: RingbackService) -> dict[str, Any]:
        return await service.handle_message({"action": action})

    result = asyncio.run(_with_service(config, _meetings))
    upcoming = result.get("meetings") or []
    if not upcoming:
        click.echo("No upcoming meetings")
        return

    click.echo(f"{'Start':<22} {'Title':<40} {'Link'}")
    click.echo("-" * 80)
    for meeting in upcoming:
        click.echo(f"{meeting['startTime']:<22} {meeting['title'][:40]:<40} {meeting['meetLink']}")


def main() -> None:
    cli()
