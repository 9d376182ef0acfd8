"""Structured logging for ringback.

Modules log through plain ``logging.getLogger(__name__)``; structlog's
ProcessorFormatter renders those records as colored text (``text``) or JSON
lines (``json``).

Each record is enriched with:

- ``instance``: the configured ringback name
- ``wake``: the alarm being handled, when logged inside :func:`wake_context`
- ``trace_id`` / ``span_id`` of the current OTel span

Credential values (bearer tokens, ``access_token=...``) are redacted from the
rendered message before any handler sees it.

With ``log_root`` set, JSON copies are also written to::

    {log_root}/ringback/{instance}.log   # application records
    {log_root}/http/{instance}.log       # httpx/httpcore transport records
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor, WrappedLogger

from ringback.errors import redact_credentials

_instance_context: ContextVar[str | None] = ContextVar("ringback_instance", default=None)
_wake_context: ContextVar[str | None] = ContextVar("ringback_wake", default=None)

HTTP_LOGGERS = ("httpx", "httpcore")
_NOISE_LOGGERS = (*HTTP_LOGGERS, "asyncio")

APP_LOG_DIR = "ringback"
HTTP_LOG_DIR = "http"


def set_instance_context(name: str) -> None:
    _instance_context.set(name)


def get_instance_context() -> str | None:
    return _instance_context.get()


@contextmanager
def wake_context(name: str) -> Iterator[None]:
    """Tag every record logged inside the block with the wake *name*."""
    token = _wake_context.set(name)
    try:
        yield
    finally:
        _wake_context.reset(token)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_ringback_context(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Inject ``instance`` and, inside a wake, ``wake``."""
    event_dict["instance"] = _instance_context.get()
    wake = _wake_context.get()
    if wake is not None:
        event_dict["wake"] = wake
    return event_dict


def add_otel_context(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Inject ``trace_id`` and ``span_id``; zeroed outside a recording span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def redact_event(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Scrub credentials from the rendered message."""
    event = event_dict.get("event")
    if isinstance(event, str):
        event_dict["event"] = redact_credentials(event)
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_ringback_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_event,
    ]


def _formatter(renderer: Processor, pre_chain: list[Processor]) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    instance_name: str | None = None,
) -> None:
    """Configure logging for the process.  Safe to call more than once.

    Parameters
    ----------
    level:
        Root log level name, e.g. ``"DEBUG"``.
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_root:
        Directory for the JSON log files; no files are written when None.
    instance_name:
        Stored in the instance context and used as the log file name.
    """
    if instance_name:
        set_instance_context(instance_name)

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.WARNING)
        for handler in noisy.handlers:
            handler.close()
        noisy.handlers.clear()

    if log_root is not None:
        log_root = Path(log_root)
        log_name = instance_name or "ringback"
        root.addHandler(_json_file_handler(log_root / APP_LOG_DIR / f"{log_name}.log"))

        http_handler = _json_file_handler(log_root / HTTP_LOG_DIR / f"{log_name}.log")
        for name in HTTP_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
