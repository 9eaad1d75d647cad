"""Logging setup shared by the API process and the Celery workers.

Both stdlib loggers (used by the orchestrator internals) and structlog
loggers (used for lifecycle events) end up on a single stdout handler that
renders JSON lines, or a coloured console format at DEBUG.

Two context variables are folded into each record when set:

``request_id``
    bound by the HTTP middleware for the duration of a request.
``session_id``
    bound by the worker pool while it drives a session; child tasks inherit it.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
session_id_var: ContextVar[str | None] = ContextVar("session_id", default=None)

_CONTEXT_VARS: tuple[tuple[str, ContextVar[str | None]], ...] = (
    ("request_id", request_id_var),
    ("session_id", session_id_var),
)

REDACTED = "[REDACTED]"
_SECRET_MARKERS = ("api_key", "api-key", "apikey", "password", "secret", "token", "authorization")

# Third-party loggers that are only interesting when debugging.
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "aiosqlite", "celery.redirected")


def _is_secret(key: Any) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def add_context_ids(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key, var in _CONTEXT_VARS:
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def redact_secrets(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Mask secret-looking keys at the top level and inside dict values.

    Nested dicts are copied before masking so the caller's headers mapping
    is left untouched.
    """
    for key, value in list(event_dict.items()):
        if _is_secret(key):
            event_dict[key] = REDACTED
        elif isinstance(value, dict) and any(_is_secret(k) for k in value):
            event_dict[key] = {k: REDACTED if _is_secret(k) else v for k, v in value.items()}
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        add_context_ids,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _stdout_handler(renderer: Processor, pre_chain: list[Processor]) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    return handler


def configure_logging(log_level: str = "INFO") -> None:
    """(Re)configure logging for the process.

    Safe to call more than once: the root logger always ends up with exactly
    one handler.
    """
    level_name = log_level.upper()
    debug = level_name == "DEBUG"
    renderer: Processor = (
        structlog.dev.ConsoleRenderer(colors=True) if debug else structlog.processors.JSONRenderer()
    )
    pre_chain = _pre_chain()

    root = logging.getLogger()
    root.handlers[:] = [_stdout_handler(renderer, pre_chain)]
    level = getattr(logging, level_name, logging.INFO)
    root.setLevel(level if isinstance(level, int) else logging.INFO)

    quiet_level = logging.NOTSET if debug else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
