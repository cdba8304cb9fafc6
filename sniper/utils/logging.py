"""structlog configuration for the engine.

Console rendering for local runs, JSON lines when SNIPER_JSON_LOGS is set. Every
event carries the session id and trading mode once `bind_session` has run.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Libraries whose INFO chatter drowns out engine events
_QUIET_LIBRARIES = ("httpx", "httpcore", "apscheduler", "telegram", "aiosqlite")

# Event keys that hold a mint address
_ASSET_KEYS = ("asset", "asset_id")


def _shorten_assets(_logger, _method, event_dict: dict) -> dict:
    """Trim 44-char mint addresses to a readable prefix for console output."""
    for key in _ASSET_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > 12:
            event_dict[key] = f"{value[:6]}..{value[-4:]}"
    return event_dict


def _json_requested() -> bool:
    return os.environ.get("SNIPER_JSON_LOGS", "").strip().lower() in ("1", "true", "yes")


def setup_logging(log_level: str = "INFO", json_logs: bool | None = None) -> None:
    """Configure structlog once per process; safe to call again with a new level."""
    if json_logs is None:
        json_logs = _json_requested()

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [_shorten_assets, structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer()]

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_session(mode: str, session_id: str) -> None:
    """Attach run-wide fields (paper/live, session id) to every subsequent event."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(mode=mode, session=session_id)
