from __future__ import annotations

import logging
import sys
import time
import traceback
import contextvars
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Iterator, Optional, Tuple

# (guild_id, session_id) of the session call running in the current task
_SESSION_SCOPE: contextvars.ContextVar[Tuple[Optional[int], Optional[str]]] = contextvars.ContextVar(
    "scoreboard_session_scope", default=(None, None)
)

_CONFIGURED = False

LOGGER_PREFIX = "scoreboard_bot"
DEFAULT_FORMAT = "%(asctime)s %(levelname)-5s %(name)s [guild=%(guild_id)s session=%(session_id)s] %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3


class SessionScopeFilter(logging.Filter):
    """Stamp ``guild_id`` and ``session_id`` of the current session scope on each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        guild_id, session_id = _SESSION_SCOPE.get()
        if not hasattr(record, "guild_id"):
            record.guild_id = guild_id if guild_id is not None else "-"
        if not hasattr(record, "session_id"):
            record.session_id = session_id or "-"
        return True


def parse_level(value: Optional[str], default: int = logging.INFO) -> int:
    """LOG_LEVEL value ("debug", "INFO", "10") to a logging level."""
    if not value:
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def configure_logging(
    *,
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    force: bool = False,
) -> None:
    """
    Root logging for the bot: stdout plus an optional size-rotated log file.

    Records outside a session show ``guild=- session=-``. ``force`` drops the
    existing root handlers first (tests use this).
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    root = logging.getLogger()
    if force:
        for h in list(root.handlers):
            root.removeHandler(h)
    root.setLevel(level)

    handlers = [logging.StreamHandler(stream=sys.stdout)]
    if log_file:
        try:
            handlers.append(
                RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8")
            )
        except OSError:
            root.exception("Cannot open log file %s, logging to stdout only", log_file)

    for handler in handlers:
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
        handler.addFilter(SessionScopeFilter())
        root.addHandler(handler)

    # discord.py is chatty at INFO about gateway reconnects
    logging.getLogger("discord").setLevel(max(level, logging.WARNING))
    _CONFIGURED = True


def current_session_scope() -> Tuple[Optional[int], Optional[str]]:
    return _SESSION_SCOPE.get()


@contextmanager
def session_scope(session_id: Optional[str], guild_id: Optional[int] = None) -> Iterator[None]:
    """
    Tag every record logged inside the block with the session and its guild.

        with session_scope(session.session_id, session.guild_id):
            await self._process_batch(runtime, urls)
    """
    token = _SESSION_SCOPE.set((guild_id, session_id))
    try:
        yield
    finally:
        _SESSION_SCOPE.reset(token)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Logger under the ``scoreboard_bot`` prefix, e.g. ``get_logger("line_parser")``."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}" if name else LOGGER_PREFIX)


def log_exception(logger: logging.Logger, exc: BaseException, *, context: str, extra: Optional[Dict[str, Any]] = None) -> None:
    """Error record with traceback for failures that are handled but unexpected (e.g. disk errors per image)."""
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error("%s: %s: %s | %r\n%s", context, type(exc).__name__, exc, extra or {}, tb)


@contextmanager
def timed(logger: logging.Logger, action: str, *, level: int = logging.DEBUG, extra: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Log how long ``action`` took (pipeline steps, store writes)."""
    start = time.monotonic()
    try:
        yield
    except Exception:
        logger.warning("%s failed after %.3fs %r", action, time.monotonic() - start, extra or {})
        raise
    logger.log(level, "%s took %.3fs %r", action, time.monotonic() - start, extra or {})
