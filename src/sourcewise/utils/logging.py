"""Process logging for sourcewise.

Every record passes through :class:`TurnContextFilter`, which stamps it with
the notebook and turn that were active when it was emitted. Orchestrated turns
open :func:`turn_context` so tool tasks spawned inside a turn inherit the tag.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Iterator

LOG_DIR_ENV = "SOURCEWISE_LOG_DIR"
LOG_FILE_NAME = "sourcewise.log"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(turn)s] %(name)s: %(message)s"

_DEFAULT_LOG_DIR = Path.home() / ".sourcewise" / "logs"
_THIRD_PARTY: tuple[str, ...] = ("httpx", "httpcore", "openai")
_NO_TURN = "-"

_active_turn: ContextVar[str] = ContextVar("sourcewise_turn", default=_NO_TURN)
_log_path: Path | None = None


def describe_turn(notebook_id: str, turn_id: str) -> str:
    """Short tag identifying a turn in log lines."""

    return f"{notebook_id or '~'}/{turn_id[:8]}"


def current_turn() -> str:
    return _active_turn.get()


@contextmanager
def turn_context(notebook_id: str, turn_id: str) -> Iterator[str]:
    """Tag log records emitted inside the block with the given turn."""

    tag = describe_turn(notebook_id, turn_id)
    token = _active_turn.set(tag)
    try:
        yield tag
    finally:
        _active_turn.reset(token)


class TurnContextFilter(logging.Filter):
    """Attach the active turn tag as ``record.turn``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "turn"):
            record.turn = _active_turn.get()
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install rotating file and console handlers on the root logger.

    Repeated calls return the existing log path unless ``force`` is set. The
    directory comes from ``log_dir``, then ``SOURCEWISE_LOG_DIR``, then
    ``~/.sourcewise/logs``.
    """

    global _log_path
    if _log_path is not None and not force:
        return _log_path

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / LOG_FILE_NAME

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in _build_handlers(path, console=console, max_bytes=max_bytes, backup_count=backup_count):
        handler.setLevel(level)
        root.addHandler(handler)
    root.setLevel(level)
    logging.captureWarnings(True)

    # Client libraries log every request at INFO; keep them at WARNING unless asked for less.
    for name in _THIRD_PARTY:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _log_path = path
    return path


def get_log_path() -> Path | None:
    """Return the log file configured by :func:`setup_logging`, if any."""

    return _log_path


def _build_handlers(path: Path, *, console: bool, max_bytes: int, backup_count: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    context_filter = TurnContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
    return handlers


__all__ = [
    "LOG_DIR_ENV",
    "TurnContextFilter",
    "current_turn",
    "describe_turn",
    "get_log_path",
    "setup_logging",
    "turn_context",
]
