"""Logging setup for taskforge runs.

Records are tagged with the ``run_id`` and ``agent_type`` of the agent that
emitted them (see :func:`agent_context`), so a parent and its concurrently
running subagents can be told apart in one log file.
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

__all__ = ["RunContextFilter", "agent_context", "current_agent", "resolve_level", "setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".taskforge" / "logs"
_LOG_FILE_NAME = "taskforge.log"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(run_id)s %(agent_type)s | %(name)s | %(message)s"
_NO_AGENT = "-"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CURRENT_AGENT: contextvars.ContextVar[tuple[str, str] | None] = contextvars.ContextVar(
    "taskforge_current_agent", default=None
)
_CONFIGURED = False
_LOG_PATH: Path | None = None


@contextmanager
def agent_context(run_id: str, agent_type: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``run_id``/``agent_type``.

    Tasks created inside the block inherit the tag; a nested block (a
    subagent) overrides it until it exits.
    """

    token = _CURRENT_AGENT.set((run_id, agent_type))
    try:
        yield
    finally:
        _CURRENT_AGENT.reset(token)


def current_agent() -> tuple[str, str] | None:
    return _CURRENT_AGENT.get()


class RunContextFilter(logging.Filter):
    """Adds ``run_id`` and ``agent_type`` attributes to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        agent = _CURRENT_AGENT.get()
        run_id, agent_type = agent if agent is not None else (_NO_AGENT, _NO_AGENT)
        if not hasattr(record, "run_id"):
            record.run_id = run_id
        if not hasattr(record, "agent_type"):
            record.agent_type = agent_type
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
    """Route root logging to a rotating file and, optionally, stderr.

    Returns the log file path. Repeated calls are no-ops unless ``force``.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        # stderr, so stdout stays free for run results.
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context_filter = RunContextFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_libraries(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def resolve_level(value: str | int | None, *, debug: bool = False, default: int = logging.INFO) -> int:
    """Level for a ``log_level`` setting; ``debug`` forces ``DEBUG``.

    Accepts names (``"warning"``), numbers (``"15"`` or ``15``) and falls
    back to ``default`` for anything unrecognised.
    """

    if debug:
        return logging.DEBUG
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = value.strip()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text.upper())
    return level if isinstance(level, int) else default


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("TASKFORGE_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _quiet_libraries(root_level: int) -> None:
    # HTTP client chatter stays at WARNING even when the run logs at DEBUG.
    quiet_level = max(root_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
