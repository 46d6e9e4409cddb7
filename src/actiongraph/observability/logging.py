"""Structured logging for actiongraph.

Events are structlog event dicts. Two sinks render them:

- Console (stderr, via rich): WARNING by default, INFO with ``-v``, DEBUG
  with ``-vv``.
- JSONL file (``{log_dir}/debug.jsonl``): every event, one JSON object per
  line, enabled with ``--log``.

While an Action runs, the runner binds ``action_id`` and ``action_type``
with structlog contextvars. Both sinks show them, so every line logged from
inside ``apply`` or the change recorder can be traced back to its Action.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from pathlib import Path

    from structlog.typing import EventDict, Processor, WrappedLogger

LOG_FILENAME = "debug.jsonl"

_ACTION_KEYS = ("action_type", "action_id")
# Rendered by RichHandler itself.
_CONSOLE_DROPPED = ("level", "timestamp", "logger", "exc_info")

_configured = False
_file_handler: logging.FileHandler | None = None

_SHARED_PROCESSORS: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def render_console(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> str:
    """Render ``[ActionType _vnid] event key=value ...`` for the console."""
    for key in _CONSOLE_DROPPED:
        event_dict.pop(key, None)
    action = " ".join(str(event_dict.pop(k)) for k in _ACTION_KEYS if k in event_dict)
    event = str(event_dict.pop("event", ""))
    pairs = " ".join(f"{k}={v!r}" for k, v in sorted(event_dict.items()))
    parts = [f"[{action}]" if action else "", event, pairs]
    return " ".join(p for p in parts if p)


def _console_handler(verbosity: int) -> logging.Handler:
    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level={0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG),
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                render_console,
            ],
        )
    )
    return handler


def _jsonl_handler(log_dir: Path) -> logging.FileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / LOG_FILENAME, mode="a", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(default=str),
            ],
        )
    )
    return handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Route structlog events to the console and, optionally, a JSONL file.

    Safe to call again: the previous file handler is closed first.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG on the console.
        log_to_file: Also write every event to ``log_dir/debug.jsonl``.
        log_dir: Directory for the JSONL file. Required if log_to_file=True.

    Raises:
        ValueError: If log_to_file=True but log_dir is not provided.
    """
    global _configured, _file_handler

    if log_to_file and log_dir is None:
        raise ValueError("log_dir is required when log_to_file=True")

    close_file_logging()

    handlers = [_console_handler(verbosity)]
    if log_to_file and log_dir is not None:
        _file_handler = _jsonl_handler(log_dir)
        handlers.append(_file_handler)

    root_level = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=root_level, handlers=handlers, force=True)

    # Module-level loggers are created at import, before the CLI knows the
    # verbosity, so bound loggers must not be cached.
    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Get a structured logger, configuring logging with defaults if needed."""
    if not _configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


def close_file_logging() -> None:
    """Detach and close the JSONL file handler, if one is open."""
    global _file_handler
    if _file_handler is not None:
        logging.getLogger().removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
