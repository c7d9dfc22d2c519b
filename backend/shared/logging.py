"""Logging for the tally backend.

structlog builds the event dict and stdlib handlers render it: stdout
always, plus one timestamped file per process when a log directory is
given. Context bound with ``structlog.contextvars`` (the sync worker binds
``user_id`` and ``operation``, hydration binds ``user_id``) is merged into
every event.

LOG_FORMAT picks "json" or "console" (default). LOG_LEVEL sets the root
level (default "info").
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Collection, MutableMapping
    from typing import Any

    from structlog.typing import Processor

LOG_FILE_PREFIX = "tally"
LOG_FILE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

LOG_FORMATS = frozenset({"json", "console"})
LOG_LEVELS = frozenset({"debug", "info", "warning", "error", "critical"})


def _plain_value(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return [_plain_value(v) for v in value]
    return value


def _serialize_values(
    _logger: object,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Turn enums (game types, poker hands), dates and id tuples into plain values."""
    for key, value in event_dict.items():
        if isinstance(value, dict):
            event_dict[key] = {k: _plain_value(v) for k, v in value.items()}
        else:
            event_dict[key] = _plain_value(value)
    return event_dict


def event_processors() -> list[Processor]:
    """Chain every event runs through before a stdlib handler renders it."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _serialize_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]


def configure_structlog() -> None:
    structlog.configure(
        processors=event_processors(),
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def _env_choice(name: str, default: str, allowed: Collection[str]) -> str:
    value = os.environ.get(name, "").strip().lower() or default
    if value not in allowed:
        msg = f"Invalid {name}={value!r}. Expected one of: {', '.join(sorted(allowed))}."
        raise ValueError(msg)
    return value


def _is_test() -> bool:
    return "pytest" in sys.modules


def _handler(handler: logging.Handler, *, json_mode: bool, colors: bool) -> logging.Handler:
    renderer: Any = structlog.processors.JSONRenderer() if json_mode else structlog.dev.ConsoleRenderer(colors=colors)
    # format_exc_info runs here so each handler renders a traceback once.
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        ),
    )
    return handler


def setup_logging(log_dir: Path | str | None = None, level: int | None = None) -> Path | None:
    """Route structlog to stdout, and to a new file in ``log_dir`` when given.

    Returns the log file path, or None when no file is written (no
    ``log_dir``, or running under pytest).
    """
    json_mode = _env_choice("LOG_FORMAT", "console", LOG_FORMATS) == "json"
    if level is None:
        level = logging.getLevelNamesMapping()[_env_choice("LOG_LEVEL", "info", LOG_LEVELS).upper()]

    configure_structlog()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), json_mode=json_mode, colors=sys.stdout.isatty()))

    if log_dir is None or _is_test():
        return None

    dir_path = Path(log_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    file_path = dir_path / f"{LOG_FILE_PREFIX}_{datetime.now(tz=UTC).strftime(LOG_FILE_TIMESTAMP_FORMAT)}.log"
    root_logger.addHandler(
        _handler(logging.FileHandler(file_path, encoding="utf-8"), json_mode=json_mode, colors=False),
    )
    return file_path
