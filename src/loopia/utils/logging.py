"""Logging setup for Loopia.

Library modules log through plain ``logging.getLogger(__name__)`` loggers,
all children of the ``loopia`` logger. Applications call
:func:`configure_logging` once to attach handlers to that logger; code that
wants structured fields uses :func:`get_logger`:

    >>> configure_logging(LogConfig(log_level="INFO", log_format="json"))
    >>> get_logger("runs").info("Run complete", run_id="a1b2", repeat_count=30)
"""

import functools
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal, MutableMapping, Optional, Tuple

ROOT_LOGGER_NAME = "loopia"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
# Keyword arguments the logging module itself understands.
_RESERVED_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})


def _numeric_level(name: str, what: str = "log_level") -> int:
    if name.upper() not in _LEVELS:
        raise ValueError(f"{what} must be one of {', '.join(_LEVELS)}, got {name!r}")
    return getattr(logging, name.upper())


def _logger_name(component: Optional[str]) -> str:
    return f"{ROOT_LOGGER_NAME}.{component}" if component else ROOT_LOGGER_NAME


@dataclass
class LogConfig:
    """How the ``loopia`` logger should emit records.

    ``component_levels`` maps dotted names below ``loopia`` (for example
    ``"engine.codec"``) to their own level. The log file, when set, rotates
    at ``max_file_size_mb`` keeping ``backup_count`` old files.
    """

    log_level: LogLevel = "INFO"
    log_format: LogFormat = "text"
    log_file: Optional[str] = None
    component_levels: Dict[str, LogLevel] = field(default_factory=dict)
    max_file_size_mb: int = 10
    backup_count: int = 5
    include_timestamp: bool = True

    def __post_init__(self) -> None:
        _numeric_level(self.log_level)
        if self.log_format not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json', got {self.log_format!r}")
        for component, level in self.component_levels.items():
            _numeric_level(level, what=f"level for {component!r}")


def _structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return getattr(record, "extra_fields", None) or {}


class JSONFormatter(logging.Formatter):
    """Renders each record as a single JSON line.

    Structured fields from :class:`LoopiaLogger` become top-level keys next
    to ``timestamp`` (UTC, millisecond precision), ``level``, ``component``
    (last part of the logger name) and ``message``.
    """

    def format(self, record: logging.LogRecord) -> str:
        stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
        entry: Dict[str, Any] = {
            "timestamp": f"{stamp}.{int(record.msecs):03d}Z",
            "level": record.levelname,
            "component": record.name.rpartition(".")[2],
            "message": record.getMessage(),
        }
        entry.update(_structured_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """``[time | ]LEVEL | logger | message [key=value, ...]`` for terminals."""

    def __init__(self, include_timestamp: bool = True) -> None:
        layout = "%(levelname)-8s | %(name)s | %(message)s"
        if include_timestamp:
            layout = "%(asctime)s | " + layout
        super().__init__(fmt=layout, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        fields = _structured_fields(record)
        if not fields:
            return rendered
        suffix = " [" + ", ".join(f"{key}={value}" for key, value in fields.items()) + "]"
        # Fields go on the message line, ahead of any traceback.
        head, newline, tail = rendered.partition("\n")
        return head + suffix + newline + tail


class LoopiaLogger(logging.LoggerAdapter):
    """Adapter that turns unknown keyword arguments into structured fields.

    ``log.info("Run complete", run_id="r1")`` attaches ``{"run_id": "r1"}`` to
    the record as ``extra_fields``, which both formatters render.
    """

    def __init__(self, logger: logging.Logger, component: str) -> None:
        super().__init__(logger, {})
        self.component = component

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        fields = {key: kwargs.pop(key) for key in list(kwargs) if key not in _RESERVED_KWARGS}
        kwargs.setdefault("extra", {})["extra_fields"] = fields
        return msg, kwargs


def _build_handlers(config: LogConfig) -> List[logging.Handler]:
    formatter: logging.Formatter = (
        JSONFormatter() if config.log_format == "json"
        else TextFormatter(include_timestamp=config.include_timestamp)
    )
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.log_file:
        path = Path(config.log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        ))
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def configure_logging(config: Optional[LogConfig] = None) -> None:
    """Install handlers on the ``loopia`` logger, replacing earlier ones."""
    config = config or LogConfig()

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for old in list(root.handlers):
        root.removeHandler(old)
        old.close()
    for handler in _build_handlers(config):
        root.addHandler(handler)
    root.setLevel(_numeric_level(config.log_level))
    root.propagate = False

    for component, level in config.component_levels.items():
        set_level(level, component)


@functools.lru_cache(maxsize=None)
def get_logger(component: str) -> LoopiaLogger:
    """Structured logger for ``loopia.<component>``."""
    return LoopiaLogger(logging.getLogger(_logger_name(component)), component)


def set_level(level: LogLevel, component: Optional[str] = None) -> None:
    logging.getLogger(_logger_name(component)).setLevel(_numeric_level(level))
