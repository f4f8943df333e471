from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog
from structlog.typing import EventDict, Processor

from tubefeed.config import AppSettings

LOG_FILE_NAME = "tubefeed.log"
TELEMETRY_LOG_FILE_NAME = "tubefeed-telemetry.log"
ROOT_LOGGER_NAME = "tubefeed"
TELEMETRY_LOGGER_NAME = "tubefeed.telemetry"
# googleapiclient logs every discovery fetch and request at INFO.
_QUIET_LOGGERS: tuple[str, ...] = (
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "googleapiclient.http",
)


def configure_application_logging(
    settings: AppSettings,
    *,
    console_stream: TextIO | None = None,
) -> Path:
    """
    Route the `tubefeed` logger tree to the console and to JSON files.

    The console gets human-readable lines at `settings.log_level` on
    `console_stream` (stdout unless given; scripts that print results pass
    stderr). `tubefeed.log` keeps everything at DEBUG. Telemetry events only
    reach `tubefeed-telemetry.log`. Calling this again replaces the handlers.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    stream = console_stream if console_stream is not None else sys.stdout

    _configure_structlog()

    app_logger = _isolated_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    _attach(
        app_logger,
        logging.StreamHandler(stream=stream),
        level=_resolve_log_level(settings.log_level),
        formatter=_console_formatter(colors=_is_tty(stream)),
    )
    _attach(
        app_logger,
        logging.FileHandler(log_file, encoding="utf-8"),
        level=logging.DEBUG,
        formatter=_json_formatter(),
    )

    telemetry_logger = _isolated_logger(TELEMETRY_LOGGER_NAME, logging.INFO)
    _attach(
        telemetry_logger,
        logging.FileHandler(settings.log_dir / TELEMETRY_LOG_FILE_NAME, encoding="utf-8"),
        level=logging.INFO,
        formatter=_json_formatter(),
    )

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app_logger.info(
        "logging configured console_level=%s log_dir=%s",
        settings.log_level.upper(),
        settings.log_dir,
    )
    return log_file


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _isolated_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _attach(
    logger: logging.Logger,
    handler: logging.Handler,
    *,
    level: int,
    formatter: logging.Formatter,
) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def _resolve_log_level(raw_level: str) -> int:
    level = logging.getLevelName(raw_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _console_formatter(*, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
    )


def _json_formatter() -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            _add_origin,
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
    )


def _add_origin(
    _logger: logging.Logger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # Ticker and per-tick worker threads are told apart by name.
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["thread_name"] = record.threadName
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
    return event_dict


def _is_tty(stream: TextIO) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False
