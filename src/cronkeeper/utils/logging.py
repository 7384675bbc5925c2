"""
cronkeeper · Structured Logging Setup.

structlog vor dem stdlib-``logging``: alle Events laufen über die
Handler des Root-Loggers und werden dort von einem
``ProcessorFormatter`` gerendert, damit auch APScheduler-Meldungen im
selben Format landen.

Zwei Renderer:
- Entwicklung: Farbige Konsole
- Produktion: JSON-Lines (Konsole und ``cronkeeper.jsonl``)

Verwendung in jedem Modul:
    from cronkeeper.utils.logging import get_logger
    log = get_logger(__name__)
    log.info("cron_job_started", job_id=job_id)

Der Host ruft einmal ``setup_logging(...)`` bzw.
``setup_logging_from_config(config.logging)`` auf. Ohne Setup gelten
die structlog-Defaults.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from pathlib import Path

    from cronkeeper.config import LoggingConfig

LOG_FILE_NAME = "cronkeeper.jsonl"
_LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
_LOG_FILE_BACKUPS = 3

# Loggen jeden Tick bzw. jeden Callback auf INFO/DEBUG
_QUIET_LOGGERS = ("apscheduler", "asyncio")


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Gibt einen structlog-Logger zurück."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def _build_handlers(log_level: int, log_dir: Path | None, console: bool) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setLevel(log_level)
        handlers.append(stream)
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        # Datei bekommt immer alles ab DEBUG
        rotating = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=_LOG_FILE_MAX_BYTES,
            backupCount=_LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        rotating.setLevel(logging.DEBUG)
        handlers.append(rotating)
    return handlers


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Path | None = None,
    json_logs: bool = False,
    console: bool = True,
) -> None:
    """Initialisiert das Logging-System. Mehrfacher Aufruf ersetzt das alte Setup.

    Args:
        level: Log-Level als String (DEBUG, INFO, WARNING, ERROR).
            Unbekannte Werte fallen auf INFO zurück.
        log_dir: Verzeichnis für ``cronkeeper.jsonl``. None = keine Datei-Logs.
        json_logs: True = JSON statt farbiger Konsole.
        console: True = Log-Ausgabe auf stderr.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=_build_handlers(log_level, log_dir, console),
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    shared = _shared_processors()
    structlog.configure(
        processors=[
            *shared,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if json_logs:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in logging.root.handlers:
        handler.setFormatter(formatter)


def setup_logging_from_config(config: LoggingConfig) -> None:
    """``setup_logging`` mit den Werten einer LoggingConfig."""
    setup_logging(
        level=config.level,
        log_dir=config.log_dir.expanduser() if config.log_dir is not None else None,
        json_logs=config.json_logs,
        console=config.console,
    )


def bind_context(**kwargs: Any) -> None:
    """Bindet Kontext-Variablen (z.B. ``job_id``) an alle folgenden Events."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
