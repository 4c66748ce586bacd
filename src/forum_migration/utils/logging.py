"""Logging setup for Forum Bridge.

Every module logs through a structlog bound logger with snake_case event
names and key/value context. ``configure_logging`` sends those events to two
stdlib handlers:

- the console, rendered by Rich, one readable line per event and no
  tracebacks so progress bars stay usable;
- the log file, one JSON object per line with the full traceback of every
  failed row, which is where an operator looks to fix source data.

A run binds its ``run_id`` (and the stage binds ``entity_kind``) into the
context, so every line a run writes can be grepped out of the file.
"""

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.typing import EventDict, WrappedLogger

from forum_migration import __version__

# Keys whose values never reach a log line
REDACTED_KEYS = frozenset({"password", "api_key", "api-key", "token", "secret", "email"})


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("app", "forum-bridge")
    event_dict.setdefault("version", __version__)
    return event_dict


def _drop_exc_info(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.pop("exc_info", None)
    event_dict.pop("exception", None)
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_app_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    file_level: str = "DEBUG",
    log_format: str = "json",
) -> None:
    """Configure console and file logging.

    Args:
        level: Console level. Defaults to WARNING so progress bars stay readable.
        log_file: Path of the log file, or None for console only
        file_level: File level
        log_format: ``json`` (one object per line) or ``console`` for the file
    """
    console_level = logging.getLevelName(level.upper())
    if not isinstance(console_level, int):
        console_level = logging.WARNING
    file_log_level = logging.getLevelName(file_level.upper())
    if not isinstance(file_log_level, int):
        file_log_level = logging.DEBUG

    shared = _shared_processors()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(console_level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _drop_exc_info,
                structlog.dev.ConsoleRenderer(colors=False),
            ],
        )
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.addHandler(console_handler)
    root_logger.setLevel(min(console_level, file_log_level) if log_file else console_level)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        if log_format == "json":
            renderer: Any = structlog.processors.JSONRenderer(default=str)
        else:
            renderer = structlog.dev.ConsoleRenderer(colors=False)

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(file_log_level)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=shared,
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    renderer,
                ],
            )
        )
        root_logger.addHandler(file_handler)

    # These log every request or statement; the client and registry log their own
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, typically ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def bind_run_context(**values: Any) -> None:
    """Attach values (run_id, entity_kind) to every event until cleared."""
    structlog.contextvars.bind_contextvars(**values)


def clear_run_context(*keys: str) -> None:
    """Remove run context keys, or all of them when none are given."""
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()


def log_stage_progress(
    logger: structlog.stdlib.BoundLogger,
    entity_kind: str,
    processed: int,
    total: int,
    **counts: int,
) -> None:
    """Log how far a stage is. ``total`` is the source's row count."""
    logger.info(
        "import_progress",
        entity_kind=entity_kind,
        processed=processed,
        total=total,
        percentage=round(processed / total * 100, 1) if total else 0.0,
        **counts,
    )


def log_row_failure(
    logger: structlog.stdlib.BoundLogger,
    error: BaseException,
    entity_kind: str,
    external_id: str,
    step: str,
) -> None:
    """Log a row that failed to import.

    Call from inside the ``except`` block; the traceback is written to the
    log file only.
    """
    logger.error(
        "row_failed",
        entity_kind=entity_kind,
        external_id=external_id,
        step=step,
        error_type=type(error).__name__,
        error=str(error),
        exc_info=True,
    )


def redact(payload: Any, depth: int = 8) -> Any:
    """Copy of a request/response body with secrets and emails masked."""
    if depth <= 0:
        return "..."
    if isinstance(payload, Mapping):
        return {
            key: "[REDACTED]"
            if str(key).lower() in REDACTED_KEYS
            else redact(value, depth - 1)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [redact(item, depth - 1) for item in payload]
    return payload


def payload_preview(payload: Any, max_size: int = 10000) -> str:
    """Redacted JSON text of a body, cut at ``max_size`` characters."""
    try:
        text = json.dumps(redact(payload), default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        text = repr(payload)
    if len(text) > max_size:
        return f"{text[:max_size]}... ({len(text)} chars)"
    return text
