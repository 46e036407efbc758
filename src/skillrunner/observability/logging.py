"""Structured logging for the CLI and the workflow engine.

Two sinks, configured independently:

- Console: rich output on stderr, level chosen by ``-v`` (WARNING, INFO, DEBUG).
- File: with ``--log`` every event, DEBUG included, is appended as one JSON
  object per line to ``<log_dir>/debug.jsonl``.

Engine code logs snake_case events with key/value context::

    log = get_logger(__name__)
    log.info("phase_completed", phase="security", tokens=812)

While a workflow runs, ``run_context`` binds the skill id and checkpoint
fingerprint so every event of that run carries them, including events
logged from concurrently running phase tasks.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from collections.abc import Iterator

    from structlog.typing import EventDict, Processor, WrappedLogger

LOG_FILE_NAME = "debug.jsonl"

# Dependencies whose DEBUG output drowns out workflow events
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "tiktoken")

_configured = False
_file_handler: logging.FileHandler | None = None
_logs_dir: Path | None = None


def verbosity_level(verbosity: int) -> int:
    """Console level for a ``-v`` count: 0 WARNING, 1 INFO, 2+ DEBUG."""
    if verbosity <= 0:
        return logging.WARNING
    return logging.INFO if verbosity == 1 else logging.DEBUG


class JSONLFileHandler(logging.FileHandler):
    """File handler that writes one JSON object per record.

    structlog events arrive with the event dict in ``record.msg``; its keys
    become top-level fields next to timestamp, level, logger and message.
    Plain stdlib records contribute only their formatted message.
    """

    @staticmethod
    def to_entry(record: logging.LogRecord) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        if isinstance(record.msg, dict):
            context = {k: v for k, v in record.msg.items() if k not in ("level", "timestamp")}
            entry["message"] = context.pop("event", "")
            entry.update(context)
        else:
            entry["message"] = record.getMessage()
        return entry

    def emit(self, record: logging.LogRecord) -> None:
        """Append the record as a JSON line."""
        try:
            if self.stream is None:
                self.stream = self._open()
            self.stream.write(json.dumps(self.to_entry(record), default=str) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


def _drop_rich_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    # RichHandler already shows level and time
    event_dict.pop("level", None)
    event_dict.pop("timestamp", None)
    return event_dict


def _console_handler(verbosity: int, pre_chain: list[Processor]) -> RichHandler:
    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level=verbosity_level(verbosity),
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _drop_rich_fields,
                structlog.dev.ConsoleRenderer(colors=False, pad_event_to=0),
            ],
        )
    )
    return handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    log_dir: Path | None = None,
) -> None:
    """Configure console and optional file logging.

    Safe to call again; a previously opened log file is closed first.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG on the console.
        log_to_file: Also write every event to ``log_dir / LOG_FILE_NAME``.
        log_dir: Directory for the log file. Required if log_to_file=True.

    Raises:
        ValueError: If log_to_file=True but log_dir is not provided.
    """
    global _configured, _file_handler, _logs_dir

    if log_to_file and log_dir is None:
        raise ValueError("log_dir is required when log_to_file=True")

    close_file_logging()

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    handlers: list[logging.Handler] = [_console_handler(verbosity, shared)]

    if log_to_file and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        _logs_dir = log_dir
        _file_handler = JSONLFileHandler(str(log_dir / LOG_FILE_NAME), mode="a")
        _file_handler.setLevel(logging.DEBUG)
        handlers.append(_file_handler)

    # The file sink wants DEBUG even when the console shows less
    root_level = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=root_level, format="%(message)s", handlers=handlers, force=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Get a structured logger, configuring defaults on first use.

    Args:
        name: Logger name (typically __name__).
    """
    if not _configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def run_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every event logged inside the block.

    Bindings live in context variables, so asyncio tasks created inside
    the block inherit them and nothing leaks into other runs.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logs_dir() -> Path | None:
    """Directory of the JSONL log, or None while file logging is off."""
    return _logs_dir


def close_file_logging() -> None:
    """Flush and close the JSONL log, if open."""
    global _file_handler, _logs_dir
    if _file_handler is not None:
        _file_handler.close()
        logging.getLogger().removeHandler(_file_handler)
        _file_handler = None
        _logs_dir = None
