"""
Rich-based logging system with a structured, append-only file log
"""
import sys
import json
import queue
import atexit
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from pathlib import Path

from rich.logging import RichHandler
from rich.console import Console
from rich.traceback import install as install_traceback

from .constants import LOG_RETENTION_DAYS, LOG_MAX_ENTRIES


# Global console instances
_stdout_console = Console(file=sys.stdout)
_stderr_console = Console(file=sys.stderr)

# Install rich traceback handler
install_traceback(show_locals=False, width=120)

# A failing log write must never surface in the operation being logged
logging.raiseExceptions = False

_listener: Optional[logging.handlers.QueueListener] = None

# Attributes every LogRecord has; anything else arrived through `extra=`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message and event fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(timespec="seconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    rich_tracebacks: bool = True,
    console: bool = True,
) -> None:
    """
    Setup Rich logging system.

    The file log is written from a background listener thread so that
    callers never wait on disk I/O.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional structured log file path
        rich_tracebacks: Enable rich tracebacks
        console: Attach the rich stderr handler
    """
    global _listener

    log_level = getattr(logging, level.upper(), logging.INFO)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    shutdown_logging()
    root_logger.handlers.clear()

    if console:
        rich_handler = RichHandler(
            console=_stderr_console,
            show_time=True,
            show_path=False,
            rich_tracebacks=rich_tracebacks,
            markup=False,
            show_level=True,
        )
        rich_handler.setLevel(log_level)
        root_logger.addHandler(rich_handler)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            prune_log_file(log_file)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            root_logger.warning("File logging disabled: %s", e)
            return
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLineFormatter())

        log_queue: "queue.SimpleQueue[logging.LogRecord]" = queue.SimpleQueue()
        queue_handler = logging.handlers.QueueHandler(log_queue)
        queue_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(queue_handler)
        # File gets everything at DEBUG and above regardless of console level
        root_logger.setLevel(min(log_level, logging.DEBUG))

        _listener = logging.handlers.QueueListener(
            log_queue, file_handler, respect_handler_level=True
        )
        _listener.start()


def shutdown_logging() -> None:
    """Flush and stop the background file log listener"""
    global _listener
    if _listener is not None:
        _listener.stop()
        for handler in _listener.handlers:
            handler.close()
        _listener = None


atexit.register(shutdown_logging)


def prune_log_file(
    path: Path,
    retention_days: int = LOG_RETENTION_DAYS,
    max_entries: int = LOG_MAX_ENTRIES,
) -> None:
    """
    Drop entries older than the retention window and cap the entry count.

    Lines that cannot be parsed are dropped as well. Best-effort: any I/O
    failure leaves the file untouched.
    """
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return

    cutoff = datetime.now() - timedelta(days=retention_days)
    kept = []
    for line in lines:
        try:
            ts = datetime.fromisoformat(json.loads(line)["ts"])
        except (ValueError, KeyError, TypeError):
            continue
        if ts >= cutoff:
            kept.append(line)

    kept = kept[-max_entries:]
    try:
        if kept:
            path.write_text("\n".join(kept) + "\n", encoding="utf-8")
        else:
            path.unlink()
    except OSError:
        pass


def log_event(
    logger: logging.Logger,
    event: str,
    message: str = "",
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """
    Emit a structured log entry.

    Args:
        logger: Logger to emit on
        event: Event name, e.g. "session.state"
        message: Human-readable message (defaults to the event name)
        level: Logging level
        **fields: Extra structured fields stored with the entry
    """
    logger.log(level, message or event, extra={"event": event, **fields})


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_stdout_console() -> Console:
    """Get stdout console for user-facing output"""
    return _stdout_console


def get_stderr_console() -> Console:
    """Get stderr console for errors and logs"""
    return _stderr_console
