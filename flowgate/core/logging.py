"""Logging setup for the workflow engine.

Log records carry the fields of the execution they were emitted for. The
walker sets ``execution_id`` and ``node_id`` through ``set_logging_context``;
the fields live in a context variable, so executions interleaving on the
event loop never see each other's fields.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

# Third-party loggers that are too chatty at INFO
_LIBRARY_LEVELS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "anthropic": logging.WARNING,
    "asyncio": logging.WARNING,
}

_execution_fields: ContextVar[Optional[Dict[str, Any]]] = ContextVar("flowgate_execution_fields", default=None)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, execution fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "execution_fields", None) or {})
        payload["source"] = f"{record.module}:{record.funcName}:{record.lineno}"

        if record.exc_info and record.exc_info[0] is not None:
            error_type, error, tb = record.exc_info
            payload["error"] = {
                "type": error_type.__name__,
                "message": str(error),
                "traceback": "".join(traceback.format_exception(error_type, error, tb)),
            }

        return json.dumps(payload, default=str)


class ExecutionContextFilter(logging.Filter):
    """Copies the current execution fields onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = dict(_execution_fields.get() or {})
        fields.update(getattr(record, "execution_fields", None) or {})
        record.execution_fields = fields
        return True


_context_filter = ExecutionContextFilter()


def _build_handlers(log_file: Optional[str], max_size: int, backup_count: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))
    return handlers


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the engine process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; the file is rotated at ``max_size`` bytes
        log_format: Format string for text output, ignored when ``structured``
        structured: Emit JSON lines instead of text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    level_name = level.upper()
    if structured:
        formatter: logging.Formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level_name))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    for handler in _build_handlers(log_file, max_size, backup_count):
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name, library_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(library_level)
    logging.getLogger("flowgate").setLevel(logging.DEBUG if level_name == "DEBUG" else logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Attach fields such as ``execution_id`` to later records of the current task."""
    current = dict(_execution_fields.get() or {})
    current.update(fields)
    _execution_fields.set(current)


def clear_logging_context():
    _execution_fields.set(None)


def get_logging_context() -> Dict[str, Any]:
    """Return a copy of the fields attached to the current task."""
    return dict(_execution_fields.get() or {})


class RetryLogger:
    """Logs the attempts of one retried operation, such as a tool call or task creation."""

    def __init__(self, operation: str):
        self.operation = operation
        self.logger = get_logger("flowgate.retry")

    def _log(self, level: int, message: str, **fields):
        self.logger.log(level, message, extra={"execution_fields": {"operation": self.operation, **fields}})

    def attempt_failed(self, error: Exception, attempt: int, max_attempts: int, delay: float):
        self._log(
            logging.WARNING,
            f"{self.operation} failed on attempt {attempt}/{max_attempts}, retrying in {delay:.2f}s: {error}",
            attempt=attempt, max_attempts=max_attempts, error_type=type(error).__name__,
        )

    def recovered(self, attempts_used: int):
        self._log(logging.INFO, f"{self.operation} succeeded after {attempts_used} attempts",
                  attempts_used=attempts_used)

    def gave_up(self, error: Exception, attempts_used: int):
        self._log(
            logging.ERROR,
            f"{self.operation} failed after {attempts_used} attempts: {error}",
            attempts_used=attempts_used, error_type=type(error).__name__,
        )
