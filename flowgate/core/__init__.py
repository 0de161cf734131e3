"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    ConfigurationError,
    ToolExecutionError,
    HumanReviewTimeoutError,
    ResumeMismatchError,
    ConcurrencyConflictError,
    StorageError,
    ExecutionNotFoundError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "ConfigurationError",
    "ToolExecutionError",
    "HumanReviewTimeoutError",
    "ResumeMismatchError",
    "ConcurrencyConflictError",
    "StorageError",
    "ExecutionNotFoundError",
    "setup_logging",
    "get_logger",
]
