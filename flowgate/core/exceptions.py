"""Error taxonomy of the workflow engine.

Every error carries a severity, a category and whether retrying the failed
operation can help. Identifiers such as ``execution_id`` and ``node_id`` go
into ``context``; structured payloads go into ``details``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    CONCURRENCY = "concurrency"
    HUMAN_REVIEW = "human_review"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors.

    Subclasses set their defaults as class attributes; any of them can be
    overridden per instance through the constructor.
    """

    default_severity = ErrorSeverity.MEDIUM
    default_category = ErrorCategory.EXECUTION
    default_recoverable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        category: Optional[ErrorCategory] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
        **identifiers
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity or self.default_severity
        self.category = category or self.default_category
        self.recoverable = self.default_recoverable if recoverable is None else recoverable
        self.details = dict(details or {})
        self.context = dict(context or {})
        self.context.update({key: value for key, value in identifiers.items() if value is not None})
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the error for audit log entries."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class ConfigurationError(WorkflowEngineError):
    """Raised when a workflow or node configuration is invalid or missing.

    Configuration errors are fatal for the execution and never retried.
    """

    default_severity = ErrorSeverity.HIGH
    default_category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None, node_id: Optional[str] = None,
                 validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, config_key=config_key, node_id=node_id, **kwargs)
        self.validation_errors = list(validation_errors or [])
        if self.validation_errors:
            self.add_details(validation_errors=self.validation_errors)


class ToolExecutionError(WorkflowEngineError):
    """Raised when a collaborator call (model, tool, task system) fails."""

    default_severity = ErrorSeverity.HIGH
    default_recoverable = True

    def __init__(self, message: str, node_id: Optional[str] = None, tool_name: Optional[str] = None,
                 retry_attempt: int = 0, **kwargs):
        super().__init__(message, node_id=node_id, tool_name=tool_name, **kwargs)
        self.retry_attempt = retry_attempt


class HumanReviewTimeoutError(WorkflowEngineError):
    """Raised when a human review wait window elapses without a decision."""

    default_severity = ErrorSeverity.HIGH
    default_category = ErrorCategory.HUMAN_REVIEW

    def __init__(self, message: str, execution_id: Optional[str] = None, node_id: Optional[str] = None,
                 task_id: Optional[str] = None, **kwargs):
        super().__init__(message, execution_id=execution_id, node_id=node_id, task_id=task_id, **kwargs)


class ResumeMismatchError(WorkflowEngineError):
    """Raised internally when a resume event targets an execution that is not waiting.

    Never surfaced to callers: the coordinator turns it into a no-op.
    """

    default_severity = ErrorSeverity.LOW
    default_category = ErrorCategory.HUMAN_REVIEW

    def __init__(self, message: str, execution_id: Optional[str] = None, node_id: Optional[str] = None,
                 **kwargs):
        super().__init__(message, execution_id=execution_id, node_id=node_id, **kwargs)


class ConcurrencyConflictError(WorkflowEngineError):
    """Raised when an optimistic version check fails on save."""

    default_category = ErrorCategory.CONCURRENCY
    default_recoverable = True

    def __init__(self, message: str, execution_id: Optional[str] = None,
                 expected_version: Optional[int] = None, **kwargs):
        super().__init__(message, execution_id=execution_id, **kwargs)
        if expected_version is not None:
            self.add_details(expected_version=expected_version)


class StorageError(WorkflowEngineError):
    """Raised when the database rejects or fails an operation."""

    default_severity = ErrorSeverity.HIGH
    default_category = ErrorCategory.STORAGE
    default_recoverable = True

    def __init__(self, message: str, operation: Optional[str] = None, table: Optional[str] = None, **kwargs):
        super().__init__(message, operation=operation, table=table, **kwargs)


class ExecutionNotFoundError(WorkflowEngineError):
    """Raised when an execution id is unknown."""

    default_severity = ErrorSeverity.LOW
    default_category = ErrorCategory.VALIDATION

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(f"Execution '{execution_id}' not found", execution_id=execution_id, **kwargs)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Body of an HTTP error response for ``error``."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat(),
        },
        "context": error.context,
    }
