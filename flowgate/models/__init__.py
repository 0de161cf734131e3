"""Data models for the workflow engine."""

from .nodes import NodeType, NODE_CONFIG_MODELS
from .context import ExecutionContext
from .workflow import (
    ValidationResult,
    NodeDefinition,
    EdgeCondition,
    EdgeConditionType,
    EdgeDefinition,
    RetryPolicy,
    WorkflowConfig,
    WorkflowDefinition,
)
from .core import (
    ExecutionStatusEnum,
    StepStatusEnum,
    LogEventType,
    ReviewDecision,
    ReviewMode,
    Step,
    StepError,
    StepReview,
    WaitingInfo,
    ExecutionError,
    ExecutionRecord,
    ExecutionOptions,
    ExecuteResult,
    TaskEvent,
    SuspendSignal,
    NodeResult,
    LogEntry,
)

__all__ = [
    "NodeType",
    "NODE_CONFIG_MODELS",
    "ExecutionContext",
    "ValidationResult",
    "NodeDefinition",
    "EdgeCondition",
    "EdgeConditionType",
    "EdgeDefinition",
    "RetryPolicy",
    "WorkflowConfig",
    "WorkflowDefinition",
    "ExecutionStatusEnum",
    "StepStatusEnum",
    "LogEventType",
    "ReviewDecision",
    "ReviewMode",
    "Step",
    "StepError",
    "StepReview",
    "WaitingInfo",
    "ExecutionError",
    "ExecutionRecord",
    "ExecutionOptions",
    "ExecuteResult",
    "TaskEvent",
    "SuspendSignal",
    "NodeResult",
    "LogEntry",
]
