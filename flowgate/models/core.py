"""Core Pydantic models for executions, steps and human review."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .context import ExecutionContext
from .nodes import ExternalTaskConfig, NodeType
from .workflow import WorkflowDefinition


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING_HUMAN_REVIEW = "waiting_human_review"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.ABORTED,
})

ACTIVE_STATUSES = frozenset({
    ExecutionStatusEnum.PENDING,
    ExecutionStatusEnum.RUNNING,
    ExecutionStatusEnum.WAITING_HUMAN_REVIEW,
})


class StepStatusEnum(str, Enum):
    """Enumeration of step statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_HUMAN_REVIEW = "waiting_human_review"


class LogEventType(str, Enum):
    """Enumeration of execution log event types."""
    WORKFLOW_START = "workflow_start"
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    NODE_RETRY = "node_retry"
    REVIEW_REQUESTED = "review_requested"
    REVIEW_RESUMED = "review_resumed"
    REVIEW_TIMEOUT = "review_timeout"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_ABORTED = "workflow_aborted"
    WORKFLOW_RETRY = "workflow_retry"


class ReviewDecision(str, Enum):
    """Outcome of a human review."""
    APPROVE = "approve"
    REJECT = "reject"

    @classmethod
    def parse(cls, value: Any) -> Optional['ReviewDecision']:
        """Map the action vocabulary of task systems onto a decision."""
        if isinstance(value, ReviewDecision):
            return value
        if isinstance(value, bool):
            return cls.APPROVE if value else cls.REJECT
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized in ("approve", "approved", "accept", "accepted", "proceed", "yes", "true"):
            return cls.APPROVE
        if normalized in ("reject", "rejected", "deny", "denied", "decline", "no", "false"):
            return cls.REJECT
        return None


class ReviewMode(str, Enum):
    """How the decision of a human review reaches the engine."""
    INTERNAL = "internal"
    EXTERNAL_TASK = "external_task"
    POLLING = "polling"


class StepError(BaseModel):
    """Error recorded on a step."""
    message: str
    code: str
    retry_attempt: int = 0
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class StepReview(BaseModel):
    """Outcome of the human review attached to a step."""
    task_id: Optional[str] = None
    approved: Optional[bool] = None
    decision: Optional[ReviewDecision] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class Step(BaseModel):
    """Persisted record of one node visit."""
    step_id: str
    node_id: str
    type: NodeType
    status: StepStatusEnum
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[StepError] = None
    retry_attempt: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    human_review: Optional[StepReview] = None


class WaitingInfo(BaseModel):
    """Which external decision a suspended execution is blocked on."""
    node_id: str
    task_id: str
    created_at: datetime = Field(default_factory=utcnow)
    timeout_at: datetime
    waiting_for: str = "human_approval"
    mode: ReviewMode = ReviewMode.INTERNAL
    review_type: str = "approval"
    instructions: Optional[str] = None


class ExecutionError(BaseModel):
    """Error that ended an execution."""
    message: str
    code: str
    node_id: Optional[str] = None
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class ExecutionRecord(BaseModel):
    """Durable record of one execution, the unit the store persists."""
    execution_id: str
    workflow_id: str
    status: ExecutionStatusEnum = ExecutionStatusEnum.PENDING
    definition: Optional[WorkflowDefinition] = None
    steps: List[Step] = Field(default_factory=list)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    current_node: Optional[str] = None
    next_nodes: List[str] = Field(default_factory=list, description="Continuation: nodes still to visit")
    waiting_info: Optional[WaitingInfo] = None
    retry_count: int = 0
    max_retries: int = 3
    node_visits: int = 0
    error: Optional[ExecutionError] = None
    final_output: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def last_step_for(self, node_id: str) -> Optional[Step]:
        for step in reversed(self.steps):
            if step.node_id == node_id:
                return step
        return None


class ExecutionOptions(BaseModel):
    """Caller options for ``execute``."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    wait: bool = Field(False, description="Return only once the execution suspends or terminates")
    execution_id: Optional[str] = None
    max_retries: Optional[int] = None
    node_timeout: Optional[float] = None
    human_review_timeout_hours: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecuteResult(BaseModel):
    """Result of ``execute``."""
    execution_id: str
    status: ExecutionStatusEnum
    error: Optional[str] = None


class TaskEvent(BaseModel):
    """Inbound decision event from the external task system."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    task_id: Optional[str] = None
    execution_id: Optional[str] = None
    node_id: Optional[str] = None
    action: str
    reviewed_by: Optional[str] = None
    comments: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SuspendSignal(BaseModel):
    """Returned by nodes that must wait for a human decision."""
    reason: str = "human_review"
    review_type: str = "approval"
    instructions: str = "Please review this workflow step"
    review_data: Optional[Any] = None
    external_task: Optional[ExternalTaskConfig] = None
    timeout_hours: Optional[float] = None


class NodeResult(BaseModel):
    """Outcome of executing one node."""
    success: bool = True
    output: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    next_path: Optional[str] = None
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    context_removals: List[str] = Field(default_factory=list)
    suspend: Optional[SuspendSignal] = None


class LogEntry(BaseModel):
    """Audit log entry for execution events."""
    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    execution_id: str = Field(..., description="ID of the execution")
    node_id: Optional[str] = Field(None, description="ID of the node that generated the log")
    event_type: LogEventType = Field(..., description="Type of event")
    message: str = Field(..., description="Log message")
    details: Optional[Dict[str, Any]] = Field(None, description="Event details")
