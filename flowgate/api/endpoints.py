"""FastAPI REST endpoints for the workflow engine."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..core.execution_engine import ExecutionEngine
from ..core.exceptions import ExecutionNotFoundError, StorageError, WorkflowEngineError, create_error_response
from ..core.logging import get_logger
from ..core.tool_registry import ToolRegistry
from ..models.core import (
    ExecuteResult,
    ExecutionOptions,
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    TaskEvent,
)
from ..models.workflow import ValidationResult

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (will be initialized in main.py)
_execution_engine: Optional[ExecutionEngine] = None
_tool_registry: Optional[ToolRegistry] = None


def init_dependencies(execution_engine: ExecutionEngine, tool_registry: ToolRegistry):
    """Initialize the global dependencies."""
    global _execution_engine, _tool_registry
    _execution_engine = execution_engine
    _tool_registry = tool_registry


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_tool_registry() -> ToolRegistry:
    """Dependency to get tool registry."""
    if _tool_registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Tool registry not initialized"
        )
    return _tool_registry


# Request/Response models
class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteRequest(ApiModel):
    """Request model for starting an execution."""
    workflow: Dict[str, Any] = Field(..., description="Workflow definition document")
    input: Dict[str, Any] = Field(default_factory=dict, description="Initial variables")
    options: ExecutionOptions = Field(default_factory=ExecutionOptions, description="Execution options")


class AbortRequest(ApiModel):
    reason: str = Field("Aborted by user", description="Reason recorded on the execution")


class ReviewRequest(ApiModel):
    """Request model for a human decision on a waiting node."""
    decision: str = Field(..., validation_alias=AliasChoices("decision", "action"),
                          description="approve or reject")
    task_id: Optional[str] = Field(None, description="Task the decision belongs to, if known")
    reviewed_by: Optional[str] = None
    comments: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    wait: bool = Field(False, description="Respond once the resumed execution stops again")


class ActionResponse(ApiModel):
    """Response model for abort, retry and review actions."""
    execution_id: Optional[str] = None
    accepted: bool
    status: Optional[ExecutionStatusEnum] = None
    message: str


def _engine_error(e: WorkflowEngineError, action: str) -> HTTPException:
    if isinstance(e, ExecutionNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, StorageError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    logger.warning(f"Workflow engine error during {action}: {e.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(e))


def _internal_error(e: Exception, action: str) -> HTTPException:
    logger.error(f"Unexpected error during {action}: {e}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred during {action}",
            "details": {"original_error": str(e)},
            "timestamp": datetime.utcnow().isoformat()
        }
    )


def _require_execution(engine: ExecutionEngine, execution_id: str) -> ExecutionRecord:
    record = engine.get_status(execution_id)
    if record is None:
        raise _engine_error(ExecutionNotFoundError(execution_id), "lookup")
    return record


# Endpoints

@router.post(
    "/executions",
    response_model=ExecuteResult,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Execute a workflow",
    description="Start an execution of the given workflow; invalid workflows yield a failed execution"
)
async def execute_workflow(
    request: ExecuteRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecuteResult:
    """
    Start an execution.

    Args:
        request: Workflow document, input and options
        engine: Execution engine dependency

    Returns:
        The execution id and its status
    """
    try:
        result = await engine.execute(request.workflow, request.input, request.options)
        logger.info(f"Execution {result.execution_id} accepted with status {result.status.value}")
        return result
    except WorkflowEngineError as e:
        raise _engine_error(e, "execution start")
    except Exception as e:
        raise _internal_error(e, "execution start")


@router.get(
    "/executions/{execution_id}",
    response_model=ExecutionRecord,
    response_model_exclude={"definition"},
    summary="Get execution status"
)
async def get_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ExecutionRecord:
    """
    Get the current record of an execution.

    Raises:
        HTTPException: 404 if the execution does not exist
    """
    return _require_execution(engine, execution_id)


@router.get(
    "/executions/{execution_id}/logs",
    response_model=List[LogEntry],
    summary="Get execution audit log"
)
async def get_execution_logs(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[LogEntry]:
    _require_execution(engine, execution_id)
    try:
        return engine.get_execution_logs(execution_id)
    except WorkflowEngineError as e:
        raise _engine_error(e, "log retrieval")


@router.post(
    "/executions/{execution_id}/abort",
    response_model=ActionResponse,
    summary="Abort an execution"
)
async def abort_execution(
    execution_id: str,
    request: Optional[AbortRequest] = None,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ActionResponse:
    """
    Abort a pending, running or waiting execution.

    Raises:
        HTTPException: 404 if unknown, 409 if it already terminated
    """
    record = _require_execution(engine, execution_id)
    reason = request.reason if request is not None else "Aborted by user"
    if not await engine.abort(execution_id, reason):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "ExecutionTerminated",
                "message": f"Execution '{execution_id}' is already {record.status.value}",
                "details": {"execution_id": execution_id}
            }
        )
    return ActionResponse(execution_id=execution_id, accepted=True, status=ExecutionStatusEnum.ABORTED,
                          message="Execution aborted")


@router.post(
    "/executions/{execution_id}/retry",
    response_model=ActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed execution"
)
async def retry_execution(
    execution_id: str,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ActionResponse:
    """
    Re-run a failed execution from the node that failed.

    Raises:
        HTTPException: 404 if unknown, 409 if the failure is not retryable
    """
    _require_execution(engine, execution_id)
    if not await engine.retry(execution_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "RetryNotAllowed",
                "message": f"Execution '{execution_id}' cannot be retried",
                "details": {"execution_id": execution_id}
            }
        )
    return ActionResponse(execution_id=execution_id, accepted=True, status=ExecutionStatusEnum.PENDING,
                          message="Execution rescheduled")


async def _apply_review(
    engine: ExecutionEngine,
    execution_id: str,
    node_id: str,
    request: ReviewRequest
) -> ActionResponse:
    metadata = dict(request.metadata)
    if request.reviewed_by is not None:
        metadata["reviewedBy"] = request.reviewed_by
    if request.comments is not None:
        metadata["comments"] = request.comments

    accepted = await engine.human_review.resume_after_review(
        execution_id, node_id, request.decision, metadata, task_id=request.task_id, wait=request.wait
    )
    current = engine.get_status(execution_id)
    return ActionResponse(
        execution_id=execution_id,
        accepted=accepted,
        status=current.status if current is not None else None,
        message="Decision applied" if accepted else "Execution is not waiting for this review; ignored",
    )


@router.post(
    "/executions/{execution_id}/nodes/{node_id}/review",
    response_model=ActionResponse,
    summary="Submit a human review decision"
)
async def submit_review(
    execution_id: str,
    node_id: str,
    request: ReviewRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ActionResponse:
    """
    Approve or reject the review an execution is waiting on.

    Replayed or mismatched decisions are acknowledged with ``accepted=false``.

    Raises:
        HTTPException: 404 if the execution does not exist
    """
    _require_execution(engine, execution_id)
    return await _apply_review(engine, execution_id, node_id, request)


@router.post(
    "/webhooks/human-review/{execution_id}/{node_id}",
    response_model=ActionResponse,
    summary="Callback of an external approval task"
)
async def human_review_callback(
    execution_id: str,
    node_id: str,
    request: ReviewRequest,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ActionResponse:
    """Callback URL handed to external tasks; unknown executions are ignored."""
    return await _apply_review(engine, execution_id, node_id, request)


@router.post(
    "/webhooks/human-review",
    response_model=ActionResponse,
    summary="Task system event"
)
async def human_review_webhook(
    event: TaskEvent,
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ActionResponse:
    """
    Receive a decision event from the external task system.

    The event is matched to its execution by task id; events for tasks no
    execution waits on are acknowledged and ignored.
    """
    accepted = await engine.handle_task_event(event)
    return ActionResponse(
        execution_id=event.execution_id,
        accepted=accepted,
        message="Decision applied" if accepted else "No execution waits on this task; ignored",
    )


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition"
)
async def validate_workflow(
    workflow: Dict[str, Any],
    engine: ExecutionEngine = Depends(get_execution_engine)
) -> ValidationResult:
    return engine.validate_workflow(workflow)


@router.get("/tools", summary="List registered tools")
async def list_tools(tool_registry: ToolRegistry = Depends(get_tool_registry)) -> Dict[str, str]:
    return tool_registry.list_tools()
