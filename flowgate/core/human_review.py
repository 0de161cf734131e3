"""Suspension and resumption of executions around human decisions."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..config import AppConfig
from ..integrations.task_client import ExternalTaskClient, TaskRequest
from ..models.core import (
    ExecutionError,
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEventType,
    ReviewDecision,
    ReviewMode,
    StepError,
    StepReview,
    StepStatusEnum,
    SuspendSignal,
    TaskEvent,
    WaitingInfo,
    utcnow,
)
from ..models.nodes import ExternalTaskConfig, NodeType
from ..models.workflow import NodeDefinition
from ..storage.execution_store import ExecutionStore
from ..tools.task_poller import TASK_STATUS_POLLER
from .conditions import EdgeOutcome
from .error_recovery import RetryConfig, execute_async_with_retry
from .exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    HumanReviewTimeoutError,
    ResumeMismatchError,
    StorageError,
    WorkflowEngineError,
)
from .logging import get_logger
from .node_executor import APPROVALS_KEY
from .templates import resolve_string, resolve_template, stringify

if TYPE_CHECKING:
    from .execution_engine import ExecutionEngine

logger = get_logger(__name__)

REJECTED_CODE = "rejected_by_human_review"
TASK_CREATE_ATTEMPTS = 3


def _first(metadata: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if metadata.get(key) is not None:
            return metadata[key]
    return None


class HumanReviewCoordinator:
    """
    Opens human reviews for suspending nodes and turns decisions into resumes.

    A review is answered in one of three ways: a direct resume call carrying
    the execution and node ids (internal mode), an event from the external
    task system naming the task id (external task mode), or a background
    poll of the task's status (polling mode). All of them end in
    ``resume_after_review``, which is idempotent: a decision for an
    execution that is no longer waiting on that node is ignored.
    """

    def __init__(
        self,
        store: ExecutionStore,
        engine: 'ExecutionEngine',
        task_client: Optional[ExternalTaskClient] = None,
        settings: Optional[AppConfig] = None
    ):
        self.store = store
        self.engine = engine
        self.task_client = task_client
        self.settings = settings or engine.settings
        self._pollers: Dict[str, asyncio.Task] = {}

    # Opening reviews

    def _timeout_hours(self, record: ExecutionRecord, signal: SuspendSignal) -> float:
        if signal.timeout_hours:
            return signal.timeout_hours
        if record.metadata.get("human_review_timeout_hours"):
            return float(record.metadata["human_review_timeout_hours"])
        if record.definition is not None and record.definition.config.human_review_timeout_hours:
            return record.definition.config.human_review_timeout_hours
        return self.settings.human_review_timeout_hours

    def callback_url(self, execution_id: str, node_id: str) -> str:
        base = self.settings.callback_base_url.rstrip("/")
        return f"{base}/api/v1/webhooks/human-review/{execution_id}/{node_id}"

    async def open_review(self, record: ExecutionRecord, node: NodeDefinition, signal: SuspendSignal) -> WaitingInfo:
        """
        Open a review for a suspending node and describe what the execution waits on.

        Raises:
            ConfigurationError: If an external task is requested without a task client
            ToolExecutionError: If the task system rejects the task after retries
        """
        now = utcnow()
        timeout_at = now + timedelta(hours=self._timeout_hours(record, signal))
        external = signal.external_task

        if external is not None and external.enabled:
            if self.task_client is None:
                raise ConfigurationError(
                    f"Node '{node.id}' requests an external task but no task system is configured",
                    node_id=node.id, config_key="external_task"
                )
            request = self.build_task_request(record, node, signal, external)
            retry_config = RetryConfig(
                max_attempts=TASK_CREATE_ATTEMPTS,
                base_delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
            )
            task_id, _ = await execute_async_with_retry(
                lambda attempt_index: self.task_client.create_task(request),
                retry_config,
                f"create_task:{node.id}"
            )
            mode = ReviewMode.POLLING if external.poll_status else ReviewMode.EXTERNAL_TASK
            logger.info(f"Created external task {task_id} for node '{node.id}'")
        else:
            task_id = f"task_{uuid.uuid4().hex}"
            mode = ReviewMode.INTERNAL

        return WaitingInfo(
            node_id=node.id,
            task_id=task_id,
            created_at=now,
            timeout_at=timeout_at,
            waiting_for="agent_approval" if signal.reason == "agent_approval" else "human_approval",
            mode=mode,
            review_type=signal.review_type,
            instructions=signal.instructions,
        )

    def build_task_request(
        self,
        record: ExecutionRecord,
        node: NodeDefinition,
        signal: SuspendSignal,
        external: ExternalTaskConfig
    ) -> TaskRequest:
        """Resolve the task request of an external review against the execution context.

        Headers may reference environment variables, such as ``{{TASKS_API_TOKEN}}``.
        """
        scope = record.context.view()
        scope["nodeId"] = node.id

        endpoint = resolve_string(external.endpoint or "", scope, env_fallback=True)
        headers = {
            name: stringify(resolve_template(value, scope, env_fallback=True))
            for name, value in external.headers.items()
        }
        body = resolve_template(dict(external.body), scope)
        for field in external.context_fields:
            if field in scope and field not in body:
                body[field] = scope[field]

        body.update({
            "executionId": record.execution_id,
            "workflowId": record.workflow_id,
            "nodeId": node.id,
            "reviewType": signal.review_type,
            "instructions": signal.instructions,
            "reviewData": signal.review_data,
            "callbackUrl": self.callback_url(record.execution_id, node.id),
        })
        return TaskRequest(endpoint=endpoint, method=external.method, headers=headers, body=body)

    def after_suspend(self, record: ExecutionRecord) -> None:
        """Start the status poll of a polling-mode review once its wait is persisted."""
        waiting = record.waiting_info
        if waiting is None or waiting.mode != ReviewMode.POLLING:
            return
        node = record.definition.get_node(waiting.node_id)
        external = node.parsed_config().external_task if node is not None else None
        self.cancel_polling(record.execution_id)
        self._pollers[record.execution_id] = asyncio.create_task(
            self._poll(record.execution_id, waiting.node_id, waiting.task_id, external),
            name=f"poll:{record.execution_id}"
        )

    async def _poll(
        self,
        execution_id: str,
        node_id: str,
        task_id: str,
        external: Optional[ExternalTaskConfig]
    ) -> None:
        tool_input = {
            "taskId": task_id,
            "pollInterval": (external.poll_interval if external else None) or self.settings.poll_interval_seconds,
            "maxWait": (external.max_wait if external else None) or self.settings.poll_max_wait_seconds,
            "statusEndpoint": external.status_endpoint if external else None,
        }
        try:
            result = await self.engine.node_executor.tool_registry.invoke(TASK_STATUS_POLLER, tool_input)
            decision = ReviewDecision.parse(result.get("decision"))
            if result.get("status") == "completed" and decision is not None:
                metadata = {"reviewedBy": result.get("reviewedBy"), "comments": result.get("feedback")}
                await self.resume_after_review(execution_id, node_id, decision, metadata, task_id=task_id)
            elif result.get("status") == "completed":
                # Closed without an approve or reject: nothing can resume the execution
                await self.expire(execution_id, task_id,
                                  reason=f"Task {task_id} closed with status '{result.get('taskStatus')}' "
                                         f"and no decision")
            else:
                await self.expire(execution_id, task_id,
                                  reason=f"Task {task_id} was not decided within the polling window")
        except asyncio.CancelledError:
            logger.debug(f"Polling of task {task_id} cancelled")
            raise
        except WorkflowEngineError as e:
            # The timeout sweep still fails the execution once its window closes
            logger.error(f"Polling of task {task_id} for execution {execution_id} failed: {e.message}")
        finally:
            if self._pollers.get(execution_id) is asyncio.current_task():
                del self._pollers[execution_id]

    def cancel_polling(self, execution_id: str) -> None:
        task = self._pollers.pop(execution_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._pollers.values())
        self._pollers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Resuming

    async def resume_after_review(
        self,
        execution_id: str,
        node_id: str,
        decision: Any,
        metadata: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
        wait: bool = False
    ) -> bool:
        """
        Apply a human decision and continue the execution.

        Args:
            execution_id: Execution waiting on the review
            node_id: Node the review belongs to
            decision: ``approve``/``reject`` or an equivalent such as ``approved`` or True
            metadata: ``reviewedBy`` and ``comments`` of the reviewer
            task_id: When given, must match the task the execution waits on
            wait: Return only once the resumed walk stops again

        Returns:
            True if the decision was applied, even when it ended the execution;
            False for a mismatched or replayed decision
        """
        try:
            resumed = await self._apply_decision(execution_id, node_id, decision, metadata or {}, task_id)
        except ResumeMismatchError as e:
            logger.info(f"Ignoring review decision: {e.message}")
            return False
        except StorageError as e:
            logger.error(f"Failed to resume execution {execution_id}: {e.message}")
            return False

        self.cancel_polling(execution_id)
        if resumed:
            await self.engine.schedule(execution_id, wait=wait)
        return True

    async def _apply_decision(
        self,
        execution_id: str,
        node_id: str,
        decision: Any,
        metadata: Dict[str, Any],
        task_id: Optional[str]
    ) -> bool:
        """Persist the decision; returns whether a walk should be scheduled."""
        parsed = ReviewDecision.parse(decision)
        if parsed is None:
            raise ResumeMismatchError(f"Unknown review decision '{decision}'", execution_id=execution_id,
                                      node_id=node_id)

        async with self.engine.execution_lock(execution_id):
            record = self.store.get(execution_id)
            if record is None:
                raise ResumeMismatchError(f"Execution {execution_id} does not exist", execution_id=execution_id)
            waiting = record.waiting_info
            if record.status != ExecutionStatusEnum.WAITING_HUMAN_REVIEW or waiting is None:
                raise ResumeMismatchError(
                    f"Execution {execution_id} is {record.status.value}, not waiting for a review",
                    execution_id=execution_id, node_id=node_id
                )
            if waiting.node_id != node_id:
                raise ResumeMismatchError(
                    f"Execution {execution_id} waits on node '{waiting.node_id}', not '{node_id}'",
                    execution_id=execution_id, node_id=node_id
                )
            if task_id is not None and waiting.task_id != task_id:
                raise ResumeMismatchError(
                    f"Execution {execution_id} waits on task {waiting.task_id}, not {task_id}",
                    execution_id=execution_id, node_id=node_id
                )

            node = record.definition.get_node(node_id)
            now = utcnow()
            approved = parsed == ReviewDecision.APPROVE
            reviewed_by = _first(metadata, "reviewedBy", "reviewed_by")
            notes = _first(metadata, "comments", "reviewNotes", "review_notes", "feedback")

            review_output = record.context.output_of(node_id)
            review_output = dict(review_output) if isinstance(review_output, dict) else {}
            review_output.update({
                "decision": parsed.value,
                "approved": approved,
                "reviewedBy": reviewed_by,
                "reviewNotes": notes,
                "reviewedAt": now.isoformat(),
            })

            approvals = dict(record.context.variables.get(APPROVALS_KEY) or {})
            approvals[node_id] = {"approved": approved, "decision": parsed.value, "reviewedBy": reviewed_by}
            record.context = record.context.with_variables({
                "approved": approved,
                "decision": parsed.value,
                "reviewedBy": reviewed_by,
                "reviewNotes": notes,
                "reviewedAt": now.isoformat(),
                APPROVALS_KEY: approvals,
            }).with_output(node_id, review_output)

            step = record.last_step_for(node_id)
            if step is not None and step.status == StepStatusEnum.WAITING_HUMAN_REVIEW:
                step.status = StepStatusEnum.COMPLETED
                step.output = review_output
                step.completed_at = now
                step.duration_ms = (now - step.started_at).total_seconds() * 1000
                step.human_review = StepReview(
                    task_id=waiting.task_id,
                    approved=approved,
                    decision=parsed,
                    reviewed_by=reviewed_by,
                    review_notes=notes,
                    reviewed_at=now,
                )

            record.waiting_info = None
            record.status = ExecutionStatusEnum.RUNNING

            if node is not None and node.type == NodeType.AGENT_WITH_HITL and approved:
                # Re-enter the agent, which now finds its approval in the context
                targets = [node_id]
            elif node is not None:
                targets = self.engine.select_next_nodes(
                    record.definition, node,
                    EdgeOutcome(output=review_output, success=True, decision=parsed),
                    record.context
                )
            else:
                targets = []
            record.next_nodes = record.next_nodes + targets

            verdict = "approved" if approved else "rejected"
            try:
                if record.next_nodes:
                    self.store.save(record)
                    self._log_decision(execution_id, node_id, verdict, reviewed_by, notes, waiting.task_id)
                    logger.info(f"Execution {execution_id} resumed after {parsed.value} of node '{node_id}'")
                    return True

                if approved:
                    error = ExecutionError(
                        message=f"No outgoing edge of node '{node_id}' can be followed after approval",
                        code="ConfigurationError", node_id=node_id,
                    )
                else:
                    error = ExecutionError(
                        message=f"Workflow rejected at node '{node_id}'" + (f": {notes}" if notes else ""),
                        code=REJECTED_CODE, node_id=node_id,
                    )
                self.engine.finalize_failure(record, error)
                self._log_decision(execution_id, node_id, verdict, reviewed_by, notes, waiting.task_id)
                return False
            except ConcurrencyConflictError:
                raise ResumeMismatchError(
                    f"Execution {execution_id} changed while the decision was applied",
                    execution_id=execution_id, node_id=node_id
                )

    def _log_decision(self, execution_id: str, node_id: str, verdict: str, reviewed_by: Optional[str],
                      notes: Optional[str], task_id: str) -> None:
        message = f"Review {verdict}" + (f" by {reviewed_by}" if reviewed_by else "")
        self.store.append_log(execution_id, LogEventType.REVIEW_RESUMED, message, node_id=node_id,
                              details={"task_id": task_id, "comments": notes})

    async def handle_task_event(self, event: TaskEvent, wait: bool = False) -> bool:
        """
        Resume the execution an external task event belongs to.

        The task id is the primary key; execution and node ids are used when
        the event carries no task id.

        Returns:
            True if an execution resumed
        """
        try:
            record = self.store.find_by_task_id(event.task_id) if event.task_id else None
            if record is None and event.execution_id:
                record = self.store.get(event.execution_id)
        except StorageError as e:
            logger.error(f"Failed to look up task event target: {e.message}")
            return False

        if record is None:
            logger.info(f"No execution waits on task {event.task_id}; ignoring event")
            return False

        node_id = event.node_id or (record.waiting_info.node_id if record.waiting_info else None)
        if node_id is None:
            logger.info(f"Execution {record.execution_id} is not waiting for a review; ignoring event")
            return False

        metadata = dict(event.metadata)
        if event.reviewed_by is not None:
            metadata["reviewedBy"] = event.reviewed_by
        if event.comments is not None:
            metadata["comments"] = event.comments

        return await self.resume_after_review(record.execution_id, node_id, event.action, metadata,
                                              task_id=event.task_id, wait=wait)

    # Timeouts

    async def expire(self, execution_id: str, task_id: str, reason: Optional[str] = None) -> bool:
        """
        Fail an execution whose review on ``task_id`` was never decided.

        Returns:
            True if the execution was failed, False if it no longer waits on that task
        """
        now = utcnow()

        def still_waiting(record: ExecutionRecord) -> bool:
            return record.waiting_info is not None and record.waiting_info.task_id == task_id

        def mutate(record: ExecutionRecord) -> None:
            waiting = record.waiting_info
            message = reason or (
                f"Human review of node '{waiting.node_id}' timed out at {waiting.timeout_at.isoformat()}"
            )
            error = HumanReviewTimeoutError(message, execution_id=execution_id, node_id=waiting.node_id,
                                            task_id=task_id)
            step = record.last_step_for(waiting.node_id)
            if step is not None and step.status == StepStatusEnum.WAITING_HUMAN_REVIEW:
                step.status = StepStatusEnum.FAILED
                step.completed_at = now
                step.error = StepError(message=message, code=error.error_code, retryable=False)
            record.error = ExecutionError(message=message, code=error.error_code, node_id=waiting.node_id,
                                          retryable=False, details={"task_id": task_id})
            record.waiting_info = None
            record.completed_at = now

        async with self.engine.execution_lock(execution_id):
            updated = self.store.transition_if_status(
                execution_id,
                [ExecutionStatusEnum.WAITING_HUMAN_REVIEW],
                ExecutionStatusEnum.FAILED,
                mutate,
                guard=still_waiting
            )

        if updated is None:
            return False

        self.cancel_polling(execution_id)
        self.store.append_log(execution_id, LogEventType.REVIEW_TIMEOUT, updated.error.message,
                              node_id=updated.error.node_id, details={"task_id": task_id})
        logger.warning(f"Execution {execution_id} failed: {updated.error.message}")
        return True

    async def sweep_timeouts(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Fail every execution whose review window closed before ``now``.

        Returns:
            Number of executions failed
        """
        expired = self.store.find_expired_waits(now or utcnow(), limit=limit)
        count = 0
        for record in expired:
            if record.waiting_info is not None and await self.expire(record.execution_id, record.waiting_info.task_id):
                count += 1
        if count:
            logger.info(f"Timed out {count} human reviews")
        return count
