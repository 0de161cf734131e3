"""Execution Engine for workflow processing."""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from ..config import AppConfig, get_config
from ..integrations.task_client import ExternalTaskClient
from ..models.context import ExecutionContext
from ..models.core import (
    ACTIVE_STATUSES,
    ExecuteResult,
    ExecutionError,
    ExecutionOptions,
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    LogEventType,
    NodeResult,
    Step,
    StepError,
    StepStatusEnum,
    TaskEvent,
    utcnow,
)
from ..models.nodes import NodeType
from ..models.workflow import NodeDefinition, ValidationResult, WorkflowDefinition
from ..storage.execution_store import ExecutionStore
from .conditions import EdgeOutcome
from .error_recovery import RetryConfig, execute_async_with_retry
from .exceptions import (
    ConcurrencyConflictError,
    ConfigurationError,
    StorageError,
    ToolExecutionError,
    WorkflowEngineError,
)
from .human_review import HumanReviewCoordinator
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_executor import NodeExecutor
from .scheduler import ExecutionScheduler
from .sweeper import HumanReviewTimeoutSweeper

logger = get_logger(__name__)

INTERRUPTED_CODE = "interrupted"


def generate_execution_id() -> str:
    return f"exec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ExecutionEngine:
    """
    Walks workflow graphs node by node and persists progress after every node.

    A run holds the execution's lock for its whole walk, so at most one
    walker advances an execution at a time. Human reviews suspend the walk;
    the coordinator resumes it from the persisted continuation.
    """

    def __init__(
        self,
        store: ExecutionStore,
        node_executor: NodeExecutor,
        config: Optional[AppConfig] = None,
        task_client: Optional[ExternalTaskClient] = None,
        scheduler: Optional[ExecutionScheduler] = None
    ):
        """Initialize the execution engine.

        Args:
            store: Durable execution store
            node_executor: Executor for individual nodes
            config: Engine settings; the process configuration when omitted
            task_client: Client of the external task system, needed by external reviews
            scheduler: Concurrency limiter; built from the settings when omitted
        """
        self.store = store
        self.node_executor = node_executor
        self.conditions = node_executor.conditions
        self.settings = config or get_config()
        self.scheduler = scheduler or ExecutionScheduler(self.settings.max_concurrent_executions)
        self.human_review = HumanReviewCoordinator(
            store=store,
            engine=self,
            task_client=task_client,
            settings=self.settings,
        )
        self.sweeper = HumanReviewTimeoutSweeper(self.human_review, self.settings.sweep_interval_seconds)
        self._locks: Dict[str, _LockEntry] = {}

        logger.info(
            f"ExecutionEngine initialized with max_concurrent_executions={self.settings.max_concurrent_executions}"
        )

    @asynccontextmanager
    async def execution_lock(self, execution_id: str):
        """Hold the per-execution lock serializing walkers, resumes and timeouts.

        The lock entry lives as long as anyone holds or waits for it, so
        every caller for one execution shares the same lock.
        """
        entry = self._locks.get(execution_id)
        if entry is None:
            entry = self._locks[execution_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(execution_id) is entry:
                del self._locks[execution_id]

    # Lifecycle

    def start(self) -> None:
        """Start background work: the human review timeout sweep."""
        self.sweeper.start()

    async def shutdown(self) -> None:
        """Stop background work and wait for in-flight walks.

        Suspended executions are left waiting; they are durable and can be
        resumed by a later process.
        """
        await self.sweeper.stop()
        await self.human_review.shutdown()
        await self.scheduler.shutdown(self.settings.shutdown_grace_period)
        logger.info("ExecutionEngine shut down")

    async def recover_interrupted_executions(self) -> int:
        """Reschedule executions a previous process left pending or running.

        Returns:
            Number of executions rescheduled
        """
        count = 0
        for status in (ExecutionStatusEnum.RUNNING, ExecutionStatusEnum.PENDING):
            for record in self.store.list_executions(status=status, limit=1000):
                if record.definition is None:
                    continue
                # The interrupted node runs again as a new step
                if self._close_running_steps(record, "Interrupted by a process restart", INTERRUPTED_CODE,
                                             retryable=True):
                    self.store.save(record)
                await self.schedule(record.execution_id)
                count += 1
        if count:
            logger.info(f"Rescheduled {count} interrupted executions")
        return count

    @staticmethod
    def _close_running_steps(record: ExecutionRecord, message: str, code: str, retryable: bool = False) -> bool:
        """Fail the steps of a walker that will never finish them."""
        now = utcnow()
        running = [step for step in record.steps if step.status == StepStatusEnum.RUNNING]
        for step in running:
            step.status = StepStatusEnum.FAILED
            step.completed_at = now
            step.error = StepError(message=message, code=code, retryable=retryable)
        return bool(running)

    # Public operations

    def validate_workflow(self, workflow_definition: Union[WorkflowDefinition, Dict[str, Any]]) -> ValidationResult:
        """Validate a workflow definition without executing it."""
        definition, error = self._load_definition(workflow_definition)
        if definition is None:
            return ValidationResult(is_valid=False, errors=error.validation_errors or [error.message])
        return definition.validate_structure()

    async def execute(
        self,
        workflow_definition: Union[WorkflowDefinition, Dict[str, Any]],
        input: Optional[Any] = None,
        options: Optional[Union[ExecutionOptions, Dict[str, Any]]] = None
    ) -> ExecuteResult:
        """
        Start an execution of a workflow.

        Never raises for invalid workflows: those are recorded as failed
        executions carrying a configuration error.

        Args:
            workflow_definition: Workflow model or its JSON document
            input: Initial variables; non-object input is stored under ``input``
            options: Execution options such as ``wait``

        Returns:
            The execution id and its status when this call returns
        """
        if options is None:
            options = ExecutionOptions()
        elif isinstance(options, dict):
            options = ExecutionOptions.model_validate(options)

        execution_id = options.execution_id or generate_execution_id()
        set_logging_context(execution_id=execution_id)
        try:
            definition, error = self._load_definition(workflow_definition)
            if definition is not None and error is None:
                validation = definition.validate_structure()
                if not validation.is_valid:
                    error = ConfigurationError(
                        f"Workflow validation failed: {'; '.join(validation.errors)}",
                        validation_errors=validation.errors
                    )

            record = self._new_record(execution_id, workflow_definition, definition, input, options)
            if error is not None:
                record.status = ExecutionStatusEnum.FAILED
                record.error = ExecutionError(message=error.message, code=error.error_code, retryable=False,
                                              details=error.details)
                record.completed_at = utcnow()

            try:
                self.store.create(record)
            except StorageError as e:
                logger.error(f"Could not persist execution {execution_id}: {e.message}")
                return ExecuteResult(execution_id=execution_id, status=ExecutionStatusEnum.FAILED, error=e.message)

            if error is not None:
                self.store.append_log(execution_id, LogEventType.WORKFLOW_FAILED, error.message,
                                      details=error.to_dict())
                logger.warning(f"Rejected workflow for execution {execution_id}: {error.message}")
                return ExecuteResult(execution_id=execution_id, status=record.status, error=error.message)

            logger.info(f"Created execution {execution_id} of workflow {record.workflow_id}")
            await self.schedule(execution_id, wait=options.wait)

            current = self.get_status(execution_id)
            status = current.status if current is not None else record.status
            message = current.error.message if current is not None and current.error else None
            return ExecuteResult(execution_id=execution_id, status=status, error=message)
        finally:
            clear_logging_context()

    def get_status(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Current record of an execution, or None if it is unknown."""
        try:
            return self.store.get(execution_id)
        except StorageError as e:
            logger.error(f"Failed to load execution {execution_id}: {e.message}")
            return None

    def get_execution_logs(self, execution_id: str) -> List[LogEntry]:
        return self.store.get_logs(execution_id)

    async def abort(self, execution_id: str, reason: str = "Aborted by user") -> bool:
        """
        Abort an execution that has not terminated.

        Does not wait for a running walker: the status flip makes its next
        save fail, which stops it.

        Returns:
            True if the execution was aborted, False if unknown or already terminal
        """
        now = utcnow()

        def mutate(record: ExecutionRecord) -> None:
            waiting = record.waiting_info
            if waiting is not None:
                step = record.last_step_for(waiting.node_id)
                if step is not None and step.status == StepStatusEnum.WAITING_HUMAN_REVIEW:
                    step.status = StepStatusEnum.FAILED
                    step.completed_at = now
                    step.error = StepError(message=reason, code="aborted")
            self._close_running_steps(record, reason, "aborted")
            record.waiting_info = None
            record.error = ExecutionError(message=reason, code="aborted", node_id=record.current_node)
            record.completed_at = now

        try:
            updated = self.store.transition_if_status(execution_id, ACTIVE_STATUSES,
                                                      ExecutionStatusEnum.ABORTED, mutate)
        except WorkflowEngineError as e:
            logger.error(f"Failed to abort execution {execution_id}: {e.message}")
            return False

        if updated is None:
            logger.info(f"Execution {execution_id} is unknown or already terminal; nothing to abort")
            return False

        self.human_review.cancel_polling(execution_id)
        self.store.append_log(execution_id, LogEventType.WORKFLOW_ABORTED, reason, node_id=updated.current_node)
        logger.info(f"Aborted execution {execution_id}: {reason}")
        return True

    async def retry(self, execution_id: str, wait: bool = False) -> bool:
        """
        Re-run a failed execution from the node that failed.

        Only retryable failures are re-run, at most ``max_retries`` times.

        Returns:
            True if the execution was rescheduled
        """
        record = self.get_status(execution_id)
        if record is None or record.status != ExecutionStatusEnum.FAILED or record.definition is None:
            return False
        if record.error is None or not record.error.retryable:
            logger.info(f"Execution {execution_id} failed with a non-retryable error; not retrying")
            return False
        if record.retry_count >= record.max_retries:
            logger.info(f"Execution {execution_id} used all {record.max_retries} retries")
            return False

        def mutate(target: ExecutionRecord) -> None:
            target.retry_count += 1
            target.error = None
            target.completed_at = None
            if not target.next_nodes and target.current_node:
                target.next_nodes = [target.current_node]

        async with self.execution_lock(execution_id):
            updated = self.store.transition_if_status(
                execution_id,
                [ExecutionStatusEnum.FAILED],
                ExecutionStatusEnum.PENDING,
                mutate,
                guard=lambda current: current.error is not None and current.error.retryable
            )
        if updated is None:
            return False

        self.store.append_log(execution_id, LogEventType.WORKFLOW_RETRY,
                              f"Retry {updated.retry_count} of {updated.max_retries}",
                              node_id=updated.current_node)
        await self.schedule(execution_id, wait=wait)
        return True

    async def resume_after_review(
        self,
        execution_id: str,
        node_id: str,
        decision: Any,
        metadata: Optional[Dict[str, Any]] = None,
        wait: bool = False
    ) -> bool:
        """Resume an execution waiting on a human review; see ``HumanReviewCoordinator``."""
        return await self.human_review.resume_after_review(execution_id, node_id, decision, metadata, wait=wait)

    async def handle_task_event(self, event: Union[TaskEvent, Dict[str, Any]], wait: bool = False) -> bool:
        """Resume from an external task system event; see ``HumanReviewCoordinator``."""
        if isinstance(event, dict):
            event = TaskEvent.model_validate(event)
        return await self.human_review.handle_task_event(event, wait=wait)

    async def schedule(self, execution_id: str, wait: bool = False) -> None:
        """Queue a walk of an execution; with ``wait`` return once it stops."""
        task = self.scheduler.submit(f"walk:{execution_id}", lambda: self._drive(execution_id))
        if wait:
            await asyncio.shield(task)

    # Definition handling

    @staticmethod
    def _load_definition(
        workflow_definition: Union[WorkflowDefinition, Dict[str, Any], Any]
    ) -> Tuple[Optional[WorkflowDefinition], Optional[ConfigurationError]]:
        if isinstance(workflow_definition, WorkflowDefinition):
            return workflow_definition, None
        if not isinstance(workflow_definition, dict):
            return None, ConfigurationError("Workflow definition must be an object")
        try:
            return WorkflowDefinition.model_validate(workflow_definition), None
        except ValidationError as e:
            messages = [
                f"{'.'.join(str(part) for part in error['loc']) or 'workflow'}: {error['msg']}"
                for error in e.errors()
            ]
            return None, ConfigurationError(
                f"Invalid workflow definition: {'; '.join(messages)}",
                validation_errors=messages
            )

    def _new_record(
        self,
        execution_id: str,
        raw_definition: Any,
        definition: Optional[WorkflowDefinition],
        input: Optional[Any],
        options: ExecutionOptions
    ) -> ExecutionRecord:
        if input is None:
            variables: Dict[str, Any] = {}
        elif isinstance(input, dict):
            variables = dict(input)
        else:
            variables = {"input": input}

        if definition is not None:
            workflow_id, workflow_name = definition.id, definition.name
        else:
            raw = raw_definition if isinstance(raw_definition, dict) else {}
            workflow_id, workflow_name = str(raw.get("id") or "unknown"), str(raw.get("name") or "")

        now = utcnow()
        context = ExecutionContext(
            variables=variables,
            system={
                "executionId": execution_id,
                "workflowId": workflow_id,
                "workflowName": workflow_name,
                "startedAt": now.isoformat(),
            },
        )

        if options.max_retries is not None:
            max_retries = options.max_retries
        elif definition is not None and definition.config.max_retries is not None:
            max_retries = definition.config.max_retries
        else:
            max_retries = self.settings.default_max_retries

        metadata = dict(options.metadata)
        if options.node_timeout is not None:
            metadata["node_timeout"] = options.node_timeout
        if options.human_review_timeout_hours is not None:
            metadata["human_review_timeout_hours"] = options.human_review_timeout_hours

        entry = definition.entry_node_id() if definition is not None else None
        return ExecutionRecord(
            execution_id=execution_id,
            workflow_id=workflow_id,
            definition=definition,
            context=context,
            next_nodes=[entry] if entry else [],
            max_retries=max_retries,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

    # Graph walking

    async def _drive(self, execution_id: str) -> None:
        set_logging_context(execution_id=execution_id)
        try:
            async with self.execution_lock(execution_id):
                record = self.store.get(execution_id)
                if record is None:
                    logger.warning(f"Execution {execution_id} disappeared before it could run")
                    return
                if record.status not in (ExecutionStatusEnum.PENDING, ExecutionStatusEnum.RUNNING):
                    logger.debug(f"Execution {execution_id} is {record.status.value}; nothing to walk")
                    return

                if record.status == ExecutionStatusEnum.PENDING:
                    record.status = ExecutionStatusEnum.RUNNING
                    self.store.save(record)
                    if record.retry_count == 0 and not record.steps:
                        self.store.append_log(execution_id, LogEventType.WORKFLOW_START,
                                              f"Started workflow {record.workflow_id}")

                await self._walk(record)
        except ConcurrencyConflictError:
            current = self.get_status(execution_id)
            state = current.status.value if current is not None else "missing"
            logger.info(f"Execution {execution_id} changed underneath its walker (now {state}); stopping")
        except Exception as e:
            logger.error(f"Walker of execution {execution_id} crashed: {e}", exc_info=True)
            self._fail_after_crash(execution_id, e)
        finally:
            clear_logging_context()

    async def _walk(self, record: ExecutionRecord) -> None:
        definition = record.definition
        if definition is None:
            self._fail(record, ConfigurationError("Execution has no workflow definition"), None)
            return

        visit_limit = definition.config.max_node_visits or self.settings.max_node_visits

        while record.next_nodes:
            node_id = record.next_nodes[0]
            node = definition.get_node(node_id)
            if node is None:
                self._fail(record, ConfigurationError(f"Node '{node_id}' does not exist", node_id=node_id), node_id)
                return

            if record.node_visits >= visit_limit:
                self._fail(record, ConfigurationError(
                    f"Execution exceeded {visit_limit} node visits; the workflow is probably looping",
                    config_key="max_node_visits", node_id=node_id
                ), node_id)
                return

            record.node_visits += 1
            record.current_node = node_id
            set_logging_context(node_id=node_id)

            step = Step(
                step_id=uuid.uuid4().hex,
                node_id=node_id,
                type=node.type,
                status=StepStatusEnum.RUNNING,
                input=self._step_input(node, record.context),
            )
            record.steps.append(step)
            self.store.save(record)
            self.store.append_log(record.execution_id, LogEventType.NODE_START,
                                  f"Executing {node.type.value} node", node_id=node_id)

            result, attempt, error, attempt_errors = await self._execute_node(record, node)

            step.completed_at = utcnow()
            step.duration_ms = (step.completed_at - step.started_at).total_seconds() * 1000
            step.retry_attempt = attempt
            if attempt_errors:
                step.metadata["attempt_errors"] = attempt_errors

            if error is not None:
                if not self._handle_node_failure(record, node, step, error, attempt):
                    return
                continue

            self._record_success(record, node, step, result)

            if result.suspend is not None:
                await self._suspend(record, node, step, result)
                return

            if node.type == NodeType.END:
                record.final_output = result.output
                record.next_nodes = record.next_nodes[1:]
                if not record.next_nodes:
                    self._complete(record)
                    return
                self.store.save(record)
                continue

            targets = self.select_next_nodes(
                definition, node,
                EdgeOutcome(output=result.output, success=True, next_path=result.next_path),
                record.context
            )
            if not targets:
                self._fail(record, ConfigurationError(
                    f"No outgoing edge of node '{node_id}' can be followed", node_id=node_id
                ), node_id)
                return

            remaining = record.next_nodes[1:]
            record.next_nodes = remaining + [target for target in targets if target not in remaining]
            self.store.save(record)
            self.store.append_log(record.execution_id, LogEventType.NODE_COMPLETE,
                                  f"Completed, next: {', '.join(targets)}", node_id=node_id,
                                  details={"duration_ms": step.duration_ms, "retry_attempt": attempt})

        # Every branch of a fan-out ran out without reaching an end node
        self._complete(record)

    @staticmethod
    def _step_input(node: NodeDefinition, context: ExecutionContext) -> Any:
        if node.type == NodeType.START:
            return dict(context.variables)
        if context.last_node_id is not None:
            return context.output_of(context.last_node_id)
        return None

    async def _execute_node(
        self,
        record: ExecutionRecord,
        node: NodeDefinition
    ) -> Tuple[Optional[NodeResult], int, Optional[WorkflowEngineError], List[Dict[str, Any]]]:
        """Run a node with its retry policy.

        Returns:
            Tuple of (result, zero-based attempt index, error, errors of failed attempts)
        """
        attempt_errors: List[Dict[str, Any]] = []
        definition = record.definition

        try:
            config = node.parsed_config()
        except ConfigurationError as e:
            return None, 0, e, attempt_errors

        policy = definition.config.retry_policy
        base_delay = next(
            delay for delay in (config.retry_delay, policy.base_delay, self.settings.retry_base_delay)
            if delay is not None
        )
        retry_config = RetryConfig.from_retries(
            config.max_retries if config.max_retries is not None else policy.max_retries,
            base_delay=base_delay,
            max_delay=policy.max_delay if policy.max_delay is not None else self.settings.retry_max_delay,
            exponential_base=policy.exponential_base,
            jitter=policy.jitter,
        )
        retry_config.retryable_exceptions = [ToolExecutionError]
        timeout = (record.metadata.get("node_timeout") or definition.config.node_timeout
                   or self.settings.node_timeout)
        context = record.context

        def on_retry(error: Exception, attempt_index: int) -> None:
            attempt_errors.append({"attempt": attempt_index, "error": str(error)})
            self.store.append_log(record.execution_id, LogEventType.NODE_RETRY,
                                  f"Attempt {attempt_index + 1} failed: {error}", node_id=node.id)

        try:
            result, attempt = await execute_async_with_retry(
                lambda attempt_index: self.node_executor.execute(node, context, timeout),
                retry_config,
                f"node:{node.id}",
                on_retry
            )
            return result, attempt, None, attempt_errors
        except WorkflowEngineError as e:
            return None, getattr(e, "retry_attempt", len(attempt_errors)), e, attempt_errors
        except Exception as e:
            logger.error(f"Node '{node.id}' raised unexpectedly: {e}", exc_info=True)
            error = ToolExecutionError(f"Node '{node.id}' failed: {e}", node_id=node.id,
                                       retry_attempt=len(attempt_errors))
            error.recoverable = False
            return None, len(attempt_errors), error, attempt_errors

    def _record_success(self, record: ExecutionRecord, node: NodeDefinition, step: Step, result: NodeResult) -> None:
        step.status = StepStatusEnum.COMPLETED
        step.output = result.output
        step.metadata.update(result.metadata)
        record.context = (
            record.context
            .with_variables(result.context_updates, result.context_removals)
            .with_output(node.id, result.output)
        )

    def _handle_node_failure(
        self,
        record: ExecutionRecord,
        node: NodeDefinition,
        step: Step,
        error: WorkflowEngineError,
        attempt: int
    ) -> bool:
        """Record a failed node and follow its failure edges.

        Returns:
            True if the walk continues along a failure edge
        """
        step.status = StepStatusEnum.FAILED
        step.error = StepError(
            message=error.message,
            code=error.error_code,
            retry_attempt=attempt,
            retryable=error.recoverable,
            details=error.details,
        )
        self.store.append_log(record.execution_id, LogEventType.NODE_ERROR, error.message,
                              node_id=node.id, details=error.to_dict())
        logger.warning(f"Node '{node.id}' failed after {attempt + 1} attempts: {error.message}")

        targets: List[str] = []
        if not isinstance(error, ConfigurationError):
            outcome = EdgeOutcome(output={"error": error.message}, success=False)
            targets = self.select_next_nodes(record.definition, node, outcome, record.context)

        if not targets:
            self._fail(record, error, node.id)
            return False

        record.context = record.context.with_output(node.id, {"error": error.message, "code": error.error_code})
        record.next_nodes = record.next_nodes[1:] + targets
        self.store.save(record)
        logger.info(f"Following failure edge of node '{node.id}' to {', '.join(targets)}")
        return True

    async def _suspend(self, record: ExecutionRecord, node: NodeDefinition, step: Step, result: NodeResult) -> None:
        step.status = StepStatusEnum.WAITING_HUMAN_REVIEW
        step.completed_at = None
        try:
            waiting = await self.human_review.open_review(record, node, result.suspend)
        except WorkflowEngineError as e:
            step.status = StepStatusEnum.FAILED
            step.completed_at = utcnow()
            step.error = StepError(message=e.message, code=e.error_code, retryable=e.recoverable,
                                   details=e.details)
            self._fail(record, e, node.id)
            return

        record.status = ExecutionStatusEnum.WAITING_HUMAN_REVIEW
        record.waiting_info = waiting
        record.next_nodes = record.next_nodes[1:]
        self.store.save(record)
        self.store.append_log(record.execution_id, LogEventType.REVIEW_REQUESTED,
                              f"Waiting for {waiting.review_type} review ({waiting.mode.value})",
                              node_id=node.id,
                              details={"task_id": waiting.task_id, "timeout_at": waiting.timeout_at.isoformat()})
        logger.info(f"Execution {record.execution_id} waiting for review of node '{node.id}'")
        self.human_review.after_suspend(record)

    def select_next_nodes(
        self,
        definition: WorkflowDefinition,
        node: NodeDefinition,
        outcome: EdgeOutcome,
        context: ExecutionContext
    ) -> List[str]:
        """Targets of the outgoing edges to follow: the first qualifying one, or all of them with fan-out."""
        view = context.view()
        targets = []
        for edge in definition.outgoing_edges(node.id):
            if self.conditions.edge_matches(edge, outcome, view):
                if not definition.config.fan_out:
                    return [edge.target]
                if edge.target not in targets:
                    targets.append(edge.target)
        return targets

    # Terminal transitions

    def _complete(self, record: ExecutionRecord) -> None:
        record.status = ExecutionStatusEnum.COMPLETED
        record.completed_at = utcnow()
        record.next_nodes = []
        record.waiting_info = None
        self.store.save(record)
        self.store.append_log(record.execution_id, LogEventType.WORKFLOW_COMPLETE,
                              "Workflow completed", node_id=record.current_node)
        logger.info(f"Execution {record.execution_id} completed after {record.node_visits} node visits")

    def _fail(self, record: ExecutionRecord, error: WorkflowEngineError, node_id: Optional[str]) -> None:
        self.finalize_failure(
            record,
            ExecutionError(
                message=error.message,
                code=error.error_code,
                node_id=node_id,
                retryable=error.recoverable,
                details=error.details,
            )
        )

    def finalize_failure(self, record: ExecutionRecord, error: ExecutionError) -> None:
        """Persist ``record`` as failed.

        A retry restarts at the failed node, then visits the branches that
        were still pending next to it.
        """
        record.status = ExecutionStatusEnum.FAILED
        record.error = error
        record.completed_at = utcnow()
        record.waiting_info = None
        pending = [node_id for node_id in record.next_nodes if node_id != error.node_id]
        record.next_nodes = ([error.node_id] if error.node_id else []) + pending
        self.store.save(record)
        self.store.append_log(record.execution_id, LogEventType.WORKFLOW_FAILED, error.message,
                              node_id=error.node_id, details={"code": error.code, "retryable": error.retryable})
        logger.warning(f"Execution {record.execution_id} failed: {error.message}")

    def _fail_after_crash(self, execution_id: str, exc: Exception) -> None:
        message = f"Execution crashed: {exc}"

        def mutate(record: ExecutionRecord) -> None:
            record.error = ExecutionError(message=message, code="internal_error", node_id=record.current_node,
                                          retryable=isinstance(exc, StorageError))
            self._close_running_steps(record, message, "internal_error")
            record.completed_at = utcnow()
            record.waiting_info = None

        try:
            self.store.transition_if_status(
                execution_id,
                [ExecutionStatusEnum.PENDING, ExecutionStatusEnum.RUNNING],
                ExecutionStatusEnum.FAILED,
                mutate
            )
        except WorkflowEngineError as e:
            logger.error(f"Could not mark execution {execution_id} as failed: {e.message}")

    # Introspection

    def get_active_executions(self) -> int:
        return self.scheduler.active_count
