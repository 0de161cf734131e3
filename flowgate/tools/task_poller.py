"""Polling-mode human review: wait for a task decision without a webhook."""

import asyncio
import json
from typing import Any, Callable, Dict

from ..core.exceptions import ConfigurationError, ToolExecutionError
from ..core.logging import get_logger
from ..integrations.task_client import ExternalTaskClient

logger = get_logger(__name__)

TASK_STATUS_POLLER = "task_status_poller"

# Task statuses that carry a decision themselves
DECISION_STATUSES = {"approved": "approve", "rejected": "reject"}


def _parse_input(tool_input: Any) -> Dict[str, Any]:
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except ValueError:
            return {"task_id": tool_input}
    if not isinstance(tool_input, dict):
        raise ConfigurationError("task_status_poller expects an object with a taskId")
    return tool_input


def make_task_status_poller(
    task_client: ExternalTaskClient,
    poll_interval: float = 5.0,
    max_wait: float = 300.0
) -> Callable:
    """
    Build the ``task_status_poller`` tool bound to ``task_client``.

    The tool input carries ``taskId`` and optionally ``pollInterval`` and
    ``maxWait`` (seconds) and ``statusEndpoint``. It returns
    ``{success, taskId, status, taskStatus, decision, feedback, reviewedBy}``
    where ``status`` is ``completed`` or ``timeout``. ``decision`` is None when
    the task closed without one.
    """

    async def task_status_poller(tool_input: Any) -> Dict[str, Any]:
        options = _parse_input(tool_input)
        task_id = options.get("taskId") or options.get("task_id")
        if not task_id:
            raise ConfigurationError("task_status_poller requires a taskId")

        interval = float(options.get("pollInterval") or options.get("poll_interval") or poll_interval)
        wait_limit = float(options.get("maxWait") or options.get("max_wait") or max_wait)
        status_endpoint = options.get("statusEndpoint") or options.get("status_endpoint")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_limit
        checks = 0

        while True:
            checks += 1
            try:
                status = await task_client.get_task_status(str(task_id), status_endpoint)
            except ToolExecutionError as e:
                logger.warning(f"Status check {checks} for task {task_id} failed: {e}")
            else:
                if status.is_terminal:
                    logger.info(f"Task {task_id} reached status '{status.status}' after {checks} checks")
                    return {
                        "success": True,
                        "taskId": str(task_id),
                        "status": "completed",
                        "taskStatus": status.status,
                        "decision": status.decision or DECISION_STATUSES.get(status.status.lower()),
                        "feedback": status.feedback,
                        "reviewedBy": status.reviewed_by,
                    }

            if loop.time() + interval > deadline:
                logger.info(f"Gave up polling task {task_id} after {checks} checks")
                return {
                    "success": False,
                    "taskId": str(task_id),
                    "status": "timeout",
                    "taskStatus": None,
                    "decision": None,
                    "feedback": None,
                    "reviewedBy": None,
                }
            await asyncio.sleep(interval)

    return task_status_poller
