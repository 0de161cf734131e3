"""HTTP client for the external task system that hosts human approvals."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ..core.exceptions import ConfigurationError, ToolExecutionError
from ..core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_TASK_STATUSES = frozenset({"completed", "complete", "done", "approved", "rejected", "closed"})


@dataclass
class TaskRequest:
    """A fully resolved request creating one approval task."""
    endpoint: str
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskStatus:
    task_id: str
    status: str
    decision: Optional[str] = None
    feedback: Optional[str] = None
    reviewed_by: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.decision is not None or self.status.lower() in TERMINAL_TASK_STATUSES


class ExternalTaskClient:
    """Creates approval tasks and reads their status over HTTP."""

    def __init__(
        self,
        timeout: float = 30.0,
        status_url_template: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.status_url_template = status_url_template
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def create_task(self, request: TaskRequest) -> str:
        """
        Create a task and return its id.

        The id is read from ``taskId`` or ``id`` of the JSON response, or of
        its ``data`` member.

        Raises:
            ToolExecutionError: If the call fails or the response carries no id
        """
        try:
            response = await self._client.request(
                request.method,
                request.endpoint,
                headers=request.headers,
                json=request.body if request.method != "GET" else None,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Creating external task at {request.endpoint} failed: {e}",
                                     tool_name="external_task") from e
        except ValueError as e:
            raise ToolExecutionError(f"External task system returned invalid JSON: {e}",
                                     tool_name="external_task") from e

        task_id = self._extract_task_id(payload)
        if not task_id:
            raise ToolExecutionError("External task system response did not include a task id",
                                     tool_name="external_task", details={"response": payload})

        logger.info(f"Created external task {task_id} at {request.endpoint}")
        return str(task_id)

    @staticmethod
    def _extract_task_id(payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        for candidate in (payload, payload.get("data")):
            if isinstance(candidate, dict):
                task_id = candidate.get("taskId") or candidate.get("task_id") or candidate.get("id")
                if task_id:
                    return task_id
        return None

    async def get_task_status(self, task_id: str, status_endpoint: Optional[str] = None) -> TaskStatus:
        """
        Fetch the current status of a task.

        Raises:
            ConfigurationError: If no status URL is configured
            ToolExecutionError: If the call fails
        """
        template = status_endpoint or self.status_url_template
        if not template:
            raise ConfigurationError("No task status endpoint configured for polling",
                                     config_key="task_status_url_template")
        url = template.replace("{task_id}", task_id).replace("{taskId}", task_id)

        try:
            response = await self._client.get(url)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Reading status of task {task_id} failed: {e}",
                                     tool_name="external_task") from e
        except ValueError as e:
            raise ToolExecutionError(f"Task status response is not JSON: {e}",
                                     tool_name="external_task") from e

        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        return TaskStatus(
            task_id=task_id,
            status=str(data.get("status", "pending")),
            decision=data.get("decision") or data.get("action") or data.get("selectedAction"),
            feedback=data.get("feedback") or data.get("comments"),
            reviewed_by=data.get("reviewedBy") or data.get("completedBy"),
            raw=data,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
