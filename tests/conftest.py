"""Pytest configuration and fixtures."""

import asyncio
import json
import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from flowgate.config import get_testing_config
from flowgate.core.execution_engine import ExecutionEngine
from flowgate.core.node_executor import NodeExecutor
from flowgate.core.tool_registry import ToolRegistry
from flowgate.integrations.task_client import ExternalTaskClient
from flowgate.llm.base import LLMOptions, LLMProvider, LLMResponse, TokenUsage
from flowgate.models.core import ExecutionStatusEnum
from flowgate.storage.database import build_engine, create_session_factory, create_tables, drop_tables
from flowgate.storage.execution_store import ExecutionStore
from flowgate.tools.task_poller import TASK_STATUS_POLLER, make_task_status_poller

TASKS_URL = "http://tasks.test/tasks"


class FakeLLM(LLMProvider):
    """Scripted language model returning queued responses in order."""

    def __init__(self, responses: Optional[List[Union[str, LLMResponse, Exception]]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    async def invoke(self, prompt: str, options: LLMOptions) -> LLMResponse:
        self.calls.append({"prompt": prompt, "options": options})
        response = self.responses.pop(0) if self.responses else "ok"
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return LLMResponse(text=response, token_usage=TokenUsage(input_tokens=10, output_tokens=5),
                               model=options.model)
        return response


class TaskSystemStub:
    """In-process stand-in for the external task system, served through httpx.MockTransport."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.fail_creates = 0

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/tasks":
            if self.fail_creates > 0:
                self.fail_creates -= 1
                return httpx.Response(503, json={"error": "unavailable"})
            task_id = f"ext-{len(self.created) + 1}"
            self.created.append({
                "task_id": task_id,
                "headers": dict(request.headers),
                "body": json.loads(request.content or b"{}"),
            })
            return httpx.Response(201, json={"data": {"id": task_id}})
        if request.method == "GET" and request.url.path.startswith("/tasks/"):
            task_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.statuses.get(task_id, {"status": "open"}))
        return httpx.Response(404, json={"error": "not found"})


def linear_workflow(nodes: List[Dict[str, Any]], **extra) -> Dict[str, Any]:
    """Workflow document chaining ``nodes`` in order with unconditional edges."""
    edges = [
        {"source": first["id"], "target": second["id"]}
        for first, second in zip(nodes, nodes[1:])
    ]
    return {"id": extra.pop("id", "wf_test"), "name": extra.pop("name", "Test workflow"),
            "nodes": nodes, "edges": edges, **extra}


async def wait_for_status(engine: ExecutionEngine, execution_id: str,
                          *statuses: ExecutionStatusEnum, timeout: float = 5.0):
    """Poll the store until the execution reaches one of ``statuses``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        record = engine.get_status(execution_id)
        if record is not None and record.status in statuses:
            return record
        if loop.time() > deadline:
            current = record.status.value if record is not None else "missing"
            raise AssertionError(f"Execution {execution_id} stayed {current}, expected {statuses}")
        await asyncio.sleep(0.01)


@pytest.fixture
def settings():
    """Engine settings with short delays."""
    return get_testing_config()


@pytest.fixture(scope="function")
def temp_db():
    """Create a temporary test database."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    engine = build_engine(f"sqlite:///{db_path}")
    create_tables(engine)

    yield create_session_factory(engine)

    drop_tables(engine)
    engine.dispose()
    os.unlink(db_path)


@pytest.fixture
def store(temp_db):
    return ExecutionStore(temp_db)


@pytest.fixture
def tool_registry():
    return ToolRegistry()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def task_system():
    return TaskSystemStub()


@pytest.fixture
async def task_client(task_system):
    async with httpx.AsyncClient(transport=httpx.MockTransport(task_system.handle)) as http_client:
        yield ExternalTaskClient(status_url_template=f"{TASKS_URL}/{{task_id}}", client=http_client)


@pytest.fixture
async def engine(store, tool_registry, llm, task_client, settings):
    """Execution engine over a temporary database with fake collaborators."""
    tool_registry.register_tool(
        TASK_STATUS_POLLER,
        make_task_status_poller(task_client, settings.poll_interval_seconds, settings.poll_max_wait_seconds),
    )
    executor = NodeExecutor(tool_registry, llm_provider=llm, default_model="test-model")
    execution_engine = ExecutionEngine(store, executor, settings, task_client=task_client)
    yield execution_engine
    await execution_engine.shutdown()


@pytest.fixture
def register_tool(tool_registry) -> Callable:
    """Register a tool on the engine's registry, replacing any earlier one."""
    def register(name: str, function: Callable, **kwargs):
        tool_registry.register_tool(name, function, replace=True, **kwargs)
        return function
    return register
