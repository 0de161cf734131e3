"""Tests for per-type node execution."""

import asyncio

import pytest

from flowgate.core.exceptions import ConfigurationError, ToolExecutionError
from flowgate.core.node_executor import APPROVALS_KEY, NodeExecutor, build_prompt
from flowgate.llm.base import LLMResponse, TokenUsage, ToolCall
from flowgate.models.context import ExecutionContext
from flowgate.models.workflow import NodeDefinition

from .conftest import FakeLLM


def node(node_id, node_type, **config):
    return NodeDefinition(id=node_id, type=node_type, config=config)


@pytest.fixture
def executor(tool_registry, llm):
    return NodeExecutor(tool_registry, llm_provider=llm, default_model="test-model")


class TestSimpleNodes:
    """Test cases for start, end, condition, transform and memory nodes."""

    async def test_start_projects_input(self, executor):
        context = ExecutionContext(variables={"name": "Ada", "_internal": 1})
        result = await executor.execute(node("start", "start", parameters=[{"name": "name"}]), context)
        assert result.output == {"name": "Ada"}

    async def test_end_uses_declared_output(self, executor):
        context = ExecutionContext(variables={"total": 3})
        result = await executor.execute(node("end", "end", output={"total": "{{total}}"}), context)
        assert result.output == {"total": "3"}

    async def test_end_defaults_to_previous_output(self, executor):
        context = ExecutionContext().with_output("calc", {"value": 9})
        result = await executor.execute(node("end", "end"), context)
        assert result.output == {"value": 9}

    async def test_condition_sets_next_path(self, executor):
        condition = node("check", "condition", condition="{{score}} > 5", truthyPath="high", falsyPath="low")
        high = await executor.execute(condition, ExecutionContext(variables={"score": 9}))
        low = await executor.execute(condition, ExecutionContext(variables={"score": 1}))
        assert (high.output, high.next_path) == (True, "high")
        assert (low.output, low.next_path) == (False, "low")

    async def test_transform_set_and_format(self, executor):
        context = ExecutionContext(variables={"first": "Ada", "last": "Lovelace"})
        result = await executor.execute(
            node("fmt", "transform", operation="format", field="full", template="{{first}} {{last}}"), context
        )
        assert result.output == {"full": "Ada Lovelace"}
        assert result.context_updates == {"full": "Ada Lovelace"}

    async def test_transform_append_to_list(self, executor):
        context = ExecutionContext(variables={"items": ["a"]})
        result = await executor.execute(node("add", "transform", operation="append", field="items", value="b"),
                                        context)
        assert result.context_updates == {"items": ["a", "b"]}

    async def test_transform_extract(self, executor):
        context = ExecutionContext(variables={"text": "order #4521 shipped"})
        result = await executor.execute(
            node("ex", "transform", operation="extract", field="order", value="{{text}}", pattern=r"#(\d+)"),
            context
        )
        assert result.output == {"order": "4521"}

    async def test_transform_extract_needs_pattern(self, executor):
        with pytest.raises(ConfigurationError):
            await executor.execute(node("ex", "transform", operation="extract", field="x"), ExecutionContext())

    async def test_memory_store_retrieve_clear(self, executor):
        stored = await executor.execute(node("m1", "memory", operation="store", key="topic", value="{{t}}"),
                                        ExecutionContext(variables={"t": "billing"}))
        context = ExecutionContext(variables=stored.context_updates)

        retrieved = await executor.execute(node("m2", "memory", operation="retrieve", key="topic"), context)
        assert retrieved.output == {"topic": "billing"}

        cleared = await executor.execute(node("m3", "memory", operation="clear", key="topic"), context)
        assert cleared.context_removals == ["memory_topic"]

    async def test_invalid_config_is_configuration_error(self, executor):
        with pytest.raises(ConfigurationError):
            await executor.execute(node("bad", "memory", operation="explode", key="x"), ExecutionContext())


class TestToolNode:
    """Test cases for tool nodes."""

    async def test_invokes_tool_with_resolved_input(self, executor, register_tool):
        received = []
        register_tool("echo", lambda data: received.append(data) or {"echoed": data})
        result = await executor.execute(node("t", "tool", toolName="echo", input={"who": "{{name}}"}),
                                        ExecutionContext(variables={"name": "Ada"}))
        assert received == [{"who": "Ada"}]
        assert result.output == {"echoed": {"who": "Ada"}}

    async def test_async_tool(self, executor, register_tool):
        async def double(data):
            return data["n"] * 2
        register_tool("double", double)
        result = await executor.execute(node("t", "tool", tool="double", input={"n": 4}), ExecutionContext())
        assert result.output == 8

    async def test_unknown_tool(self, executor):
        with pytest.raises(ConfigurationError):
            await executor.execute(node("t", "tool", toolName="nope"), ExecutionContext())

    async def test_failing_tool(self, executor, register_tool):
        def broken(data):
            raise RuntimeError("boom")
        register_tool("broken", broken)
        with pytest.raises(ToolExecutionError) as excinfo:
            await executor.execute(node("t", "tool", toolName="broken"), ExecutionContext())
        assert "boom" in excinfo.value.message
        assert excinfo.value.recoverable is True

    async def test_timeout(self, executor, register_tool):
        async def slow(data):
            await asyncio.sleep(1)
        register_tool("slow", slow)
        with pytest.raises(ToolExecutionError):
            await executor.execute(node("t", "tool", toolName="slow", timeout=0.05), ExecutionContext())


class TestLLMNodes:
    """Test cases for llm and agent nodes."""

    async def test_llm_prompt_and_metadata(self, executor, llm):
        llm.responses = ["Summary text"]
        result = await executor.execute(
            node("sum", "llm", systemPrompt="Be brief", userPrompt="Summarize {{topic}}", temperature=0.1),
            ExecutionContext(variables={"topic": "tides"})
        )
        assert result.output == "Summary text"
        assert llm.calls[0]["prompt"] == "System: Be brief\n\nUser: Summarize tides"
        assert result.metadata["token_usage"]["total_tokens"] == 15
        assert result.metadata["model"] == "test-model"

    async def test_llm_without_prompt(self, executor):
        with pytest.raises(ConfigurationError):
            await executor.execute(node("sum", "llm"), ExecutionContext())

    async def test_llm_without_provider(self, tool_registry):
        executor = NodeExecutor(tool_registry)
        with pytest.raises(ConfigurationError):
            await executor.execute(node("sum", "llm", prompt="hi"), ExecutionContext())

    async def test_agent_uses_tools_until_answer(self, tool_registry, register_tool):
        register_tool("lookup", lambda args: {"city": "Oslo", "temp": 4}, description="Weather lookup")
        llm = FakeLLM([
            LLMResponse(text="", tool_calls=[ToolCall(id="1", name="lookup", arguments={"q": "Oslo"})],
                        token_usage=TokenUsage(5, 5)),
            LLMResponse(text="It is 4 degrees in Oslo", token_usage=TokenUsage(7, 3)),
        ])
        executor = NodeExecutor(tool_registry, llm_provider=llm)
        result = await executor.execute(node("agent", "agent", prompt="Weather?", tools=["lookup"]),
                                        ExecutionContext())
        assert result.output == "It is 4 degrees in Oslo"
        assert result.metadata["iterations"] == 2
        assert result.metadata["token_usage"]["total_tokens"] == 20
        assert "Oslo" in llm.calls[1]["prompt"]
        assert llm.calls[0]["options"].tools[0]["name"] == "lookup"

    async def test_agent_stops_at_max_iterations(self, tool_registry, register_tool):
        register_tool("lookup", lambda args: "again")
        call = LLMResponse(text="thinking", tool_calls=[ToolCall(id="1", name="lookup", arguments={})])
        executor = NodeExecutor(tool_registry, llm_provider=FakeLLM([call, call]))
        result = await executor.execute(
            node("agent", "agent", prompt="Loop", tools=["lookup"], maxIterations=2), ExecutionContext()
        )
        assert result.metadata["max_iterations_reached"] is True


class TestSuspendingNodes:
    """Test cases for nodes that wait on a human."""

    async def test_human_review_suspends(self, executor):
        result = await executor.execute(
            node("review", "human_review", instructions="Check {{item}}", reviewData={"item": "{{item}}"}),
            ExecutionContext(variables={"item": "invoice"})
        )
        assert result.suspend is not None
        assert result.suspend.instructions == "Check invoice"
        assert result.suspend.review_data == {"item": "invoice"}

    async def test_agent_with_hitl_waits_for_approval(self, executor, llm):
        hitl = node("agent", "agent_with_hitl", prompt="Do it", tools=[])
        first = await executor.execute(hitl, ExecutionContext())
        assert first.suspend is not None
        assert first.suspend.reason == "agent_approval"
        assert llm.calls == []

        approved = ExecutionContext(variables={APPROVALS_KEY: {"agent": {"approved": True}}})
        llm.responses = ["done"]
        second = await executor.execute(hitl, approved)
        assert second.suspend is None
        assert second.output == "done"


def test_build_prompt():
    assert build_prompt("p", "s", "u") == "p"
    assert build_prompt(None, "s", "u") == "System: s\n\nUser: u"
    assert build_prompt(None, None, "u") == "u"
    assert build_prompt(None, None, None) is None
