"""Tests for graph walking, retries, abort and concurrency."""

import asyncio

import pytest

from flowgate.core.execution_engine import INTERRUPTED_CODE, ExecutionEngine
from flowgate.core.node_executor import NodeExecutor
from flowgate.models.core import ExecutionStatusEnum, LogEventType, StepStatusEnum

from .conftest import linear_workflow, wait_for_status

START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end"}


class TestLinearExecution:
    """Test cases for straight-line workflows."""

    async def test_start_end(self, engine):
        result = await engine.execute(linear_workflow([START, END]), {"name": "Ada"}, {"wait": True})
        assert result.status == ExecutionStatusEnum.COMPLETED

        record = engine.get_status(result.execution_id)
        assert [step.node_id for step in record.steps] == ["start", "end"]
        assert all(step.status == StepStatusEnum.COMPLETED for step in record.steps)
        assert record.final_output == {"name": "Ada"}
        assert record.completed_at is not None

    async def test_tool_output_flows_to_end(self, engine, register_tool):
        register_tool("add", lambda data: {"sum": int(data["a"]) + int(data["b"])})
        workflow = linear_workflow([
            START,
            {"id": "calc", "type": "tool", "config": {"toolName": "add", "input": {"a": "{{a}}", "b": "{{b}}"}}},
            {"id": "end", "type": "end", "config": {"output": {"total": "{{calc.output.sum}}"}}},
        ])
        result = await engine.execute(workflow, {"a": 2, "b": 3}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.final_output == {"total": "5"}

    async def test_llm_workflow(self, engine, llm):
        llm.responses = ["Essay on x"]
        workflow = linear_workflow([
            START,
            {"id": "write", "type": "llm", "config": {"prompt": "Write about {{topic}}"}},
            END,
        ])
        result = await engine.execute(workflow, {"topic": "x"}, {"wait": True})

        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert [step.node_id for step in record.steps] == ["start", "write", "end"]
        assert llm.calls[0]["prompt"].endswith("Write about x")
        assert record.final_output == "Essay on x"

    async def test_execution_ids_are_unique(self, engine):
        first = await engine.execute(linear_workflow([START, END]), {}, {"wait": True})
        second = await engine.execute(linear_workflow([START, END]), {}, {"wait": True})
        assert first.execution_id != second.execution_id

    async def test_system_values_visible_to_templates(self, engine):
        workflow = linear_workflow([START, {"id": "end", "type": "end", "config": {"output": "{{executionId}}"}}])
        result = await engine.execute(workflow, {}, {"wait": True})
        assert engine.get_status(result.execution_id).final_output == result.execution_id

    async def test_audit_log(self, engine):
        result = await engine.execute(linear_workflow([START, END]), {}, {"wait": True})
        events = [entry.event_type for entry in engine.get_execution_logs(result.execution_id)]
        assert events[0] == LogEventType.WORKFLOW_START
        assert events[-1] == LogEventType.WORKFLOW_COMPLETE
        assert LogEventType.NODE_START in events


class TestBranching:
    """Test cases for conditions and edge selection."""

    def branching_workflow(self):
        return {
            "id": "wf_branch",
            "nodes": [
                START,
                {"id": "check", "type": "condition", "config": {"condition": "{{score}} >= 50"}},
                {"id": "pass", "type": "end", "config": {"output": "passed"}},
                {"id": "fail", "type": "end", "config": {"output": "failed"}},
            ],
            "edges": [
                {"source": "start", "target": "check"},
                {"source": "check", "target": "pass", "condition": "true"},
                {"source": "check", "target": "fail", "condition": "false"},
            ],
        }

    @pytest.mark.parametrize("score,expected", [(80, "passed"), (20, "failed")])
    async def test_condition_routes(self, engine, score, expected):
        result = await engine.execute(self.branching_workflow(), {"score": score}, {"wait": True})
        assert engine.get_status(result.execution_id).final_output == expected

    async def test_truthy_path(self, engine):
        workflow = self.branching_workflow()
        workflow["nodes"][1]["config"].update({"truthyPath": "pass", "falsyPath": "fail"})
        for edge in workflow["edges"][1:]:
            edge.pop("condition")
        result = await engine.execute(workflow, {"score": 10}, {"wait": True})
        assert engine.get_status(result.execution_id).final_output == "failed"

    async def test_no_qualifying_edge_fails(self, engine):
        workflow = {
            "nodes": [START, {"id": "end", "type": "end"}],
            "edges": [{"source": "start", "target": "end", "condition": "{{go}} == yes"}],
        }
        result = await engine.execute(workflow, {"go": "no"}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.FAILED
        assert record.error.code == "ConfigurationError"
        assert record.error.node_id == "start"

    async def test_loop_with_memory_counter(self, engine):
        """A transform loop terminates through its condition."""
        workflow = {
            "nodes": [
                START,
                {"id": "inc", "type": "transform",
                 "config": {"operation": "append", "field": "ticks", "value": "x"}},
                {"id": "check", "type": "condition", "config": {"condition": "{{ticks}} == xxx"}},
                {"id": "end", "type": "end", "config": {"output": "{{ticks}}"}},
            ],
            "edges": [
                {"source": "start", "target": "inc"},
                {"source": "inc", "target": "check"},
                {"source": "check", "target": "end", "condition": "true"},
                {"source": "check", "target": "inc", "condition": "false"},
            ],
        }
        result = await engine.execute(workflow, {"ticks": ""}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.final_output == "xxx"
        assert [step.node_id for step in record.steps].count("inc") == 3

    async def test_runaway_loop_is_stopped(self, engine):
        workflow = {
            "nodes": [START, {"id": "spin", "type": "transform",
                              "config": {"operation": "set", "field": "x", "value": 1}}, END],
            "edges": [
                {"source": "start", "target": "spin"},
                {"source": "spin", "target": "spin"},
                {"source": "spin", "target": "end", "condition": "{{never}}"},
            ],
            "config": {"maxNodeVisits": 10},
        }
        result = await engine.execute(workflow, {}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.FAILED
        assert record.node_visits == 10
        assert "node visits" in record.error.message

    async def test_fan_out_visits_every_branch(self, engine):
        workflow = {
            "nodes": [
                START,
                {"id": "a", "type": "transform", "config": {"operation": "set", "field": "a", "value": 1}},
                {"id": "b", "type": "transform", "config": {"operation": "set", "field": "b", "value": 2}},
                {"id": "end", "type": "end", "config": {"output": {"a": "{{a}}", "b": "{{b}}"}}},
            ],
            "edges": [
                {"source": "start", "target": "a"},
                {"source": "start", "target": "b"},
                {"source": "a", "target": "end"},
                {"source": "b", "target": "end"},
            ],
            "config": {"fanOut": True},
        }
        result = await engine.execute(workflow, {}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert {"a", "b"} <= {step.node_id for step in record.steps}
        assert record.final_output == {"a": "1", "b": "2"}


class TestInvalidWorkflows:
    """Invalid workflows become failed executions, never exceptions."""

    async def test_structural_errors(self, engine):
        workflow = {"nodes": [START], "edges": [{"source": "start", "target": "ghost"}]}
        result = await engine.execute(workflow, {})
        assert result.status == ExecutionStatusEnum.FAILED
        record = engine.get_status(result.execution_id)
        assert record.error.code == "ConfigurationError"
        assert record.error.retryable is False
        assert record.steps == []

    async def test_unparseable_definition(self, engine):
        result = await engine.execute({"nodes": [{"id": "x", "type": "teleport"}]}, {})
        assert result.status == ExecutionStatusEnum.FAILED
        assert "teleport" in result.error or "type" in result.error

    async def test_invalid_node_config(self, engine):
        workflow = linear_workflow([START, {"id": "t", "type": "tool", "config": {}}, END])
        result = await engine.execute(workflow, {})
        assert result.status == ExecutionStatusEnum.FAILED

    async def test_validate_workflow(self, engine):
        validation = engine.validate_workflow(linear_workflow([START, END]))
        assert validation.is_valid
        invalid = engine.validate_workflow({"nodes": []})
        assert not invalid.is_valid


class TestRetries:
    """Test cases for node retries and execution retry."""

    async def test_tool_recovers_within_retries(self, engine, register_tool):
        calls = []

        def flaky(data):
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("temporary outage")
            return "ok"

        register_tool("flaky", flaky)
        workflow = linear_workflow([
            START, {"id": "call", "type": "tool", "config": {"toolName": "flaky", "maxRetries": 3}}, END
        ])
        result = await engine.execute(workflow, {}, {"wait": True})
        record = engine.get_status(result.execution_id)

        assert record.status == ExecutionStatusEnum.COMPLETED
        step = record.last_step_for("call")
        assert step.retry_attempt == 2
        assert len(step.metadata["attempt_errors"]) == 2
        events = [entry.event_type for entry in engine.get_execution_logs(result.execution_id)]
        assert events.count(LogEventType.NODE_RETRY) == 2

    async def test_retries_exhausted(self, engine, register_tool):
        def broken(data):
            raise RuntimeError("down")

        register_tool("broken", broken)
        workflow = linear_workflow([
            START, {"id": "call", "type": "tool", "config": {"toolName": "broken", "maxRetries": 2}}, END
        ])
        result = await engine.execute(workflow, {}, {"wait": True})
        record = engine.get_status(result.execution_id)

        assert record.status == ExecutionStatusEnum.FAILED
        assert record.error.code == "ToolExecutionError"
        assert record.error.retryable is True
        assert record.last_step_for("call").error.retry_attempt == 2

    async def test_failure_edge(self, engine, register_tool):
        def broken(data):
            raise RuntimeError("down")

        register_tool("broken", broken)
        workflow = {
            "nodes": [
                START,
                {"id": "call", "type": "tool", "config": {"toolName": "broken"}},
                {"id": "ok", "type": "end", "config": {"output": "fine"}},
                {"id": "fallback", "type": "end", "config": {"output": "{{call.output.error}}"}},
            ],
            "edges": [
                {"source": "start", "target": "call"},
                {"source": "call", "target": "ok"},
                {"source": "call", "target": "fallback", "condition": {"type": "failure"}},
            ],
        }
        result = await engine.execute(workflow, {}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert "down" in record.final_output

    async def test_execution_retry_resumes_failed_node(self, engine, register_tool):
        state = {"healthy": False}

        def sometimes(data):
            if not state["healthy"]:
                raise RuntimeError("not yet")
            return "recovered"

        register_tool("sometimes", sometimes)
        workflow = linear_workflow([START, {"id": "call", "type": "tool", "config": {"toolName": "sometimes"}}, END])
        result = await engine.execute(workflow, {}, {"wait": True})
        assert result.status == ExecutionStatusEnum.FAILED

        state["healthy"] = True
        assert await engine.retry(result.execution_id, wait=True) is True

        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert record.retry_count == 1
        assert record.final_output == "recovered"
        assert [step.node_id for step in record.steps] == ["start", "call", "call", "end"]

    async def test_retry_keeps_pending_branches(self, engine, register_tool):
        state = {"healthy": False}

        def flaky(data):
            if not state["healthy"]:
                raise RuntimeError("not yet")
            return "recovered"

        register_tool("flaky", flaky)
        workflow = {
            "nodes": [
                START,
                {"id": "a", "type": "tool", "config": {"toolName": "flaky"}},
                {"id": "b", "type": "transform", "config": {"operation": "set", "field": "b", "value": 2}},
                {"id": "end", "type": "end", "config": {"output": {"b": "{{b}}"}}},
            ],
            "edges": [
                {"source": "start", "target": "a"},
                {"source": "start", "target": "b"},
                {"source": "a", "target": "end"},
                {"source": "b", "target": "end"},
            ],
            "config": {"fanOut": True},
        }
        result = await engine.execute(workflow, {}, {"wait": True})
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.FAILED
        assert record.next_nodes == ["a", "b"]

        state["healthy"] = True
        assert await engine.retry(result.execution_id, wait=True) is True

        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.COMPLETED
        assert "b" in [step.node_id for step in record.steps]
        assert record.final_output == {"b": "2"}

    async def test_non_retryable_failure_is_not_retried(self, engine):
        workflow = linear_workflow([START, {"id": "llm", "type": "llm", "config": {}}, END])
        result = await engine.execute(workflow, {}, {"wait": True})
        assert result.status == ExecutionStatusEnum.FAILED
        assert await engine.retry(result.execution_id) is False

    async def test_retry_limit(self, engine, register_tool):
        def broken(data):
            raise RuntimeError("down")

        register_tool("broken", broken)
        workflow = linear_workflow([START, {"id": "call", "type": "tool", "config": {"toolName": "broken"}}, END])
        result = await engine.execute(workflow, {}, {"wait": True, "maxRetries": 1})
        assert await engine.retry(result.execution_id, wait=True) is True
        assert await engine.retry(result.execution_id, wait=True) is False


class TestAbort:
    """Test cases for aborting executions."""

    async def test_abort_running_execution(self, engine, register_tool):
        started = asyncio.Event()

        async def slow(data):
            started.set()
            await asyncio.sleep(0.3)
            return "late"

        register_tool("slow", slow)
        workflow = linear_workflow([START, {"id": "wait", "type": "tool", "config": {"toolName": "slow"}}, END])
        result = await engine.execute(workflow, {})
        await asyncio.wait_for(started.wait(), timeout=2)

        assert await engine.abort(result.execution_id, "operator stop") is True
        await asyncio.sleep(0.5)

        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.ABORTED
        assert record.error.message == "operator stop"
        assert "end" not in [step.node_id for step in record.steps]

    async def test_abort_terminal_execution(self, engine):
        result = await engine.execute(linear_workflow([START, END]), {}, {"wait": True})
        assert await engine.abort(result.execution_id) is False
        assert await engine.abort("exec_unknown") is False

    async def test_get_status_unknown(self, engine):
        assert engine.get_status("exec_unknown") is None


class TestConcurrency:
    """Test cases for the concurrency ceiling."""

    async def test_ceiling_is_respected(self, store, tool_registry, settings, register_tool):
        settings.max_concurrent_executions = 2
        active = {"now": 0, "peak": 0}

        async def busy(data):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.05)
            active["now"] -= 1
            return "done"

        register_tool("busy", busy)
        engine = ExecutionEngine(store, NodeExecutor(tool_registry), settings)
        workflow = linear_workflow([START, {"id": "work", "type": "tool", "config": {"toolName": "busy"}}, END])
        try:
            results = [await engine.execute(workflow, {}) for _ in range(5)]
            for result in results:
                await wait_for_status(engine, result.execution_id, ExecutionStatusEnum.COMPLETED)
        finally:
            await engine.shutdown()

        assert active["peak"] <= 2
        assert engine.scheduler.peak_running <= 2


class TestExecutionLock:
    """Test cases for the per-execution lock."""

    async def test_late_caller_waits_for_woken_holder(self, engine):
        order = []
        first_in = asyncio.Event()
        release_first = asyncio.Event()

        async def hold(name, entered=None, release=None):
            async with engine.execution_lock("exec_shared"):
                order.append(f"{name}-in")
                if entered is not None:
                    entered.set()
                if release is not None:
                    await release.wait()
                else:
                    await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        first = asyncio.create_task(hold("A", first_in, release_first))
        await first_in.wait()
        second = asyncio.create_task(hold("B"))
        await asyncio.sleep(0)

        release_first.set()
        await first
        third = asyncio.create_task(hold("C"))
        await asyncio.gather(second, third)

        assert order == ["A-in", "A-out", "B-in", "B-out", "C-in", "C-out"]
        assert engine._locks == {}


class TestRecovery:
    """Test cases for rescheduling executions a dead process left behind."""

    async def test_interrupted_step_is_closed(self, engine, store, tool_registry, settings, register_tool):
        started = asyncio.Event()

        async def hang(data):
            started.set()
            await asyncio.Event().wait()

        register_tool("work", hang)
        workflow = linear_workflow([START, {"id": "work", "type": "tool", "config": {"toolName": "work"}}, END])
        result = await engine.execute(workflow, {})
        await asyncio.wait_for(started.wait(), timeout=2)

        # The walker dies with its process; the store still says running
        await engine.scheduler.shutdown(0)
        record = engine.get_status(result.execution_id)
        assert record.status == ExecutionStatusEnum.RUNNING
        assert record.steps[-1].status == StepStatusEnum.RUNNING

        register_tool("work", lambda data: "done")
        restarted = ExecutionEngine(store, NodeExecutor(tool_registry), settings)
        try:
            assert await restarted.recover_interrupted_executions() == 1
            record = await wait_for_status(restarted, result.execution_id, ExecutionStatusEnum.COMPLETED)
        finally:
            await restarted.shutdown()

        assert [step.node_id for step in record.steps] == ["start", "work", "work", "end"]
        interrupted = record.steps[1]
        assert interrupted.status == StepStatusEnum.FAILED
        assert interrupted.error.code == INTERRUPTED_CODE
        assert record.final_output == "done"
