"""Per-type execution of workflow nodes."""

import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, Optional

from ..llm.base import LLMOptions, LLMProvider, LLMResponse, TokenUsage
from ..models.context import ExecutionContext
from ..models.core import NodeResult, SuspendSignal
from ..models.nodes import (
    AgentNodeConfig,
    ConditionNodeConfig,
    EndNodeConfig,
    HumanReviewNodeConfig,
    LLMNodeConfig,
    MemoryNodeConfig,
    NodeType,
    StartNodeConfig,
    ToolNodeConfig,
    TransformNodeConfig,
)
from ..models.workflow import NodeDefinition
from .conditions import ConditionEvaluator
from .exceptions import ConfigurationError, ToolExecutionError
from .logging import get_logger
from .templates import resolve_string, resolve_template, stringify
from .tool_registry import ToolRegistry

logger = get_logger(__name__)

# Context variable holding human approvals per node id
APPROVALS_KEY = "_approvals"
MEMORY_PREFIX = "memory_"

Handler = Callable[[NodeDefinition, Any, ExecutionContext], Awaitable[NodeResult]]


def build_prompt(prompt: Optional[str], system_prompt: Optional[str], user_prompt: Optional[str]) -> Optional[str]:
    if prompt:
        return prompt
    if system_prompt and user_prompt:
        return f"System: {system_prompt}\n\nUser: {user_prompt}"
    return user_prompt or None


class NodeExecutor:
    """
    Executes one node against an immutable context.

    Collaborators are injected so executions can be tested in isolation.
    Errors propagate to the caller: ``ConfigurationError`` for bad node
    configuration and ``ToolExecutionError`` for failed collaborator calls.
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        llm_provider: Optional[LLMProvider] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        default_model: Optional[str] = None,
        default_timeout: Optional[float] = None
    ):
        self.tool_registry = tool_registry
        self.llm_provider = llm_provider
        self.conditions = condition_evaluator or ConditionEvaluator()
        self.default_model = default_model
        self.default_timeout = default_timeout

        self._handlers: Dict[NodeType, Handler] = {
            NodeType.START: self._execute_start,
            NodeType.END: self._execute_end,
            NodeType.LLM: self._execute_llm,
            NodeType.TOOL: self._execute_tool,
            NodeType.CONDITION: self._execute_condition,
            NodeType.TRANSFORM: self._execute_transform,
            NodeType.MEMORY: self._execute_memory,
            NodeType.HUMAN_REVIEW: self._execute_human_review,
            NodeType.AGENT: self._execute_agent,
            NodeType.AGENT_WITH_HITL: self._execute_agent_with_hitl,
        }
        missing = set(NodeType) - set(self._handlers)
        if missing:
            raise ConfigurationError(
                f"No handler for node types: {', '.join(sorted(t.value for t in missing))}"
            )

    async def execute(
        self,
        node: NodeDefinition,
        context: ExecutionContext,
        timeout: Optional[float] = None
    ) -> NodeResult:
        """
        Execute a node.

        Args:
            node: Node to execute
            context: Context snapshot visible to the node
            timeout: Timeout in seconds when the node does not declare one

        Returns:
            The node's result; a ``suspend`` signal means it waits for a human

        Raises:
            ConfigurationError: If the node configuration is invalid
            ToolExecutionError: If a collaborator call fails or the node times out
        """
        config = node.parsed_config()
        handler = self._handlers[node.type]
        effective_timeout = config.timeout or timeout or self.default_timeout

        try:
            if effective_timeout:
                return await asyncio.wait_for(handler(node, config, context), timeout=effective_timeout)
            return await handler(node, config, context)
        except asyncio.TimeoutError:
            raise ToolExecutionError(
                f"Node '{node.id}' timed out after {effective_timeout}s",
                node_id=node.id
            )

    async def _execute_start(self, node: NodeDefinition, config: StartNodeConfig,
                             context: ExecutionContext) -> NodeResult:
        view = context.view()
        output = {name: view[name] for name in config.parameters if name in view}
        for key, value in context.variables.items():
            if not key.startswith("_") and key not in output:
                output[key] = value
        return NodeResult(output=output, metadata={"parameters": config.parameters})

    async def _execute_end(self, node: NodeDefinition, config: EndNodeConfig,
                           context: ExecutionContext) -> NodeResult:
        if config.output is not None:
            output = resolve_template(config.output, context.view())
        elif context.last_node_id is not None:
            output = context.output_of(context.last_node_id)
        else:
            output = None
        return NodeResult(output=output)

    async def _invoke_llm(self, node: NodeDefinition, prompt: str, options: LLMOptions) -> LLMResponse:
        if self.llm_provider is None:
            raise ConfigurationError("No language model provider is configured", node_id=node.id)
        try:
            return await self.llm_provider.invoke(prompt, options)
        except (ToolExecutionError, ConfigurationError):
            raise
        except Exception as e:
            raise ToolExecutionError(f"Language model call failed: {e}", node_id=node.id) from e

    async def _execute_llm(self, node: NodeDefinition, config: LLMNodeConfig,
                           context: ExecutionContext) -> NodeResult:
        prompt = build_prompt(config.prompt, config.system_prompt, config.user_prompt)
        if not prompt:
            raise ConfigurationError(f"No prompt found for llm node '{node.id}'", node_id=node.id,
                                     config_key="prompt")

        resolved_prompt = resolve_string(prompt, context.view())
        options = LLMOptions(
            model=config.model or self.default_model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        response = await self._invoke_llm(node, resolved_prompt, options)

        return NodeResult(
            output=response.text,
            metadata={
                "model": response.model or options.model,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
                "token_usage": response.token_usage.to_dict(),
                "prompt": resolved_prompt,
            }
        )

    async def _execute_tool(self, node: NodeDefinition, config: ToolNodeConfig,
                            context: ExecutionContext) -> NodeResult:
        tool_input = resolve_template(config.input, context.view())
        if config.serialize_input and isinstance(tool_input, (dict, list)):
            tool_input = json.dumps(tool_input, default=str)

        try:
            output = await self.tool_registry.invoke(config.tool_name, tool_input)
        except ToolExecutionError as e:
            e.add_context(node_id=node.id)
            raise

        return NodeResult(output=output, metadata={"tool": config.tool_name, "input": tool_input})

    async def _execute_condition(self, node: NodeDefinition, config: ConditionNodeConfig,
                                 context: ExecutionContext) -> NodeResult:
        view = context.view()
        result = self.conditions.evaluate(config.condition, view)
        next_path = config.truthy_path if result else config.falsy_path
        return NodeResult(
            output=result,
            next_path=next_path,
            metadata={"condition": config.condition, "resolved": resolve_string(config.condition, view)}
        )

    async def _execute_transform(self, node: NodeDefinition, config: TransformNodeConfig,
                                 context: ExecutionContext) -> NodeResult:
        view = context.view()
        operation = config.operation

        if operation == "set":
            value = resolve_template(config.value, view)
        elif operation == "append":
            addition = resolve_template(config.value, view)
            existing = view.get(config.field)
            if isinstance(existing, list):
                value = existing + [addition]
            elif existing is None:
                value = addition
            else:
                value = stringify(existing) + stringify(addition)
        elif operation == "extract":
            if not config.pattern:
                raise ConfigurationError(f"Transform node '{node.id}' needs a pattern to extract",
                                         node_id=node.id, config_key="pattern")
            if config.value is not None:
                source = stringify(resolve_template(config.value, view))
            else:
                source = json.dumps(view, default=str)
            try:
                match = re.search(config.pattern, source)
            except re.error as e:
                raise ConfigurationError(f"Invalid pattern in transform node '{node.id}': {e}",
                                         node_id=node.id, config_key="pattern")
            if match is None:
                value = None
            else:
                value = match.group(1) if match.groups() else match.group(0)
        elif operation == "format":
            template = config.template if config.template is not None else config.value
            if not isinstance(template, str):
                raise ConfigurationError(f"Transform node '{node.id}' needs a template to format",
                                         node_id=node.id, config_key="template")
            value = resolve_string(template, view)
        else:
            raise ConfigurationError(f"Unknown transform operation: {operation}", node_id=node.id)

        return NodeResult(
            output={config.field: value},
            context_updates={config.field: value},
            metadata={"operation": operation, "field": config.field}
        )

    async def _execute_memory(self, node: NodeDefinition, config: MemoryNodeConfig,
                              context: ExecutionContext) -> NodeResult:
        memory_key = f"{MEMORY_PREFIX}{config.key}"

        if config.operation == "store":
            value = resolve_template(config.value, context.view())
            return NodeResult(output={config.key: value}, context_updates={memory_key: value},
                              metadata={"operation": "store", "key": config.key})

        if config.operation == "retrieve":
            value = context.variables.get(memory_key)
            return NodeResult(output={config.key: value}, context_updates={config.key: value},
                              metadata={"operation": "retrieve", "key": config.key, "found": memory_key in context.variables})

        return NodeResult(output={"cleared": config.key}, context_removals=[memory_key],
                          metadata={"operation": "clear", "key": config.key})

    async def _execute_human_review(self, node: NodeDefinition, config: HumanReviewNodeConfig,
                                    context: ExecutionContext) -> NodeResult:
        view = context.view()
        signal = SuspendSignal(
            reason="human_review",
            review_type=config.review_type,
            instructions=resolve_string(config.instructions, view),
            review_data=resolve_template(config.review_data, view),
            external_task=config.external_task,
            timeout_hours=config.timeout_hours,
        )
        return NodeResult(
            output={
                "review_type": signal.review_type,
                "instructions": signal.instructions,
                "review_data": signal.review_data,
            },
            suspend=signal,
        )

    async def _execute_agent_with_hitl(self, node: NodeDefinition, config: AgentNodeConfig,
                                       context: ExecutionContext) -> NodeResult:
        approval = (context.variables.get(APPROVALS_KEY) or {}).get(node.id)
        if approval and approval.get("approved"):
            return await self._execute_agent(node, config, context)

        view = context.view()
        prompt = build_prompt(config.prompt, config.system_prompt, config.user_prompt)
        signal = SuspendSignal(
            reason="agent_approval",
            review_type="tool_approval",
            instructions=resolve_string(config.instructions, view),
            review_data={
                "tools": config.tools,
                "prompt": resolve_string(prompt, view) if prompt else None,
            },
            timeout_hours=config.timeout_hours,
        )
        return NodeResult(output={"planned_tools": config.tools}, suspend=signal)

    async def _execute_agent(self, node: NodeDefinition, config: AgentNodeConfig,
                             context: ExecutionContext) -> NodeResult:
        """Run a bounded model/tool loop until the model answers without tool calls."""
        prompt = build_prompt(config.prompt, config.system_prompt, config.user_prompt)
        if not prompt:
            raise ConfigurationError(f"No prompt found for agent node '{node.id}'", node_id=node.id,
                                     config_key="prompt")

        transcript = resolve_string(prompt, context.view())
        tool_specs = self.tool_registry.describe_tools(config.tools) if config.tools else None
        options = LLMOptions(
            model=config.model or self.default_model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            tools=tool_specs,
        )

        usage = TokenUsage()
        tool_log = []
        response: Optional[LLMResponse] = None

        for iteration in range(1, config.max_iterations + 1):
            response = await self._invoke_llm(node, transcript, options)
            usage = usage.add(response.token_usage)

            if not response.tool_calls:
                return NodeResult(
                    output=response.text,
                    metadata={
                        "iterations": iteration,
                        "token_usage": usage.to_dict(),
                        "tool_calls": tool_log,
                        "model": response.model or options.model,
                    }
                )

            for call in response.tool_calls:
                if call.name not in config.tools:
                    observation = f"Tool '{call.name}' is not available to this agent"
                else:
                    result = await self.tool_registry.invoke(call.name, call.arguments)
                    observation = stringify(result)
                tool_log.append({"tool": call.name, "arguments": call.arguments, "result": observation})
                transcript += (
                    f"\n\nAssistant called tool {call.name} with {json.dumps(call.arguments, default=str)}"
                    f"\nTool {call.name} returned: {observation}"
                )

        logger.warning(f"Agent node '{node.id}' stopped after {config.max_iterations} iterations")
        return NodeResult(
            output=response.text if response else None,
            metadata={
                "iterations": config.max_iterations,
                "token_usage": usage.to_dict(),
                "tool_calls": tool_log,
                "model": (response.model if response else None) or options.model,
                "max_iterations_reached": True,
            }
        )
