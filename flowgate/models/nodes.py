"""Typed configuration models, one per node type."""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class NodeType(str, Enum):
    """Closed set of node kinds the engine can execute."""
    START = "start"
    END = "end"
    LLM = "llm"
    TOOL = "tool"
    CONDITION = "condition"
    TRANSFORM = "transform"
    MEMORY = "memory"
    HUMAN_REVIEW = "human_review"
    AGENT = "agent"
    AGENT_WITH_HITL = "agent_with_hitl"


class NodeConfig(BaseModel):
    """Settings shared by every node type.

    Fields accept both snake_case and the camelCase names used in stored
    workflow documents (``maxRetries``, ``truthyPath``, ...).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    timeout: Optional[float] = Field(None, description="Node timeout in seconds")
    max_retries: Optional[int] = Field(None, description="Retries after the first failed attempt")
    retry_delay: Optional[float] = Field(None, description="Base backoff delay in seconds")

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, timeout):
        """Ensure timeout is positive if specified."""
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")
        return timeout

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, max_retries):
        if max_retries is not None and max_retries < 0:
            raise ValueError("maxRetries cannot be negative")
        return max_retries


class StartNodeConfig(NodeConfig):
    """Entry node projecting the execution input."""
    parameters: List[str] = Field(default_factory=list, description="Declared input parameter names")

    @field_validator('parameters', mode='before')
    @classmethod
    def normalize_parameters(cls, parameters):
        """Accept plain names or ``{"name": ...}`` parameter declarations."""
        if parameters is None:
            return []
        names = []
        for parameter in parameters:
            if isinstance(parameter, dict):
                if "name" not in parameter:
                    raise ValueError("Parameter declarations need a name")
                names.append(str(parameter["name"]))
            else:
                names.append(str(parameter))
        return names


class EndNodeConfig(NodeConfig):
    """Terminal node; ``output`` is the declared shape of the final output."""
    output: Optional[Any] = None


class LLMNodeConfig(NodeConfig):
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    user_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000


class ToolNodeConfig(NodeConfig):
    tool_name: str = Field(..., validation_alias=AliasChoices("tool_name", "toolName", "tool"))
    input: Optional[Any] = Field(None, validation_alias=AliasChoices("input", "parameters"))
    serialize_input: bool = Field(False, description="Pass dict or list input to the tool as a JSON string")

    @field_validator('tool_name')
    @classmethod
    def validate_tool_name(cls, tool_name):
        if not tool_name or not tool_name.strip():
            raise ValueError("Tool name cannot be empty")
        return tool_name.strip()


class ConditionNodeConfig(NodeConfig):
    condition: str
    truthy_path: Optional[str] = None
    falsy_path: Optional[str] = None


class TransformNodeConfig(NodeConfig):
    operation: Literal["set", "append", "extract", "format"]
    field: str
    value: Optional[Any] = None
    pattern: Optional[str] = None
    template: Optional[str] = None


class MemoryNodeConfig(NodeConfig):
    operation: Literal["store", "retrieve", "clear"]
    key: str
    value: Optional[Any] = None


class ExternalTaskConfig(BaseModel):
    """HTTP request creating the approval task in the external task system."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool = False
    endpoint: Optional[str] = None
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Dict[str, Any] = Field(default_factory=dict)
    context_fields: List[str] = Field(default_factory=list, description="Context keys copied into the request")
    poll_status: bool = Field(False, description="Poll task status instead of waiting for a webhook")
    status_endpoint: Optional[str] = Field(None, description="Status URL template with a {task_id} placeholder")
    poll_interval: Optional[float] = None
    max_wait: Optional[float] = None

    @field_validator('method')
    @classmethod
    def validate_method(cls, method):
        method = method.upper()
        if method not in ("GET", "POST", "PUT", "PATCH"):
            raise ValueError(f"Unsupported HTTP method: {method}")
        return method


class HumanReviewNodeConfig(NodeConfig):
    review_type: str = "approval"
    instructions: str = "Please review this workflow step"
    review_data: Optional[Any] = None
    timeout_hours: Optional[float] = None
    external_task: Optional[ExternalTaskConfig] = None

    @field_validator('external_task')
    @classmethod
    def validate_external_task(cls, external_task):
        if external_task is not None and external_task.enabled and not external_task.endpoint:
            raise ValueError("externalTask.endpoint is required when the external task is enabled")
        return external_task


class AgentNodeConfig(NodeConfig):
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    user_prompt: Optional[str] = None
    tools: List[str] = Field(default_factory=list)
    max_iterations: int = 5
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    instructions: str = "Approve the agent's use of its tools"
    timeout_hours: Optional[float] = None

    @field_validator('max_iterations')
    @classmethod
    def validate_max_iterations(cls, max_iterations):
        if max_iterations < 1:
            raise ValueError("maxIterations must be at least 1")
        return max_iterations


NODE_CONFIG_MODELS: Dict[NodeType, Type[NodeConfig]] = {
    NodeType.START: StartNodeConfig,
    NodeType.END: EndNodeConfig,
    NodeType.LLM: LLMNodeConfig,
    NodeType.TOOL: ToolNodeConfig,
    NodeType.CONDITION: ConditionNodeConfig,
    NodeType.TRANSFORM: TransformNodeConfig,
    NodeType.MEMORY: MemoryNodeConfig,
    NodeType.HUMAN_REVIEW: HumanReviewNodeConfig,
    NodeType.AGENT: AgentNodeConfig,
    NodeType.AGENT_WITH_HITL: AgentNodeConfig,
}
