"""Language-model provider contract used by llm and agent nodes."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class LLMOptions:
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    tools: Optional[List[Dict[str, Any]]] = None


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: 'TokenUsage') -> 'TokenUsage':
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class LLMResponse:
    text: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: List[ToolCall] = field(default_factory=list)
    model: Optional[str] = None


class LLMProvider:
    """Abstract base; adapters implement ``invoke``."""

    async def invoke(self, prompt: str, options: LLMOptions) -> LLMResponse:
        raise NotImplementedError

    @property
    def provider_name(self) -> str:
        raise NotImplementedError
