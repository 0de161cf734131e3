"""Language-model providers."""

from .base import LLMOptions, LLMProvider, LLMResponse, TokenUsage, ToolCall

__all__ = ["LLMOptions", "LLMProvider", "LLMResponse", "TokenUsage", "ToolCall"]
