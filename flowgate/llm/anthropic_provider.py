"""Anthropic Claude adapter for the language-model provider contract."""

import os
from typing import Any, Dict, List, Optional

import anthropic

from .base import LLMOptions, LLMProvider, LLMResponse, TokenUsage, ToolCall
from ..core.exceptions import ToolExecutionError
from ..core.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PREFIX = "System: "
USER_SEPARATOR = "\n\nUser: "


class AnthropicProvider(LLMProvider):
    def __init__(self, default_model: str, api_key: Optional[str] = None, client: Optional[Any] = None):
        self.default_model = default_model
        if client is None:
            client = anthropic.AsyncAnthropic(api_key=api_key or os.environ.get("ANTHROPIC_API_KEY"))
        self._client = client

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @staticmethod
    def _split_prompt(prompt: str):
        """Split a ``System: ...\\n\\nUser: ...`` prompt into system and user text."""
        if prompt.startswith(SYSTEM_PREFIX) and USER_SEPARATOR in prompt:
            system, user = prompt[len(SYSTEM_PREFIX):].split(USER_SEPARATOR, 1)
            return system, user
        return None, prompt

    @staticmethod
    def _format_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool["name"],
                "description": tool.get("description") or tool["name"],
                "input_schema": tool.get("input_schema") or {"type": "object", "properties": {}},
            }
            for tool in tools
        ]

    async def invoke(self, prompt: str, options: LLMOptions) -> LLMResponse:
        model = options.model or self.default_model
        system, user = self._split_prompt(prompt)

        kwargs: Dict[str, Any] = {
            "model": model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": user}],
        }
        if system:
            kwargs["system"] = system
        if options.tools:
            kwargs["tools"] = self._format_tools(options.tools)

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise ToolExecutionError(f"Anthropic request failed: {e}", tool_name="anthropic") from e

        text = ""
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text += block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        logger.debug(f"Anthropic {model} used {usage.total_tokens} tokens")
        return LLMResponse(text=text, token_usage=usage, tool_calls=tool_calls, model=model)
