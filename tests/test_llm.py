"""Tests for the Anthropic language model adapter."""

from types import SimpleNamespace

import anthropic
import httpx
import pytest

from flowgate.core.exceptions import ToolExecutionError
from flowgate.llm.anthropic_provider import AnthropicProvider
from flowgate.llm.base import LLMOptions


class FakeMessages:
    """Records ``messages.create`` calls and replays a canned reply."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.reply


def make_reply(*blocks, input_tokens=12, output_tokens=4):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def make_provider(messages):
    return AnthropicProvider("claude-test", client=SimpleNamespace(messages=messages))


class TestAnthropicProvider:
    """Test cases for AnthropicProvider."""

    def test_split_prompt(self):
        assert AnthropicProvider._split_prompt("System: Be brief\n\nUser: Hi") == ("Be brief", "Hi")
        assert AnthropicProvider._split_prompt("Just a question") == (None, "Just a question")

    async def test_text_reply(self):
        messages = FakeMessages(make_reply(SimpleNamespace(type="text", text="Hello")))
        provider = make_provider(messages)

        response = await provider.invoke("System: Be brief\n\nUser: Hi", LLMOptions(temperature=0.2, max_tokens=50))

        assert response.text == "Hello"
        assert response.model == "claude-test"
        assert response.token_usage.total_tokens == 16
        request = messages.calls[0]
        assert request["system"] == "Be brief"
        assert request["messages"] == [{"role": "user", "content": "Hi"}]
        assert request["max_tokens"] == 50
        assert "tools" not in request

    async def test_tool_use_blocks(self):
        messages = FakeMessages(make_reply(
            SimpleNamespace(type="text", text="Looking it up"),
            SimpleNamespace(type="tool_use", id="call_1", name="lookup", input={"city": "Oslo"}),
        ))
        provider = make_provider(messages)
        tools = [{"name": "lookup", "description": "Weather lookup"}]

        response = await provider.invoke("Weather in Oslo?", LLMOptions(model="claude-other", tools=tools))

        assert response.text == "Looking it up"
        assert len(response.tool_calls) == 1
        call = response.tool_calls[0]
        assert (call.id, call.name, call.arguments) == ("call_1", "lookup", {"city": "Oslo"})

        request = messages.calls[0]
        assert request["model"] == "claude-other"
        assert "system" not in request
        assert request["tools"] == [{
            "name": "lookup",
            "description": "Weather lookup",
            "input_schema": {"type": "object", "properties": {}},
        }]

    async def test_api_error_is_wrapped(self):
        error = anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
        provider = make_provider(FakeMessages(error=error))

        with pytest.raises(ToolExecutionError) as excinfo:
            await provider.invoke("Hi", LLMOptions())
        assert excinfo.value.context["tool_name"] == "anthropic"
        assert excinfo.value.recoverable is True
