"""Tests for the model client layer.

The Anthropic SDK client is replaced by a small stub so no network
access or API key is needed.
"""

from types import SimpleNamespace

import anthropic
import httpx
import pytest

from toolgate.exceptions import ProviderError
from toolgate.providers import ClaudeModelClient, ModelEventType, ProviderConfig
from toolgate.tools.models import ToolCallRequest, ToolDescriptor

DESCRIPTOR = ToolDescriptor(
    name="read_file",
    description="Read a file",
    input_schema={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
)


def _connection_error():
    return anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


class _Stream:
    def __init__(self, texts, final):
        self._texts = texts
        self._final = final

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    @property
    async def text_stream(self):
        for text in self._texts:
            yield text

    async def get_final_message(self):
        return self._final


class _Messages:
    def __init__(self, stream=None, responses=()):
        self._stream = stream
        self.responses = list(responses)
        self.calls = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(messages, **config):
    return ClaudeModelClient(ProviderConfig(retry_base_delay=0.0, **config), client=SimpleNamespace(messages=messages))


def _tool_use(name, arguments, block_id="toolu_1"):
    return SimpleNamespace(type="tool_use", id=block_id, name=name, input=arguments)


class TestClaudeModelClient:
    def test_default_model(self):
        client = _client(_Messages())
        assert client.model == ClaudeModelClient.DEFAULT_MODEL
        assert client.name == "ClaudeModelClient"

    @pytest.mark.asyncio
    async def test_stream_text_then_tool_calls(self):
        final = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Reading"), _tool_use("read_file", {"path": "a.py"})],
            stop_reason="tool_use",
        )
        messages = _Messages(stream=_Stream(["Read", "ing"], final))
        client = _client(messages, model="claude-test")

        events = [e async for e in client.stream([{"role": "user", "content": "hi"}], tools=[DESCRIPTOR.to_api_schema()], system="sys")]

        assert [e.type for e in events] == [
            ModelEventType.TEXT,
            ModelEventType.TEXT,
            ModelEventType.TOOL_CALL,
            ModelEventType.STOP,
        ]
        assert events[2].call.id == "toolu_1"
        assert events[2].call.raw_arguments == {"path": "a.py"}
        assert events[3].stop_reason == "tool_use"
        assert messages.calls[0]["model"] == "claude-test"
        assert messages.calls[0]["system"] == "sys"

    @pytest.mark.asyncio
    async def test_stream_omits_empty_tools_and_system(self):
        final = SimpleNamespace(content=[], stop_reason=None)
        messages = _Messages(stream=_Stream([], final))
        events = [e async for e in _client(messages).stream([], tools=[])]

        assert events[-1].stop_reason == "end_turn"
        assert "tools" not in messages.calls[0]
        assert "system" not in messages.calls[0]

    @pytest.mark.asyncio
    async def test_repair_forces_tool_choice(self):
        response = SimpleNamespace(content=[_tool_use("read_file", {"path": "fixed.py"})])
        messages = _Messages(responses=[response])
        request = ToolCallRequest(tool_name="read_file", raw_arguments={"file": "fixed.py"})

        repaired = await _client(messages).repair_arguments(request, DESCRIPTOR, "path: Field required")

        assert repaired == {"path": "fixed.py"}
        call = messages.calls[0]
        assert call["tool_choice"] == {"type": "tool", "name": "read_file"}
        assert "path: Field required" in call["messages"][0]["content"]
        assert '"file": "fixed.py"' in call["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_repair_retries_api_errors(self):
        response = SimpleNamespace(content=[_tool_use("read_file", {"path": "x"})])
        messages = _Messages(responses=[_connection_error(), response])
        request = ToolCallRequest(tool_name="read_file", raw_arguments="{bad")

        assert await _client(messages).repair_arguments(request, DESCRIPTOR, "bad json") == {"path": "x"}
        assert len(messages.calls) == 2

    @pytest.mark.asyncio
    async def test_repair_gives_up(self):
        messages = _Messages(responses=[_connection_error(), _connection_error()])
        request = ToolCallRequest(tool_name="read_file")

        with pytest.raises(ProviderError, match="failed after 2 retries"):
            await _client(messages, max_retries=2).repair_arguments(request, DESCRIPTOR, "missing path")

    @pytest.mark.asyncio
    async def test_repair_without_tool_call(self):
        messages = _Messages(responses=[SimpleNamespace(content=[SimpleNamespace(type="text", text="sorry")])])
        with pytest.raises(ProviderError, match="contained no tool call"):
            await _client(messages).repair_arguments(ToolCallRequest(tool_name="read_file"), DESCRIPTOR, "x")
