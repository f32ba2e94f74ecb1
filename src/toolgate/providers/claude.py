"""
Toolgate Claude Client

Wraps the Anthropic SDK (anthropic.AsyncAnthropic) behind the
ModelClient interface. Responses are streamed with messages.stream();
argument repair forces a single tool with tool_choice so the model
can only answer with a corrected call.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import anthropic

from toolgate.exceptions import ProviderError
from toolgate.providers.base import ModelClient, ModelEvent, ProviderConfig
from toolgate.tools.models import ToolCallRequest, ToolDescriptor

REPAIR_MAX_TOKENS = 2048

REPAIR_PROMPT = """The arguments you supplied for the tool '{tool}' failed validation.

Error:
{error}

Original arguments:
{arguments}

Call '{tool}' again with arguments that satisfy its input schema. Keep the original intent."""


class ClaudeModelClient(ModelClient):
    """Anthropic Claude via the official SDK.

    Falls back to the ANTHROPIC_API_KEY env var if no key is provided.
    """

    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    def __init__(
        self,
        config: ProviderConfig | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        config = config or ProviderConfig()
        if not config.model:
            config = config.model_copy(update={"model": self.DEFAULT_MODEL})
        super().__init__(config)
        self._client = client or anthropic.AsyncAnthropic(
            api_key=self._config.api_key or None,
            timeout=self._config.timeout_seconds,
        )

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        return self._client

    async def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[ModelEvent]:
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "messages": messages,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    yield ModelEvent.text_delta(text)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            raise ProviderError(self.name, str(e)) from e

        for block in final.content:
            if block.type == "tool_use":
                yield ModelEvent.tool_call(
                    ToolCallRequest(id=block.id, tool_name=block.name, raw_arguments=block.input)
                )
        yield ModelEvent.stop(final.stop_reason or "end_turn")

    async def repair_arguments(
        self,
        request: ToolCallRequest,
        descriptor: ToolDescriptor,
        error: str,
    ) -> dict[str, Any] | str:
        raw = request.raw_arguments
        prompt = REPAIR_PROMPT.format(
            tool=descriptor.name,
            error=error,
            arguments=raw if isinstance(raw, str) else json.dumps(raw, indent=2, default=str),
        )

        async def _call() -> Any:
            try:
                return await self._client.messages.create(
                    model=self._config.model,
                    max_tokens=REPAIR_MAX_TOKENS,
                    messages=[{"role": "user", "content": prompt}],
                    tools=[descriptor.to_api_schema()],
                    tool_choice={"type": "tool", "name": descriptor.name},
                )
            except anthropic.APIError as e:
                raise ProviderError(self.name, str(e)) from e

        response = await self.with_retries(_call)
        for block in response.content:
            if block.type == "tool_use":
                return block.input
        raise ProviderError(self.name, f"repair response for '{descriptor.name}' contained no tool call")
