"""
Toolgate Model Client Base

Abstract interface for the model-facing collaborator. The orchestrator
only needs two things from a model:

- stream(): submit the conversation and receive text deltas followed by
  zero or more tool-call requests
- repair_arguments(): given a failed call and its validation error,
  return corrected arguments for that one tool

Key design decisions:
- Async-first
- Retry with exponential backoff built into the base class for
  non-streaming requests
- Provider-agnostic event model (ModelEvent)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel

from toolgate.exceptions import ProviderError
from toolgate.logging import get_logger
from toolgate.tools.models import ToolCallRequest, ToolDescriptor

logger = get_logger("toolgate.providers")

T = TypeVar("T")


class ModelEventType(str, Enum):
    TEXT = "text"
    TOOL_CALL = "tool_call"
    STOP = "stop"


class ModelEvent(BaseModel):
    """One item of a model's streamed response."""
    type: ModelEventType
    text: str = ""
    call: ToolCallRequest | None = None
    stop_reason: str = ""

    @classmethod
    def text_delta(cls, text: str) -> ModelEvent:
        return cls(type=ModelEventType.TEXT, text=text)

    @classmethod
    def tool_call(cls, call: ToolCallRequest) -> ModelEvent:
        return cls(type=ModelEventType.TOOL_CALL, call=call)

    @classmethod
    def stop(cls, reason: str = "end_turn") -> ModelEvent:
        return cls(type=ModelEventType.STOP, stop_reason=reason)


class ProviderConfig(BaseModel):
    """Configuration for a model client."""
    api_key: str | None = None
    model: str = ""
    max_tokens: int = 8192
    max_retries: int = 3
    timeout_seconds: float = 120.0
    retry_base_delay: float = 1.0  # exponential backoff base (1s, 2s, 4s)


class ModelClient(ABC):
    """Abstract model-facing collaborator."""

    def __init__(self, config: ProviderConfig | None = None):
        self._config = config or ProviderConfig()

    @property
    def name(self) -> str:
        """Human-readable provider name."""
        return self.__class__.__name__

    @property
    def model(self) -> str:
        return self._config.model

    @abstractmethod
    def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]],
        system: str | None = None,
    ) -> AsyncIterator[ModelEvent]:
        """Stream one model response: text deltas, tool calls, then a stop event."""

    @abstractmethod
    async def repair_arguments(
        self,
        request: ToolCallRequest,
        descriptor: ToolDescriptor,
        error: str,
    ) -> dict[str, Any] | str:
        """Ask the model to re-emit arguments for `request` that satisfy `descriptor`."""

    async def with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run `call` with exponential backoff; raises ProviderError when exhausted."""
        last_error: Exception | None = None
        for attempt in range(self._config.max_retries):
            try:
                return await call()
            except ProviderError as e:
                last_error = e
                if attempt < self._config.max_retries - 1:
                    delay = self._config.retry_base_delay * (2 ** attempt)
                    logger.warning(f"{self.name} request failed, retrying in {delay:g}s: {e}")
                    await asyncio.sleep(delay)

        raise ProviderError(
            self.name,
            f"failed after {self._config.max_retries} retries: {last_error}",
        ) from last_error
