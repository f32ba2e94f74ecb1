"""
Toolgate Tool System Models

Pydantic models describing registered tools, the model's requests to
invoke them and the results fed back into the conversation.
"""

from __future__ import annotations

import json
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from toolgate.core.models import CallStatus, InteractionClass

TOOL_NAME_PATTERN = r"^[a-zA-Z0-9_-]+$"


class ToolKind(str, Enum):
    """Closed set of tool implementations the registry can hold."""
    STATIC = "static"
    DYNAMIC = "dynamic"


class ToolDescriptor(BaseModel):
    """A registered capability. Immutable once registered."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=TOOL_NAME_PATTERN)
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict)
    interaction: InteractionClass = InteractionClass.READ_ONLY
    kind: ToolKind = ToolKind.STATIC

    def to_api_schema(self) -> dict[str, Any]:
        """Tool schema in the Anthropic `tools=[...]` format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolCallRequest(BaseModel):
    """A model's request to invoke a tool.

    `raw_arguments` is whatever the model emitted: normally a dict, but a
    malformed call may arrive as an unparsed JSON string.
    """
    id: str = Field(default_factory=lambda: f"tc-{uuid.uuid4().hex[:8]}")
    tool_name: str
    raw_arguments: dict[str, Any] | str = Field(default_factory=dict)


class ToolCallResult(BaseModel):
    """Outcome of executing a request. Immutable after creation."""
    model_config = ConfigDict(frozen=True)

    id: str
    tool_name: str
    status: CallStatus
    payload: Any = None
    message: str = ""
    repaired: bool = False
    duration_ms: float = 0.0

    @property
    def is_error(self) -> bool:
        return self.status != CallStatus.OK

    def to_content(self) -> str:
        """Text appended to the conversation for this call."""
        if self.status == CallStatus.OK:
            if isinstance(self.payload, str):
                return self.payload
            return json.dumps(self.payload, indent=2, default=str)
        return f"[{self.status.value.upper()}] {self.message}"

    def to_message_block(self) -> dict[str, Any]:
        """Anthropic `tool_result` content block."""
        return {
            "type": "tool_result",
            "tool_use_id": self.id,
            "content": self.to_content(),
            "is_error": self.is_error,
        }


class ToolParameter(BaseModel):
    """One flat parameter declared by a dynamic tool manifest.

    `type` is kept as a free string so unsupported types survive parsing
    and are dropped later during schema synthesis.
    """
    name: str = Field(pattern=r"^[a-zA-Z_][a-zA-Z0-9_]*$")
    type: str
    description: str = ""
    required: bool = False
    default: Any = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class DynamicToolManifest(BaseModel):
    """Declared shape of an externally authored tool script."""
    name: str = Field(pattern=TOOL_NAME_PATTERN)
    description: str
    parameters: list[ToolParameter] = Field(default_factory=list)
    interaction: InteractionClass = InteractionClass.MUTATING
    script_path: str = ""
