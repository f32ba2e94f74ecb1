"""
Toolgate Tool System

Every tool call from the model goes through the orchestrator to a
RegisteredTool:

    Model (tool_use) -> ToolOrchestrator -> ToolRegistry -> StaticTool | DynamicTool

Components:
- ToolRegistry: name -> RegisteredTool, exports Claude tool schemas
- StaticTool: in-process handler (built-in tools)
- DynamicTool / DynamicToolRegistry: external scripts via the
  describe/execute subprocess protocol
"""

from toolgate.tools.models import (
    DynamicToolManifest,
    ToolCallRequest,
    ToolCallResult,
    ToolDescriptor,
    ToolKind,
    ToolParameter,
)
from toolgate.tools.registry import RegisteredTool, StaticTool, ToolContext, ToolRegistry

__all__ = [
    "DynamicToolManifest",
    "RegisteredTool",
    "StaticTool",
    "ToolCallRequest",
    "ToolCallResult",
    "ToolContext",
    "ToolDescriptor",
    "ToolKind",
    "ToolParameter",
    "ToolRegistry",
]
