"""
Toolgate Tool Registry

Central registry for all tools available to the model. Every entry is
a RegisteredTool keyed by its validated ToolDescriptor name. The set of
tool kinds is closed (ToolKind): StaticTool for in-process handlers
and DynamicTool (toolgate.tools.dynamic) for discovered scripts.

The registry is populated at session start and treated as read-only
during dispatch.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from toolgate.core.models import InteractionClass
from toolgate.exceptions import ApprovalRejectedError, UnknownToolError
from toolgate.tools.models import ToolDescriptor, ToolKind
from toolgate.tools.schema import validate_arguments

if TYPE_CHECKING:
    from toolgate.execution.cancellation import CancellationToken
    from toolgate.orchestrator.approval import ApprovalGate
    from toolgate.orchestrator.events import CallEvents

MAX_SUMMARY_ARGS = 3
MAX_SUMMARY_VALUE_CHARS = 50


class ToolContext:
    """Per-call collaborators handed to a tool body."""

    def __init__(
        self,
        call_id: str,
        tool_name: str,
        token: CancellationToken,
        events: CallEvents,
        approval: ApprovalGate | None = None,
    ):
        self.call_id = call_id
        self.tool_name = tool_name
        self.token = token
        self.events = events
        self.approval = approval

    async def confirm(self, summary: str, preview: list[str] | None = None) -> None:
        """Ask the approval gate; raises ApprovalRejectedError on refusal."""
        if self.approval is None:
            raise ApprovalRejectedError(self.tool_name, "no approval gate configured")
        await self.approval.confirm(self.call_id, self.tool_name, summary, preview or [])


def clip(value: Any, limit: int = MAX_SUMMARY_VALUE_CHARS) -> str:
    text = value if isinstance(value, str) else repr(value)
    text = text.replace("\n", "\\n")
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


class RegisteredTool(ABC):
    """A tool the orchestrator can dispatch to."""

    kind: ToolKind

    def __init__(
        self,
        descriptor: ToolDescriptor,
        input_model: type[BaseModel],
        timeout_seconds: float | None = None,
    ):
        self.descriptor = descriptor
        self.input_model = input_model
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def interaction(self) -> InteractionClass:
        return self.descriptor.interaction

    def parse_arguments(self, raw: dict[str, Any] | str) -> BaseModel:
        """Validate raw arguments; raises SchemaMismatchError."""
        return validate_arguments(self.name, self.input_model, raw)

    def describe_call(self, args: BaseModel) -> str:
        """One-line summary for the init event: at most three arguments."""
        values = args.model_dump(by_alias=True, exclude_none=True)
        shown = [f"{k}={clip(v)}" for k, v in list(values.items())[:MAX_SUMMARY_ARGS]]
        if len(values) > MAX_SUMMARY_ARGS:
            shown.append("...")
        return f"{self.name}({', '.join(shown)})"

    @abstractmethod
    async def invoke(self, args: BaseModel, ctx: ToolContext) -> Any:
        """Run the tool body. Raises toolgate exceptions on failure."""


ToolHandler = Callable[[Any, ToolContext], "Any | Awaitable[Any]"]


class StaticTool(RegisteredTool):
    """Tool implemented by an in-process handler, sync or async."""

    kind = ToolKind.STATIC

    def __init__(
        self,
        name: str,
        description: str,
        input_model: type[BaseModel],
        handler: ToolHandler,
        interaction: InteractionClass = InteractionClass.READ_ONLY,
        timeout_seconds: float | None = None,
        summarize: Callable[[Any], str] | None = None,
    ):
        descriptor = ToolDescriptor(
            name=name,
            description=description,
            input_schema=input_model.model_json_schema(),
            interaction=interaction,
            kind=ToolKind.STATIC,
        )
        super().__init__(descriptor, input_model, timeout_seconds)
        self._handler = handler
        self._summarize = summarize

    def describe_call(self, args: BaseModel) -> str:
        if self._summarize is not None:
            return self._summarize(args)
        return super().describe_call(args)

    async def invoke(self, args: BaseModel, ctx: ToolContext) -> Any:
        result = self._handler(args, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    """Name -> RegisteredTool map with Anthropic schema export."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, tool: RegisteredTool) -> None:
        """Register a tool.

        Raises ValueError if a tool with the same name already exists.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> RegisteredTool | None:
        return self._tools.pop(name, None)

    def get(self, name: str) -> RegisteredTool | None:
        """Look up a registered tool by name."""
        return self._tools.get(name)

    def require(self, name: str) -> RegisteredTool:
        """Look up a tool or raise UnknownToolError."""
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def get_all(self) -> list[RegisteredTool]:
        """Return all registered tools."""
        return list(self._tools.values())

    def of_kind(self, kind: ToolKind) -> list[RegisteredTool]:
        return [t for t in self._tools.values() if t.kind == kind]

    def descriptors(self) -> list[ToolDescriptor]:
        return [t.descriptor for t in self._tools.values()]

    def get_schemas(self) -> list[dict[str, Any]]:
        """Claude API tool schemas for every registered tool."""
        return [t.descriptor.to_api_schema() for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
