"""
Toolgate Tool Orchestrator

The top-level loop between the model and the registered tools.

State machine per model turn:

    IDLE -> AWAITING_MODEL -> DISPATCHING -> (REPAIRING) -> AWAITING_MODEL ...
                                   |
                                   +-> CANCELLED (token fired; no return to the model)

Dispatch rules within one turn:
- Consecutive non-interactive calls (read-only and mutating) form one
  batch and run concurrently
- An interactive call forms a batch of its own, so it never overlaps
  any other call and later calls wait for it
- Results are returned in request order regardless of completion order

Every failure of a single call (unknown tool, bad arguments, sandbox
violation, blocked command, timeout, abort, tool error) becomes a
ToolCallResult appended to the conversation. A request is repaired at
most once; a second validation failure is a hard error.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from toolgate.core.models import CallStatus, InteractionClass
from toolgate.exceptions import (
    ApprovalRejectedError,
    CommandBlockedError,
    ExecutionAbortedError,
    ExecutionTimeoutError,
    ProviderError,
    SandboxViolationError,
    SchemaMismatchError,
    ToolgateError,
    UnknownToolError,
)
from toolgate.execution.cancellation import CancellationToken
from toolgate.logging import get_logger
from toolgate.orchestrator.approval import ApprovalGate
from toolgate.orchestrator.events import CallEvents, EventChannel
from toolgate.providers.base import ModelClient, ModelEventType
from toolgate.tools.models import ToolCallRequest, ToolCallResult
from toolgate.tools.registry import RegisteredTool, ToolContext, ToolRegistry

logger = get_logger("toolgate.orchestrator")

T = TypeVar("T")

DEFAULT_MAX_TURNS = 25
MAX_RESULT_MESSAGE_CHARS = 10_000


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    REPAIRING = "repairing"
    CANCELLED = "cancelled"
    DONE = "done"


class TurnOutcome(BaseModel):
    """What one model turn produced."""
    text: str = ""
    results: list[ToolCallResult] = Field(default_factory=list)
    stop_reason: str = ""
    cancelled: bool = False
    error: str | None = None


class SessionOutcome(BaseModel):
    """Aggregate of every turn run for one prompt."""
    turns: list[TurnOutcome] = Field(default_factory=list)
    hit_turn_limit: bool = False

    @property
    def text(self) -> str:
        return self.turns[-1].text if self.turns else ""

    @property
    def cancelled(self) -> bool:
        return any(t.cancelled for t in self.turns)

    @property
    def results(self) -> list[ToolCallResult]:
        return [r for t in self.turns for r in t.results]


class _Cancelled(Exception):
    """Internal signal: the turn's token fired while awaiting."""


def _bounded(message: str) -> str:
    if len(message) > MAX_RESULT_MESSAGE_CHARS:
        return message[:MAX_RESULT_MESSAGE_CHARS] + "\n[truncated]"
    return message


async def until_cancelled(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """Await `awaitable` unless `token` fires first, in which case it is cancelled."""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()
    task.cancel()
    await asyncio.wait({task})
    raise _Cancelled()


class ToolOrchestrator:
    """Maps model tool-call requests onto registered tools."""

    def __init__(
        self,
        registry: ToolRegistry,
        model: ModelClient,
        *,
        events: EventChannel | None = None,
        approval: ApprovalGate | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        system: str | None = None,
    ):
        self.registry = registry
        self.model = model
        self.events = events or EventChannel()
        self.approval = approval or ApprovalGate()
        self.max_turns = max_turns
        self.system = system
        self.messages: list[dict[str, Any]] = []
        self.state = TurnState.IDLE
        self._current_token: CancellationToken | None = None

    # ─── Session ─────────────────────────────────────────────

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Fire the active turn's token. Safe to call repeatedly."""
        if self._current_token is None:
            return False
        return self._current_token.cancel(reason)

    async def run(self, prompt: str, token: CancellationToken | None = None) -> SessionOutcome:
        """Run turns until the model stops calling tools, a turn is cancelled or max_turns is hit.

        With `token` every turn shares it; otherwise each turn gets a
        fresh token reachable through cancel().
        """
        self.messages.append({"role": "user", "content": prompt})
        outcome = SessionOutcome()
        for _ in range(self.max_turns):
            turn = await self.run_turn(token or CancellationToken())
            outcome.turns.append(turn)
            if turn.cancelled or turn.error or not turn.results:
                break
        else:
            logger.warning(f"Stopped after reaching the turn limit ({self.max_turns})")
            outcome.hit_turn_limit = True
        self.state = TurnState.IDLE
        return outcome

    async def run_turn(self, token: CancellationToken) -> TurnOutcome:
        """One model round-trip plus dispatch of its tool calls."""
        self._current_token = token
        try:
            return await self._run_turn(token)
        finally:
            self._current_token = None

    async def _run_turn(self, token: CancellationToken) -> TurnOutcome:
        if token.cancelled:
            self.state = TurnState.CANCELLED
            return TurnOutcome(cancelled=True, stop_reason="cancelled")

        self.state = TurnState.AWAITING_MODEL
        try:
            text, calls, stop_reason = await until_cancelled(self._collect_response(), token)
        except _Cancelled:
            self.state = TurnState.CANCELLED
            return TurnOutcome(cancelled=True, stop_reason="cancelled")
        except ProviderError as e:
            logger.error(f"Model request failed: {e}")
            self.state = TurnState.DONE
            return TurnOutcome(error=str(e), stop_reason="error")

        self.messages.append({"role": "assistant", "content": self._assistant_blocks(text, calls)})
        if not calls:
            self.state = TurnState.DONE
            return TurnOutcome(text=text, stop_reason=stop_reason)

        results = await self.dispatch(calls, token)
        self.messages.append({"role": "user", "content": [r.to_message_block() for r in results]})

        if token.cancelled:
            self.state = TurnState.CANCELLED
            return TurnOutcome(text=text, results=results, cancelled=True, stop_reason="cancelled")
        self.state = TurnState.AWAITING_MODEL
        return TurnOutcome(text=text, results=results, stop_reason=stop_reason)

    async def _collect_response(self) -> tuple[str, list[ToolCallRequest], str]:
        parts: list[str] = []
        calls: list[ToolCallRequest] = []
        stop_reason = "end_turn"
        async for event in self.model.stream(self.messages, tools=self.registry.get_schemas(), system=self.system):
            if event.type == ModelEventType.TEXT:
                parts.append(event.text)
            elif event.type == ModelEventType.TOOL_CALL and event.call is not None:
                calls.append(event.call)
            elif event.type == ModelEventType.STOP:
                stop_reason = event.stop_reason
        return "".join(parts), calls, stop_reason

    @staticmethod
    def _assistant_blocks(text: str, calls: list[ToolCallRequest]) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        if text:
            blocks.append({"type": "text", "text": text})
        for call in calls:
            arguments = call.raw_arguments if isinstance(call.raw_arguments, dict) else {}
            blocks.append({"type": "tool_use", "id": call.id, "name": call.tool_name, "input": arguments})
        return blocks

    # ─── Dispatch ────────────────────────────────────────────

    def plan_batches(self, calls: list[ToolCallRequest]) -> list[list[int]]:
        """Group call indexes into batches that may run concurrently."""
        batches: list[list[int]] = []
        current: list[int] = []
        for index, call in enumerate(calls):
            tool = self.registry.get(call.tool_name)
            if tool is not None and tool.interaction == InteractionClass.INTERACTIVE:
                if current:
                    batches.append(current)
                    current = []
                batches.append([index])
            else:
                current.append(index)
        if current:
            batches.append(current)
        return batches

    async def dispatch(self, calls: list[ToolCallRequest], token: CancellationToken) -> list[ToolCallResult]:
        """Execute every call of one turn; results are in request order."""
        self.state = TurnState.DISPATCHING
        results: list[ToolCallResult | None] = [None] * len(calls)
        for batch in self.plan_batches(calls):
            if token.cancelled:
                for index in batch:
                    results[index] = self._aborted(calls[index], CallEvents(self.events, calls[index].id, calls[index].tool_name))
                continue
            batch_results = await asyncio.gather(*(self.execute_call(calls[i], token) for i in batch))
            for index, result in zip(batch, batch_results):
                results[index] = result
        return [r for r in results if r is not None]

    async def execute_call(self, request: ToolCallRequest, token: CancellationToken) -> ToolCallResult:
        """Validate, repair at most once, invoke and convert to a result."""
        started = time.monotonic()
        events = CallEvents(self.events, request.id, request.tool_name)

        def finish(status: CallStatus, payload: Any = None, message: str = "", repaired: bool = False) -> ToolCallResult:
            result = ToolCallResult(
                id=request.id,
                tool_name=request.tool_name,
                status=status,
                payload=payload,
                message=_bounded(message),
                repaired=repaired,
                duration_ms=(time.monotonic() - started) * 1000,
            )
            if status == CallStatus.OK:
                events.completion(f"{request.tool_name} completed")
            else:
                events.error(result.message)
            logger.info(
                "Tool call finished",
                extra={
                    "tool_name": request.tool_name,
                    "call_id": request.id,
                    "status": status.value,
                    "duration_ms": round(result.duration_ms, 1),
                },
            )
            return result

        if token.cancelled:
            return self._aborted(request, events)

        try:
            tool = self.registry.require(request.tool_name)
        except UnknownToolError as e:
            return finish(CallStatus.ERROR, message=str(e))

        repaired = False
        try:
            args = tool.parse_arguments(request.raw_arguments)
        except SchemaMismatchError as first:
            try:
                args = await self._repair(tool, request, first, token)
            except _Cancelled:
                return finish(CallStatus.ABORTED, message=f"Tool '{tool.name}' aborted during repair")
            except SchemaMismatchError as second:
                return finish(CallStatus.ERROR, message=f"{first}\nRepair attempt failed: {second}")
            except ProviderError as e:
                return finish(CallStatus.ERROR, message=f"{first}\nRepair attempt failed: {e}")
            except Exception as e:
                logger.exception("Argument repair raised an unexpected error", extra={"tool_name": tool.name, "call_id": request.id})
                return finish(CallStatus.ERROR, message=f"{first}\nRepair attempt failed: {type(e).__name__}: {e}")
            repaired = True

        events.init(tool.describe_call(args))
        ctx = ToolContext(request.id, tool.name, token, events, self.approval)
        try:
            payload = await until_cancelled(self._invoke(tool, args, ctx), token)
        except _Cancelled:
            return finish(CallStatus.ABORTED, message=f"Tool '{tool.name}' aborted", repaired=repaired)
        except CommandBlockedError as e:
            return finish(CallStatus.BLOCKED, message=e.verdict.format_message(), repaired=repaired)
        except (SandboxViolationError, ApprovalRejectedError) as e:
            return finish(CallStatus.BLOCKED, message=str(e), repaired=repaired)
        except ExecutionTimeoutError as e:
            return finish(CallStatus.TIMEOUT, message=str(e), repaired=repaired)
        except ExecutionAbortedError as e:
            return finish(CallStatus.ABORTED, message=str(e), repaired=repaired)
        except ToolgateError as e:
            return finish(CallStatus.ERROR, message=str(e), repaired=repaired)
        except Exception as e:
            logger.exception("Tool raised an unexpected error", extra={"tool_name": tool.name, "call_id": request.id})
            return finish(CallStatus.ERROR, message=f"{type(e).__name__}: {e}", repaired=repaired)

        return finish(CallStatus.OK, payload=payload, repaired=repaired)

    async def _invoke(self, tool: RegisteredTool, args: BaseModel, ctx: ToolContext) -> Any:
        if tool.timeout_seconds is None:
            return await tool.invoke(args, ctx)
        try:
            return await asyncio.wait_for(tool.invoke(args, ctx), timeout=tool.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError(tool.name, tool.timeout_seconds) from e

    async def _repair(
        self,
        tool: RegisteredTool,
        request: ToolCallRequest,
        error: SchemaMismatchError,
        token: CancellationToken,
    ) -> BaseModel:
        """Single repair round-trip; raises on any failure."""
        self.state = TurnState.REPAIRING
        logger.warning(
            "Tool call arguments invalid, attempting repair",
            extra={"tool_name": tool.name, "call_id": request.id, "reason": str(error)},
        )
        try:
            fixed = await until_cancelled(self.model.repair_arguments(request, tool.descriptor, str(error)), token)
            return tool.parse_arguments(fixed)
        finally:
            self.state = TurnState.DISPATCHING

    def _aborted(self, request: ToolCallRequest, events: CallEvents) -> ToolCallResult:
        message = f"Tool '{request.tool_name}' aborted before it started"
        events.error(message)
        return ToolCallResult(
            id=request.id,
            tool_name=request.tool_name,
            status=CallStatus.ABORTED,
            message=message,
        )
