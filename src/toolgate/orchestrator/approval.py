"""
Toolgate Approval Gate

Interactive tools ask the gate before mutating anything. The gate
serializes prompts with a lock so two confirmations never interleave,
remembers "accept all" per tool name for the session, and rejects
outright when no prompt callback is wired in.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from enum import Enum

from pydantic import BaseModel, Field

from toolgate.exceptions import ApprovalRejectedError
from toolgate.logging import get_logger

logger = get_logger("toolgate.orchestrator.approval")


class ApprovalDecision(str, Enum):
    ACCEPT = "accept"
    ACCEPT_ALL = "accept-all"
    REJECT = "reject"


class ApprovalRequest(BaseModel):
    """What the human is being asked to confirm."""
    call_id: str
    tool_name: str
    summary: str
    preview: list[str] = Field(default_factory=list)


class ApprovalResponse(BaseModel):
    decision: ApprovalDecision
    feedback: str = ""


PromptCallback = Callable[[ApprovalRequest], "ApprovalResponse | Awaitable[ApprovalResponse]"]


class ApprovalGate:
    """Human confirmation for interactive tool calls."""

    def __init__(self, prompt: PromptCallback | None = None, auto_accept: bool = False):
        self._prompt = prompt
        self._auto_accept = auto_accept
        self._accept_all: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def auto_accept(self) -> bool:
        return self._auto_accept

    def is_preapproved(self, tool_name: str) -> bool:
        return self._auto_accept or tool_name in self._accept_all

    async def confirm(self, call_id: str, tool_name: str, summary: str, preview: list[str] | None = None) -> None:
        await self.request(
            ApprovalRequest(call_id=call_id, tool_name=tool_name, summary=summary, preview=preview or [])
        )

    async def request(self, request: ApprovalRequest) -> None:
        """Return when approved.

        Raises:
            ApprovalRejectedError: the user declined, or nobody can be asked.
        """
        if self.is_preapproved(request.tool_name):
            return

        async with self._lock:
            # Another prompt may have granted accept-all while we waited
            if self.is_preapproved(request.tool_name):
                return
            if self._prompt is None:
                raise ApprovalRejectedError(request.tool_name, "no approval prompt available")

            response = self._prompt(request)
            if inspect.isawaitable(response):
                response = await response

        if response.decision == ApprovalDecision.ACCEPT_ALL:
            self._accept_all.add(request.tool_name)
            logger.info("Accept-all granted", extra={"tool_name": request.tool_name, "call_id": request.call_id})
            return
        if response.decision == ApprovalDecision.ACCEPT:
            return

        logger.info(
            "Tool call rejected by user",
            extra={"tool_name": request.tool_name, "call_id": request.call_id, "reason": response.feedback},
        )
        raise ApprovalRejectedError(request.tool_name, response.feedback)
