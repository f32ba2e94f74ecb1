"""
Toolgate Console Rendering

Consumes ToolEvents and renders them with rich. The core never writes
to the terminal itself; this is the only place that does.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt

from toolgate.core.models import EventType, ToolEvent
from toolgate.orchestrator.approval import ApprovalDecision, ApprovalRequest, ApprovalResponse
from toolgate.orchestrator.events import EventChannel

_STYLES = {
    EventType.INIT: ("bold cyan", ">"),
    EventType.UPDATE: ("dim", "|"),
    EventType.COMPLETION: ("green", "+"),
    EventType.ERROR: ("red", "x"),
}

MAX_DETAIL_LINES = 20


class ConsoleRenderer:
    """Renders lifecycle events as they are published."""

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console(stderr=True)
        self.verbose = verbose

    def attach(self, channel: EventChannel) -> None:
        channel.subscribe(self.render)

    def render(self, event: ToolEvent) -> None:
        style, marker = _STYLES[event.event]
        self.console.print(f"[{style}]{marker} {escape(event.tool_name)}[/] {escape(event.message)}")
        if event.detail and (self.verbose or event.event != EventType.UPDATE):
            for line in event.detail[-MAX_DETAIL_LINES:]:
                self.console.print(f"    [dim]{escape(line)}[/]")


def _settle(future: asyncio.Future, result: Any, error: Exception | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


def run_in_daemon_thread(func: Callable[..., Any], *args: Any) -> asyncio.Future:
    """Run blocking `func` on a daemon thread and await its result.

    Cancelling the returned future abandons the thread instead of waiting
    for it, so a prompt stuck on terminal input never holds up loop
    shutdown. The answer of an abandoned prompt is discarded.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def _target() -> None:
        try:
            result, error = func(*args), None
        except Exception as e:
            result, error = None, e
        try:
            loop.call_soon_threadsafe(_settle, future, result, error)
        except RuntimeError:
            # Loop already closed; nobody is waiting any more
            pass

    threading.Thread(target=_target, name="toolgate-prompt", daemon=True).start()
    return future


def console_prompt(console: Console | None = None):
    """Approval callback asking on the terminal.

    Input is read on a daemon thread. A blocked read cannot be
    interrupted, so a cancelled prompt leaves it behind until the
    process exits.
    """
    console = console or Console(stderr=True)

    def _ask(request: ApprovalRequest) -> ApprovalResponse:
        console.print(f"\n[bold yellow]Approval needed:[/] {escape(request.summary)}")
        for line in request.preview:
            style = "green" if line.startswith("+") else "red" if line.startswith("-") else "dim"
            console.print(f"  [{style}]{escape(line)}[/]")
        choice = Prompt.ask(
            "Accept? (y = yes, a = yes to all for this tool, n = no)",
            choices=["y", "a", "n"],
            default="n",
            console=console,
        )
        if choice == "y":
            return ApprovalResponse(decision=ApprovalDecision.ACCEPT)
        if choice == "a":
            return ApprovalResponse(decision=ApprovalDecision.ACCEPT_ALL)
        feedback = Prompt.ask("Feedback for the model (optional)", default="", console=console)
        return ApprovalResponse(decision=ApprovalDecision.REJECT, feedback=feedback)

    async def _prompt(request: ApprovalRequest) -> ApprovalResponse:
        return await run_in_daemon_thread(_ask, request)

    return _prompt
