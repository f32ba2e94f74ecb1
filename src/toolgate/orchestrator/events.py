"""
Toolgate Lifecycle Events

Tools push typed ToolEvents onto an EventChannel; the UI collaborator
consumes them. Each call gets a CallEvents emitter that guarantees a
single terminal event (completion or error). Anything emitted after
the terminal event is dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

from toolgate.core.models import EventType, ToolEvent
from toolgate.logging import get_logger

logger = get_logger("toolgate.orchestrator.events")

_CLOSED = object()


class EventChannel:
    """Unbounded queue of ToolEvents with an explicit end-of-stream.

    Consumers either iterate with ``async for`` or register a synchronous
    subscriber; both see every event in publish order.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._subscribers: list[Callable[[ToolEvent], None]] = []
        self._closed = False
        self._history: list[ToolEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[ToolEvent]:
        return list(self._history)

    def subscribe(self, callback: Callable[[ToolEvent], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, event: ToolEvent) -> None:
        if self._closed:
            logger.debug("Event published after close", extra={"call_id": event.call_id})
            return
        self._history.append(event)
        self._queue.put_nowait(event)
        for callback in self._subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed", extra={"event_type": event.event.value})

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def events_for(self, call_id: str) -> list[ToolEvent]:
        return [e for e in self._history if e.call_id == call_id]

    async def __aiter__(self) -> AsyncIterator[ToolEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class CallEvents:
    """Per-call emitter bound to one call id."""

    def __init__(self, channel: EventChannel, call_id: str, tool_name: str):
        self._channel = channel
        self.call_id = call_id
        self.tool_name = tool_name
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def _emit(self, event_type: EventType, message: str, detail: list[str] | None) -> bool:
        if self._finished:
            return False
        event = ToolEvent(
            call_id=self.call_id,
            tool_name=self.tool_name,
            event=event_type,
            message=message,
            detail=detail or [],
        )
        if event.is_terminal:
            self._finished = True
        self._channel.publish(event)
        return True

    def init(self, message: str, detail: list[str] | None = None) -> bool:
        return self._emit(EventType.INIT, message, detail)

    def update(self, message: str, detail: list[str] | None = None) -> bool:
        return self._emit(EventType.UPDATE, message, detail)

    def completion(self, message: str, detail: list[str] | None = None) -> bool:
        return self._emit(EventType.COMPLETION, message, detail)

    def error(self, message: str, detail: list[str] | None = None) -> bool:
        return self._emit(EventType.ERROR, message, detail)
