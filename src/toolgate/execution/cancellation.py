"""
Toolgate Cancellation Token

One token is created per model turn and threaded through every
subprocess spawn and every repair round-trip. Firing it is idempotent:
callbacks run once, later calls are no-ops.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from toolgate.exceptions import ExecutionAbortedError
from toolgate.logging import get_logger

logger = get_logger("toolgate.execution.cancellation")


class CancellationToken:
    """Turn-scoped abort signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Fire the token. Returns False when it was already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed", extra={"reason": reason})
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register `callback` to run on cancel; runs immediately if already fired.

        Returns a function that unregisters the callback.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, tool_name: str) -> None:
        if self._event.is_set():
            raise ExecutionAbortedError(tool_name, details={"reason": self._reason})
