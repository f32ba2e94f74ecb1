"""Directory listing tool with an explicit, session-owned TTL cache."""

from __future__ import annotations

import os
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from toolgate.core.models import InteractionClass
from toolgate.exceptions import ToolExecutionError
from toolgate.tools.registry import StaticTool, ToolContext

if TYPE_CHECKING:
    from toolgate.tools.builtin.environment import ToolEnvironment


class DirectoryListingCache:
    """Maps canonical directory paths to sorted entry lists for `ttl_seconds`."""

    def __init__(self, ttl_seconds: float = 30.0, max_entries: int = 256, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[float, list[str]]] = {}

    def get(self, directory: str) -> list[str] | None:
        hit = self._entries.get(directory)
        if hit is None:
            return None
        stored_at, entries = hit
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[directory]
            return None
        return list(entries)

    def put(self, directory: str, entries: list[str]) -> None:
        if directory not in self._entries and len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]
        self._entries[directory] = (self._clock(), list(entries))

    def invalidate(self, directory: str | None = None) -> None:
        if directory is None:
            self._entries.clear()
        else:
            self._entries.pop(directory, None)

    def __len__(self) -> int:
        return len(self._entries)


class ListDirectoryArgs(BaseModel):
    path: str = Field(default=".", description="Directory to list, relative to the workspace root")
    max_entries: int = Field(default=500, ge=1, le=5000, description="Maximum entries to return")


def read_entries(directory: str) -> list[str]:
    """Sorted entry names; directories carry a trailing slash."""
    entries = []
    with os.scandir(directory) as it:
        for entry in it:
            entries.append(entry.name + "/" if entry.is_dir() else entry.name)
    return sorted(entries)


def create_list_directory_tool(env: ToolEnvironment) -> StaticTool:
    def _list_directory(args: ListDirectoryArgs, ctx: ToolContext) -> str:
        directory = env.sandbox.validate(args.path, require_existence=True)
        if not os.path.isdir(directory):
            raise ToolExecutionError(ctx.tool_name, f"Not a directory: {args.path}")

        entries = env.listing_cache.get(directory)
        if entries is None:
            entries = read_entries(directory)
            env.listing_cache.put(directory, entries)

        shown = entries[: args.max_entries]
        lines = [f"{directory}:"] + shown
        if len(entries) > len(shown):
            lines.append(f"[{len(entries) - len(shown)} more entries not shown]")
        return "\n".join(lines)

    return StaticTool(
        name="list_directory",
        description="List the entries of a directory inside the workspace. Directories end with '/'.",
        input_model=ListDirectoryArgs,
        handler=_list_directory,
        interaction=InteractionClass.READ_ONLY,
    )
