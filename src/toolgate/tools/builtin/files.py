"""File tools: sandboxed read, write, edit, delete and undo.

- read_file: read-only
- write_file, edit_file, delete_file: interactive; the user confirms a
  diff preview before anything changes
- undo_edit: mutating; restores the file from its backup

Every path goes through PathSandbox.validate(), including the
``.backup`` sibling. Files listed as read-only in the workspace
config are never modified. Each file-replacing mutation copies the
previous content to ``<file>.backup`` before touching the file.
"""

from __future__ import annotations

import difflib
import os
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from toolgate.core.models import InteractionClass
from toolgate.exceptions import SandboxViolationError, ToolExecutionError
from toolgate.logging import get_logger
from toolgate.tools.registry import StaticTool, ToolContext

if TYPE_CHECKING:
    from toolgate.tools.builtin.environment import ToolEnvironment

logger = get_logger("toolgate.tools.files")

BACKUP_SUFFIX = ".backup"
MAX_READ_BYTES = 1_048_576
MAX_PREVIEW_LINES = 200


class ReadFileArgs(BaseModel):
    path: str = Field(description="Path to the file, relative to the workspace root or absolute")
    start_line: int = Field(default=1, ge=1, description="First line to return (1-based)")
    max_lines: int = Field(default=2000, ge=1, description="Maximum lines to return")


class WriteFileArgs(BaseModel):
    path: str = Field(description="Path of the file to create or overwrite")
    content: str = Field(description="Full new content of the file")


class EditFileArgs(BaseModel):
    path: str = Field(description="Path of the file to edit")
    old_text: str = Field(min_length=1, description="Exact text to replace")
    new_text: str = Field(description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace every occurrence instead of exactly one")


class DeleteFileArgs(BaseModel):
    path: str = Field(description="Path of the file to delete")


class UndoEditArgs(BaseModel):
    path: str = Field(description="Path of the file to restore from its backup")


def diff_preview(path: str, before: str, after: str) -> list[str]:
    lines = list(
        difflib.unified_diff(
            before.splitlines(),
            after.splitlines(),
            fromfile=f"a/{os.path.basename(path)}",
            tofile=f"b/{os.path.basename(path)}",
            lineterm="",
        )
    )
    if len(lines) > MAX_PREVIEW_LINES:
        lines = lines[:MAX_PREVIEW_LINES] + [f"... ({len(lines) - MAX_PREVIEW_LINES} more diff lines)"]
    return lines


class FileTools:
    """Factory and shared helpers for the file tools of one session."""

    def __init__(self, env: ToolEnvironment):
        self.env = env

    def _writable(self, requested: str, *, require_existence: bool) -> str:
        path = self.env.sandbox.validate(requested, require_existence=require_existence)
        if self.env.is_read_only(path):
            raise SandboxViolationError(requested, f"Access denied - file is read-only: {path}")
        return path

    def _backup_path(self, path: str) -> str:
        return self.env.sandbox.validate(path + BACKUP_SUFFIX, require_existence=False)

    def _write_backup(self, path: str) -> str:
        backup = self._backup_path(path)
        Path(backup).write_bytes(Path(path).read_bytes())
        return backup

    def _touched(self, path: str) -> None:
        self.env.listing_cache.invalidate(os.path.dirname(path))

    @staticmethod
    def _read_text(tool_name: str, path: str) -> str:
        if not os.path.isfile(path):
            raise ToolExecutionError(tool_name, f"Not a file: {path}")
        try:
            return Path(path).read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ToolExecutionError(tool_name, f"File is not valid UTF-8 text: {path}") from e

    # ─── Tool bodies ─────────────────────────────────────────

    def read_file(self, args: ReadFileArgs, ctx: ToolContext) -> str:
        path = self.env.sandbox.validate(args.path, require_existence=True)
        if not os.path.isfile(path):
            raise ToolExecutionError(ctx.tool_name, f"Not a file: {args.path}")
        size = os.path.getsize(path)
        if size > MAX_READ_BYTES:
            raise ToolExecutionError(ctx.tool_name, f"File too large ({size} bytes). Max {MAX_READ_BYTES}.")

        lines = Path(path).read_text(encoding="utf-8", errors="replace").splitlines()
        start = args.start_line - 1
        selected = lines[start : start + args.max_lines]
        content = "\n".join(selected)
        remaining = len(lines) - (start + len(selected))
        if remaining > 0:
            content += f"\n[TRUNCATED: {remaining} more lines, total {len(lines)}]"
        return content

    async def write_file(self, args: WriteFileArgs, ctx: ToolContext) -> str:
        path = self._writable(args.path, require_existence=False)
        exists = os.path.isfile(path)
        if os.path.isdir(path):
            raise ToolExecutionError(ctx.tool_name, f"Path is a directory: {args.path}")
        before = self._read_text(ctx.tool_name, path) if exists else ""

        verb = "Overwrite" if exists else "Create"
        await ctx.confirm(f"{verb} {args.path}", diff_preview(path, before, args.content))

        if exists:
            self._write_backup(path)
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_text(args.content, encoding="utf-8")
        self._touched(path)
        logger.info("File written", extra={"tool_name": ctx.tool_name, "call_id": ctx.call_id})
        return f"Wrote {len(args.content.encode('utf-8'))} bytes to {path}"

    async def edit_file(self, args: EditFileArgs, ctx: ToolContext) -> str:
        path = self._writable(args.path, require_existence=True)
        before = self._read_text(ctx.tool_name, path)

        occurrences = before.count(args.old_text)
        if occurrences == 0:
            raise ToolExecutionError(ctx.tool_name, f"old_text not found in {args.path}")
        if occurrences > 1 and not args.replace_all:
            raise ToolExecutionError(
                ctx.tool_name,
                f"old_text matches {occurrences} times in {args.path}; add context or set replace_all",
            )

        after = before.replace(args.old_text, args.new_text, -1 if args.replace_all else 1)
        await ctx.confirm(f"Edit {args.path}", diff_preview(path, before, after))

        self._write_backup(path)
        Path(path).write_text(after, encoding="utf-8")
        self._touched(path)
        return f"Replaced {occurrences if args.replace_all else 1} occurrence(s) in {path}"

    async def delete_file(self, args: DeleteFileArgs, ctx: ToolContext) -> str:
        path = self._writable(args.path, require_existence=True)
        if not os.path.isfile(path):
            raise ToolExecutionError(ctx.tool_name, f"Not a file: {args.path}")

        await ctx.confirm(f"Delete {args.path}")

        backup = self._write_backup(path)
        os.unlink(path)
        self._touched(path)
        return f"Deleted {path} (backup at {backup})"

    def undo_edit(self, args: UndoEditArgs, ctx: ToolContext) -> str:
        path = self._writable(args.path, require_existence=False)
        backup = self._backup_path(path)
        if not os.path.isfile(backup) or os.path.getsize(backup) == 0:
            raise ToolExecutionError(ctx.tool_name, f"No backup file found for {args.path}")

        Path(path).write_bytes(Path(backup).read_bytes())
        # Keep the backup file, but empty, so a second undo is refused
        Path(backup).write_bytes(b"")
        self._touched(path)
        return f"Successfully restored {path} from backup"

    def create_tools(self) -> list[StaticTool]:
        return [
            StaticTool(
                name="read_file",
                description="Read a UTF-8 text file inside the workspace, optionally a line range.",
                input_model=ReadFileArgs,
                handler=self.read_file,
                interaction=InteractionClass.READ_ONLY,
            ),
            StaticTool(
                name="write_file",
                description=(
                    "Create or overwrite a file inside the workspace. Requires user confirmation; "
                    "the previous content is saved to <file>.backup."
                ),
                input_model=WriteFileArgs,
                handler=self.write_file,
                interaction=InteractionClass.INTERACTIVE,
            ),
            StaticTool(
                name="edit_file",
                description=(
                    "Replace exact text in a file. old_text must match exactly once unless "
                    "replace_all is set. Requires user confirmation; a backup is written first."
                ),
                input_model=EditFileArgs,
                handler=self.edit_file,
                interaction=InteractionClass.INTERACTIVE,
            ),
            StaticTool(
                name="delete_file",
                description="Delete a file inside the workspace. Requires user confirmation; a backup is kept.",
                input_model=DeleteFileArgs,
                handler=self.delete_file,
                interaction=InteractionClass.INTERACTIVE,
            ),
            StaticTool(
                name="undo_edit",
                description="Restore a file from its .backup created by the last write, edit or delete.",
                input_model=UndoEditArgs,
                handler=self.undo_edit,
                interaction=InteractionClass.MUTATING,
            ),
        ]
