"""Shell command tool: classified, path-checked, then run in the workspace.

Order of checks before anything is spawned:
1. The working directory must validate against the sandbox
2. The command classifier must not block the command
3. Every path-like argument must resolve inside the sandbox (temp
   directories and device files excepted)
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from toolgate.core.models import InteractionClass
from toolgate.exceptions import CommandBlockedError, ToolExecutionError
from toolgate.logging import get_logger
from toolgate.safety.commands import is_mutating_command
from toolgate.safety.paths import temp_directories
from toolgate.tools.registry import StaticTool, ToolContext, clip

if TYPE_CHECKING:
    from toolgate.tools.builtin.environment import ToolEnvironment

logger = get_logger("toolgate.tools.bash")

MUTATION_MARKER = "⚠"
OUTPUT_TAIL_LINES = 20


class BashArgs(BaseModel):
    command: str = Field(description="Shell command to run")
    cwd: str | None = Field(default=None, description="Working directory, defaults to the workspace root")
    timeout: float | None = Field(default=None, gt=0, le=600, description="Timeout in seconds")


def summarize_command(args: BashArgs) -> str:
    prefix = f"{MUTATION_MARKER} " if is_mutating_command(args.command) else ""
    return f"{prefix}bash({clip(args.command, 80)})"


def create_bash_tool(env: ToolEnvironment) -> StaticTool:
    async def _bash(args: BashArgs, ctx: ToolContext) -> str:
        cwd = env.sandbox.validate(args.cwd or env.working_dir, require_existence=True)
        if not os.path.isdir(cwd):
            raise ToolExecutionError(ctx.tool_name, f"Working directory is not a directory: {args.cwd}")

        verdict = env.classifier.classify(args.command)
        if verdict.blocked:
            logger.info(
                "Command blocked",
                extra={"tool_name": ctx.tool_name, "call_id": ctx.call_id, "reason": verdict.reason},
            )
            raise CommandBlockedError(verdict)

        env.sandbox.validate_command_paths(args.command, cwd, extra_allowed=temp_directories())

        outcome = await env.executor.run(
            args.command,
            cwd=cwd,
            timeout_seconds=args.timeout or env.bash_timeout,
            token=ctx.token,
            max_output_bytes=env.max_output_bytes,
        )
        outcome.raise_for_status(ctx.tool_name)

        output = outcome.combined_output().rstrip()
        if output:
            ctx.events.update(
                f"Output ({len(output.splitlines())} lines)",
                detail=output.splitlines()[-OUTPUT_TAIL_LINES:],
            )
        if outcome.exit_code != 0:
            raise ToolExecutionError(
                ctx.tool_name,
                f"Command exited with code {outcome.exit_code}\n{output}".rstrip(),
                details={"exit_code": outcome.exit_code},
            )
        if is_mutating_command(args.command):
            env.listing_cache.invalidate()
        return output or "(command produced no output)"

    return StaticTool(
        name="bash",
        description=(
            "Run a shell command in the workspace. Destructive commands (forced git "
            "history rewrites, rm -rf outside temporary directories) are blocked, and "
            "every path argument must stay inside the allowed directories."
        ),
        input_model=BashArgs,
        handler=_bash,
        interaction=InteractionClass.MUTATING,
        summarize=summarize_command,
    )
