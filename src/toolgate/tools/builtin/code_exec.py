"""Python execution tool: short scripts in an isolated interpreter.

The script runs with ``python -I``, an allow-listed environment, the
workspace as cwd and POSIX resource limits. Timeout defaults to 5
seconds and can be raised to 60.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from toolgate.core.models import InteractionClass
from toolgate.exceptions import ToolExecutionError
from toolgate.tools.registry import StaticTool, ToolContext

if TYPE_CHECKING:
    from toolgate.tools.builtin.environment import ToolEnvironment

DEFAULT_TIMEOUT_SECONDS = 5
MAX_TIMEOUT_SECONDS = 60
CODE_PREVIEW_CHARS = 500


class RunPythonArgs(BaseModel):
    code: str = Field(description="Python source to execute. Use print() to produce output.")
    timeout_seconds: int = Field(
        default=DEFAULT_TIMEOUT_SECONDS,
        ge=1,
        le=MAX_TIMEOUT_SECONDS,
        description="Execution timeout in seconds (1-60)",
    )


def create_code_exec_tool(env: ToolEnvironment) -> StaticTool:
    async def _run_python(args: RunPythonArgs, ctx: ToolContext) -> dict[str, Any]:
        if not args.code.strip():
            raise ToolExecutionError(ctx.tool_name, "No code provided")

        ctx.events.update("Executing...", detail=[args.code[:CODE_PREVIEW_CHARS]])
        outcome = await env.executor.run_script(
            args.code,
            cwd=env.working_dir,
            timeout_seconds=args.timeout_seconds,
            token=ctx.token,
            max_output_bytes=env.max_output_bytes,
        )
        outcome.raise_for_status(ctx.tool_name)
        return {
            "stdout": outcome.stdout,
            "stderr": outcome.stderr,
            "exit_code": outcome.exit_code,
        }

    return StaticTool(
        name="run_python",
        description=(
            "Execute Python code in a separate isolated interpreter with the workspace as "
            "working directory and no inherited environment. Returns stdout, stderr and "
            "exit_code. Timeout defaults to 5 seconds and can be extended up to 60."
        ),
        input_model=RunPythonArgs,
        handler=_run_python,
        interaction=InteractionClass.MUTATING,
    )
