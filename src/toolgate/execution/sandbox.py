"""
Toolgate Sandboxed Executor

Wraps OS process creation for shell commands, argv invocations and
short Python scripts:
- Per-call timeout; on expiry the whole process group gets SIGKILL
- Turn cancellation via CancellationToken, also SIGKILL, reported as
  ABORTED rather than TIMEOUT
- stdout/stderr accumulated into bounded buffers; bytes past the cap
  are drained and discarded, never held in memory
- Script execution runs ``python -I`` with a clean environment built
  from an explicit allow-list, a pinned working directory and POSIX
  resource limits

The executor never classifies commands. Callers must already hold an
allow verdict from the command classifier and a validated cwd.

Note: CPython has no permission model, so network access cannot be
denied from here. The script limits are resource caps and environment
scrubbing, not isolation.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import tempfile
import time
from collections.abc import Callable, Sequence
from enum import Enum

from pydantic import BaseModel, Field

from toolgate.exceptions import ExecutionAbortedError, ExecutionTimeoutError, ToolExecutionError
from toolgate.execution.cancellation import CancellationToken
from toolgate.logging import get_logger

logger = get_logger("toolgate.execution.sandbox")

TRUNCATION_MARKER = "\n[truncated]"

# Time allowed for pipes to reach EOF after the direct child exits
DRAIN_GRACE_SECONDS = 2.0

_READ_CHUNK = 65536


class SandboxConfig(BaseModel):
    """Configuration for sandboxed execution."""

    timeout_seconds: float = Field(default=30.0, gt=0, le=3600.0)
    max_output_bytes: int = Field(default=1_000_000, ge=1024, le=16_777_216)
    env_allowlist: list[str] = Field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "LC_CTYPE", "TMPDIR", "SYSTEMROOT"]
    )
    script_memory_bytes: int = Field(default=1 << 30, ge=1 << 26)
    script_file_bytes: int = Field(default=16 << 20, ge=1 << 16)


class ProcessStatus(str, Enum):
    """The single terminating event of a SubprocessHandle."""
    EXITED = "exited"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


class ProcessOutcome(BaseModel):
    """Everything known about a finished subprocess."""

    status: ProcessStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timeout_seconds: float = 0.0
    duration_ms: float = 0.0
    pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == ProcessStatus.EXITED and self.exit_code == 0

    def raise_for_status(self, tool_name: str) -> None:
        """Raise the matching exception for a killed process.

        A non-zero exit is not raised here; callers decide how to report it.
        """
        if self.status == ProcessStatus.TIMEOUT:
            raise ExecutionTimeoutError(tool_name, self.timeout_seconds, details={"pid": self.pid})
        if self.status == ProcessStatus.ABORTED:
            raise ExecutionAbortedError(tool_name, details={"pid": self.pid})

    def combined_output(self) -> str:
        """stdout followed by stderr, each with its truncation marker."""
        parts = []
        if self.stdout:
            parts.append(self.stdout + (TRUNCATION_MARKER if self.stdout_truncated else ""))
        if self.stderr:
            parts.append(self.stderr + (TRUNCATION_MARKER if self.stderr_truncated else ""))
        return "\n".join(parts)


class BoundedBuffer:
    """Byte accumulator that keeps at most `limit` bytes."""

    def __init__(self, limit: int):
        self._limit = limit
        self._data = bytearray()
        self._truncated = False

    def append(self, chunk: bytes) -> None:
        room = self._limit - len(self._data)
        if room <= 0:
            if chunk:
                self._truncated = True
            return
        if len(chunk) > room:
            self._data.extend(chunk[:room])
            self._truncated = True
        else:
            self._data.extend(chunk)

    @property
    def truncated(self) -> bool:
        return self._truncated

    def __len__(self) -> int:
        return len(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


class SubprocessHandle:
    """A spawned process with bounded buffers and exactly one terminating event."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        timeout_seconds: float,
        max_output_bytes: int,
        on_output: Callable[[str], None] | None = None,
    ):
        self.process = process
        self.pid = process.pid
        self.started_at = time.monotonic()
        self.timeout_seconds = timeout_seconds
        self.stdout = BoundedBuffer(max_output_bytes)
        self.stderr = BoundedBuffer(max_output_bytes)
        self._on_output = on_output
        self._terminal: ProcessStatus | None = None

    @property
    def terminal(self) -> ProcessStatus | None:
        return self._terminal

    def kill(self, status: ProcessStatus) -> bool:
        """Record `status` as the terminating event and SIGKILL the group.

        Returns False if a terminating event was already recorded.
        """
        if self._terminal is not None:
            return False
        self._terminal = status
        self._kill_group()
        logger.info(
            "Subprocess killed",
            extra={"status": status.value, "exit_code": self.process.returncode},
        )
        return True

    def _kill_group(self) -> None:
        try:
            if os.name == "posix":
                os.killpg(self.pid, signal.SIGKILL)
            else:
                self.process.kill()
        except (ProcessLookupError, PermissionError):
            pass

    async def _drain(self, stream: asyncio.StreamReader | None, buffer: BoundedBuffer, notify: bool) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            buffer.append(chunk)
            if notify and self._on_output is not None:
                self._on_output(chunk.decode("utf-8", errors="replace"))

    async def _feed(self, data: bytes | None) -> None:
        stdin = self.process.stdin
        if stdin is None:
            return
        try:
            if data:
                stdin.write(data)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The child exited or closed stdin without reading
            pass
        finally:
            stdin.close()

    async def communicate(self, stdin_data: bytes | None = None, token: CancellationToken | None = None) -> ProcessOutcome:
        """Feed stdin, drain output and wait for the terminating event."""
        io_tasks = [
            asyncio.create_task(self._drain(self.process.stdout, self.stdout, notify=True)),
            asyncio.create_task(self._drain(self.process.stderr, self.stderr, notify=False)),
            asyncio.create_task(self._feed(stdin_data)),
        ]
        exit_task = asyncio.create_task(self.process.wait())
        cancel_task = asyncio.create_task(token.wait()) if token is not None else None
        waiters = {exit_task} if cancel_task is None else {exit_task, cancel_task}

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=self.timeout_seconds, return_when=asyncio.FIRST_COMPLETED
            )
            if exit_task not in done:
                if cancel_task is not None and cancel_task in done:
                    self.kill(ProcessStatus.ABORTED)
                else:
                    self.kill(ProcessStatus.TIMEOUT)
                await exit_task
            elif self._terminal is None:
                self._terminal = ProcessStatus.EXITED

            _, pending = await asyncio.wait(io_tasks, timeout=DRAIN_GRACE_SECONDS)
            if pending:
                # Background children still hold the pipes open
                self._kill_group()
                _, pending = await asyncio.wait(pending, timeout=DRAIN_GRACE_SECONDS)
                for task in pending:
                    task.cancel()
        except asyncio.CancelledError:
            self.kill(ProcessStatus.ABORTED)
            for task in io_tasks:
                task.cancel()
            exit_task.cancel()
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        return ProcessOutcome(
            status=self._terminal or ProcessStatus.EXITED,
            exit_code=self.process.returncode,
            stdout=self.stdout.text(),
            stderr=self.stderr.text(),
            stdout_truncated=self.stdout.truncated,
            stderr_truncated=self.stderr.truncated,
            timeout_seconds=self.timeout_seconds,
            duration_ms=(time.monotonic() - self.started_at) * 1000,
            pid=self.pid,
        )


class SandboxedExecutor:
    """Spawns child processes with timeouts, output caps and hard teardown."""

    def __init__(self, config: SandboxConfig | None = None):
        self._config = config or SandboxConfig()

    @property
    def config(self) -> SandboxConfig:
        return self._config

    async def run(
        self,
        command: str,
        *,
        cwd: str,
        timeout_seconds: float | None = None,
        token: CancellationToken | None = None,
        max_output_bytes: int | None = None,
        env: dict[str, str] | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> ProcessOutcome:
        """Run a shell command string through ``/bin/sh``."""
        if token is not None and token.cancelled:
            return self._aborted_before_spawn(timeout_seconds)
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=(os.name == "posix"),
        )
        return await self._supervise(process, None, timeout_seconds, max_output_bytes, token, on_output)

    async def run_exec(
        self,
        argv: Sequence[str],
        *,
        cwd: str,
        stdin_data: str | bytes | None = None,
        timeout_seconds: float | None = None,
        token: CancellationToken | None = None,
        max_output_bytes: int | None = None,
        env: dict[str, str] | None = None,
        on_output: Callable[[str], None] | None = None,
    ) -> ProcessOutcome:
        """Run an argv list without a shell, optionally feeding stdin."""
        if token is not None and token.cancelled:
            return self._aborted_before_spawn(timeout_seconds)
        data = stdin_data.encode("utf-8") if isinstance(stdin_data, str) else stdin_data
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError as e:
            raise ToolExecutionError(argv[0], f"interpreter not found: {e}") from e
        return await self._supervise(process, data, timeout_seconds, max_output_bytes, token, on_output)

    async def run_script(
        self,
        code: str,
        *,
        cwd: str,
        timeout_seconds: float | None = None,
        token: CancellationToken | None = None,
        max_output_bytes: int | None = None,
    ) -> ProcessOutcome:
        """Execute Python source in an isolated interpreter.

        The code runs with:
        - ``-I`` (no user site, no PYTHON* env vars, no cwd on sys.path)
        - an environment holding only allow-listed variables
        - cwd pinned to the validated working directory
        - CPU, address-space and file-size limits on POSIX
        """
        timeout = timeout_seconds or self._config.timeout_seconds
        with tempfile.NamedTemporaryFile(
            mode="w", suffix=".py", delete=False, prefix="toolgate_script_", encoding="utf-8"
        ) as f:
            f.write(code)
            tmp_path = f.name

        try:
            if token is not None and token.cancelled:
                return self._aborted_before_spawn(timeout)
            process = await asyncio.create_subprocess_exec(
                sys.executable,
                "-I",
                "-B",
                tmp_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.clean_environment(home=cwd),
                start_new_session=(os.name == "posix"),
                preexec_fn=self._script_limits(timeout) if os.name == "posix" else None,
            )
            return await self._supervise(process, None, timeout, max_output_bytes, token, None)
        finally:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def clean_environment(self, home: str | None = None) -> dict[str, str]:
        """Environment containing only allow-listed variables."""
        env = {key: os.environ[key] for key in self._config.env_allowlist if key in os.environ}
        env.setdefault("PATH", "/usr/bin:/usr/local/bin:/bin")
        env["HOME"] = home or tempfile.gettempdir()
        env["PYTHONIOENCODING"] = "utf-8"
        return env

    def _script_limits(self, timeout: float) -> Callable[[], None]:
        memory = self._config.script_memory_bytes
        file_size = self._config.script_file_bytes
        cpu = int(timeout) + 1

        def apply() -> None:
            import resource

            for limit, value in (
                (resource.RLIMIT_CPU, cpu),
                (resource.RLIMIT_AS, memory),
                (resource.RLIMIT_FSIZE, file_size),
            ):
                try:
                    resource.setrlimit(limit, (value, value))
                except (ValueError, OSError):
                    pass

        return apply

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        stdin_data: bytes | None,
        timeout_seconds: float | None,
        max_output_bytes: int | None,
        token: CancellationToken | None,
        on_output: Callable[[str], None] | None,
    ) -> ProcessOutcome:
        handle = SubprocessHandle(
            process,
            timeout_seconds=timeout_seconds or self._config.timeout_seconds,
            max_output_bytes=max_output_bytes or self._config.max_output_bytes,
            on_output=on_output,
        )
        logger.debug("Subprocess spawned", extra={"reason": f"pid={handle.pid}"})
        outcome = await handle.communicate(stdin_data, token)
        logger.debug(
            "Subprocess finished",
            extra={
                "status": outcome.status.value,
                "exit_code": outcome.exit_code,
                "duration_ms": round(outcome.duration_ms, 1),
            },
        )
        return outcome

    def _aborted_before_spawn(self, timeout_seconds: float | None) -> ProcessOutcome:
        return ProcessOutcome(
            status=ProcessStatus.ABORTED,
            timeout_seconds=timeout_seconds or self._config.timeout_seconds,
        )
