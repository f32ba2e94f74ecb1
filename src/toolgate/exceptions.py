"""
Toolgate Custom Exceptions

Structured exception hierarchy for the tool execution layer.
All toolgate-specific exceptions inherit from ToolgateError.

Tool bodies raise these; the ToolOrchestrator converts each one into
a ToolCallResult so a single failing call never ends the session.

Exception hierarchy:
    ToolgateError
    +-- SandboxViolationError     (path resolves outside allowed roots)
    +-- PathNotFoundError         (path required to exist but absent)
    +-- CommandBlockedError       (destructive command classifier verdict)
    +-- ApprovalRejectedError     (human declined an interactive call)
    +-- ToolExecutionError        (tool body failure)
    |   +-- ExecutionTimeoutError (per-call timer expired, process killed)
    |   +-- ExecutionAbortedError (turn cancellation fired, process killed)
    +-- SchemaMismatchError       (arguments failed validation, repairable)
    +-- UnknownToolError          (tool name not registered, never repaired)
    +-- DiscoveryError            (dynamic tool script failed to describe itself)
    +-- ProviderError             (model-facing collaborator failure)
    +-- ConfigError               (malformed configuration file)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from toolgate.core.models import SafetyVerdict


class ToolgateError(Exception):
    """Base exception for all toolgate errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SandboxViolationError(ToolgateError):
    """Raised when a path resolves outside every allowed root.

    Covers plain ``..`` escapes, absolute overrides, symlinks whose
    target leaves the sandbox and not-yet-existing paths whose nearest
    existing ancestor resolves outside it.
    """

    def __init__(self, path: str, message: str, details: dict | None = None):
        super().__init__(message, details={"path": path, **(details or {})})
        self.path = path


class PathNotFoundError(ToolgateError):
    """Raised when existence is required and the validated path is absent.

    Distinct from SandboxViolationError: the path is inside the sandbox,
    it just does not exist.
    """

    def __init__(self, path: str, resolved: str):
        super().__init__(
            f"The specified path does not exist: {path} ({resolved})",
            details={"path": path, "resolved": resolved},
        )
        self.path = path
        self.resolved = resolved


class CommandBlockedError(ToolgateError):
    """Raised when the command classifier blocks a shell command."""

    def __init__(self, verdict: SafetyVerdict):
        super().__init__(
            verdict.reason,
            details={"command": verdict.subject, "tip": verdict.tip},
        )
        self.verdict = verdict


class ApprovalRejectedError(ToolgateError):
    """Raised when the user declines an interactive tool call."""

    def __init__(self, tool_name: str, feedback: str = ""):
        message = f"User rejected {tool_name}"
        if feedback:
            message += f": {feedback}"
        super().__init__(message, details={"tool_name": tool_name, "feedback": feedback})
        self.tool_name = tool_name
        self.feedback = feedback


class ToolExecutionError(ToolgateError):
    """Raised when a tool execution fails.

    Includes tool name for debugging.
    """

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Tool '{tool_name}' execution failed: {message}",
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name


class ExecutionTimeoutError(ToolExecutionError):
    """Raised when a subprocess outlives its per-call timeout and is killed."""

    def __init__(self, tool_name: str, timeout_seconds: float, details: dict | None = None):
        super().__init__(
            tool_name,
            f"timed out after {timeout_seconds:g} seconds",
            details={"timeout_seconds": timeout_seconds, **(details or {})},
        )
        self.timeout_seconds = timeout_seconds


class ExecutionAbortedError(ToolExecutionError):
    """Raised when the turn's cancellation token fires mid-call."""

    def __init__(self, tool_name: str, details: dict | None = None):
        super().__init__(tool_name, "aborted", details=details)


class SchemaMismatchError(ToolgateError):
    """Raised when model-supplied arguments fail validation.

    The tool exists, so the orchestrator may attempt a single repair.
    """

    def __init__(self, tool_name: str, errors: list[dict[str, Any]] | str):
        summary = errors if isinstance(errors, str) else _summarize_errors(errors)
        super().__init__(
            f"Invalid arguments for tool '{tool_name}': {summary}",
            details={"tool_name": tool_name, "errors": errors},
        )
        self.tool_name = tool_name
        self.errors = errors


class UnknownToolError(ToolgateError):
    """Raised when the model requests a tool that is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}", details={"tool_name": tool_name})
        self.tool_name = tool_name


class DiscoveryError(ToolgateError):
    """Raised when a dynamic tool script fails its describe phase."""

    def __init__(self, script_path: str, message: str, details: dict | None = None):
        super().__init__(
            f"Dynamic tool '{script_path}' could not be described: {message}",
            details={"script_path": script_path, **(details or {})},
        )
        self.script_path = script_path


class ProviderError(ToolgateError):
    """Raised when the model-facing collaborator fails."""

    def __init__(self, provider_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Provider '{provider_name}' error: {message}",
            details={"provider_name": provider_name, **(details or {})},
        )
        self.provider_name = provider_name


class ConfigError(ToolgateError):
    """Raised when a configuration file exists but cannot be loaded."""

    def __init__(self, path: str, message: str):
        super().__init__(f"Invalid configuration in {path}: {message}", details={"path": path})
        self.path = path


def _summarize_errors(errors: list[dict[str, Any]]) -> str:
    parts = []
    for err in errors[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    if len(errors) > 5:
        parts.append(f"... ({len(errors) - 5} more)")
    return "; ".join(parts)
