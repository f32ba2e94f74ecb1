"""
Toolgate: Safety-Gated Tool Execution for Terminal Coding Agents

Stands between "the model asked to run X" and "X happens on disk":
path sandboxing, destructive-command classification, bounded
subprocess execution, dynamic script tools and the orchestration loop
that dispatches, repairs and cancels tool calls.

Usage:
    from toolgate import Session, load_config
    from toolgate.providers import ClaudeModelClient

    config = load_config(".")
    session = await Session.create(config, ClaudeModelClient())
    outcome = await session.orchestrator.run("Run the tests and fix what fails")
"""

__version__ = "0.1.0"

from toolgate.config import WorkspaceConfig, load_config
from toolgate.core.models import CallStatus, EventType, InteractionClass, SafetyVerdict, ToolEvent
from toolgate.execution.cancellation import CancellationToken
from toolgate.safety.commands import CommandSafetyClassifier, classify_command
from toolgate.safety.paths import AllowedDirectorySet, PathSandbox, validate_path
from toolgate.session import Session, Workspace

__all__ = [
    "AllowedDirectorySet",
    "CallStatus",
    "CancellationToken",
    "CommandSafetyClassifier",
    "EventType",
    "InteractionClass",
    "PathSandbox",
    "SafetyVerdict",
    "Session",
    "ToolEvent",
    "Workspace",
    "WorkspaceConfig",
    "classify_command",
    "load_config",
    "validate_path",
]
