"""Toolgate subprocess execution with timeouts, output caps and cancellation."""

from toolgate.execution.cancellation import CancellationToken
from toolgate.execution.sandbox import ProcessOutcome, ProcessStatus, SandboxConfig, SandboxedExecutor

__all__ = [
    "CancellationToken",
    "ProcessOutcome",
    "ProcessStatus",
    "SandboxConfig",
    "SandboxedExecutor",
]
