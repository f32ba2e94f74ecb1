"""
Toolgate Safety Checks

Pure validation run before anything touches the filesystem or a shell:
- PathSandbox: every path must resolve inside the allowed roots
- CommandSafetyClassifier: destructive shell commands are blocked
"""

from toolgate.safety.commands import CommandSafetyClassifier, classify_command, is_mutating_command
from toolgate.safety.paths import AllowedDirectorySet, PathSandbox, validate_path

__all__ = [
    "AllowedDirectorySet",
    "CommandSafetyClassifier",
    "PathSandbox",
    "classify_command",
    "is_mutating_command",
    "validate_path",
]
