"""
Shared collaborators for the built-in tools of one session.

Built-in tools are created per session by factories that close over a
ToolEnvironment, so nothing here is a process-wide singleton.
"""

from __future__ import annotations

import os
from collections.abc import Iterable

from toolgate.execution.sandbox import SandboxedExecutor
from toolgate.safety.commands import CommandSafetyClassifier
from toolgate.safety.paths import PathSandbox
from toolgate.tools.builtin.listing import DirectoryListingCache

DEFAULT_BASH_TIMEOUT_SECONDS = 90.0


class ToolEnvironment:
    """Sandbox, executor and policy shared by the built-in tools."""

    def __init__(
        self,
        sandbox: PathSandbox,
        executor: SandboxedExecutor,
        *,
        classifier: CommandSafetyClassifier | None = None,
        read_only_files: Iterable[str] = (),
        listing_cache: DirectoryListingCache | None = None,
        bash_timeout: float = DEFAULT_BASH_TIMEOUT_SECONDS,
        max_output_bytes: int | None = None,
    ):
        self.sandbox = sandbox
        self.executor = executor
        self.classifier = classifier or CommandSafetyClassifier()
        self.listing_cache = listing_cache or DirectoryListingCache()
        self.bash_timeout = bash_timeout
        self.max_output_bytes = max_output_bytes or executor.config.max_output_bytes
        self._read_only = frozenset(self._canonical(p) for p in read_only_files)

    @property
    def working_dir(self) -> str:
        return self.sandbox.working_dir

    def _canonical(self, path: str) -> str:
        return os.path.realpath(self.sandbox.resolve(path))

    def is_read_only(self, validated_path: str) -> bool:
        return os.path.realpath(validated_path) in self._read_only
