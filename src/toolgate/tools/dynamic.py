"""
Toolgate Dynamic Tools

Externally authored scripts register as tools through a two-phase
subprocess protocol:

1. Describe: the script runs with ``TOOL_ACTION=describe`` and no stdin.
   It must exit 0 after printing a JSON manifest::

       {"name": "deploy", "description": "...",
        "parameters": [{"name": "env", "type": "string",
                        "required": true, "description": "..."}],
        "interaction": "mutating"}

2. Execute: the script runs with ``TOOL_ACTION=execute`` in its own
   directory and receives one stdin line, a JSON list of
   ``{"name", "value"}`` pairs. stdout is the result; stderr is kept
   for diagnostics; a non-zero exit is a failure.

Scripts are picked up by extension (.py, .js, .mjs, .sh) from the
user directory first and the project directory second, so a project
script overrides a user script of the same name. A script that fails
to describe itself is skipped with a warning.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from toolgate.core.models import InteractionClass
from toolgate.exceptions import DiscoveryError, ToolExecutionError, ToolgateError
from toolgate.execution.sandbox import TRUNCATION_MARKER, ProcessStatus, SandboxedExecutor
from toolgate.logging import get_logger
from toolgate.tools.models import DynamicToolManifest, ToolDescriptor, ToolKind
from toolgate.tools.registry import RegisteredTool, ToolContext, ToolRegistry
from toolgate.tools.schema import ArgumentModel, build_argument_model, build_input_schema

if TYPE_CHECKING:
    from toolgate.tools.builtin.listing import DirectoryListingCache

logger = get_logger("toolgate.tools.dynamic")

ACTION_ENV = "TOOL_ACTION"
DESCRIBE_TIMEOUT_SECONDS = 10.0
EXECUTE_TIMEOUT_SECONDS = 30.0
MAX_OUTPUT_BYTES = 2_000_000
DEFAULT_MAX_TOOLS = 10
TOOL_PREFIX = "dynamic-"
UPDATE_TAIL_LINES = 20

INTERPRETERS: dict[str, list[str]] = {
    ".py": [sys.executable],
    ".js": ["node"],
    ".mjs": ["node"],
    ".sh": ["bash"],
}


def interpreter_command(script_path: str) -> list[str] | None:
    """argv prefix for running `script_path`, or None if unsupported."""
    prefix = INTERPRETERS.get(Path(script_path).suffix.lower())
    if prefix is None:
        return None
    return [*prefix, script_path]


def default_scan_dirs(working_dir: str) -> list[str]:
    """User tools directory, then project tools directory."""
    return [
        str(Path.home() / ".toolgate" / "tools"),
        str(Path(working_dir) / ".toolgate" / "tools"),
    ]


def parse_manifest(script_path: str, stdout: str) -> DynamicToolManifest:
    """Parse describe-phase stdout into a manifest.

    Raises:
        DiscoveryError: stdout is not a JSON object or does not validate.
    """
    text = stdout.strip()
    if not text:
        raise DiscoveryError(script_path, "describe produced no output")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DiscoveryError(script_path, f"manifest is not valid JSON ({e.msg})") from e
    if not isinstance(data, dict):
        raise DiscoveryError(script_path, "manifest must be a JSON object")
    data["script_path"] = script_path
    try:
        return DynamicToolManifest.model_validate(data)
    except ValidationError as e:
        first = e.errors(include_url=False)[0]
        loc = ".".join(str(p) for p in first["loc"])
        raise DiscoveryError(script_path, f"invalid manifest at {loc}: {first['msg']}") from e


def format_output(tool_name: str, stdout: str, stderr: str, truncated: bool) -> str:
    """Result text for a successful execute phase.

    Truncated stdout is returned verbatim up to the cap with a marker.
    Otherwise empty stdout falls back to stderr, then to a placeholder.
    """
    if truncated:
        return stdout + TRUNCATION_MARKER
    output = stdout.strip()
    if not output:
        output = stderr.strip()
    if not output:
        output = f"[No output from dynamic tool {tool_name}]"
    return output


def parse_output(output: str) -> Any:
    """Decode structured output; plain text is returned unchanged."""
    if output.startswith(("{", "[")):
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output
    return output


class DynamicTool(RegisteredTool):
    """A tool backed by an external script."""

    kind = ToolKind.DYNAMIC

    def __init__(
        self,
        manifest: DynamicToolManifest,
        executor: SandboxedExecutor,
        execute_timeout: float = EXECUTE_TIMEOUT_SECONDS,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        listing_cache: DirectoryListingCache | None = None,
    ):
        name = f"{TOOL_PREFIX}{manifest.name}"
        descriptor = ToolDescriptor(
            name=name,
            description=manifest.description,
            input_schema=build_input_schema(name, manifest.parameters),
            interaction=manifest.interaction,
            kind=ToolKind.DYNAMIC,
        )
        # The executor enforces the timeout and kills the script itself
        super().__init__(descriptor, build_argument_model(name, manifest.parameters), timeout_seconds=None)
        self.manifest = manifest
        self._executor = executor
        self.execute_timeout = execute_timeout
        self.max_output_bytes = max_output_bytes
        self._listing_cache = listing_cache

    @property
    def script_path(self) -> str:
        return self.manifest.script_path

    def encode_arguments(self, args: BaseModel) -> str:
        values = args.to_arguments() if isinstance(args, ArgumentModel) else args.model_dump(exclude_none=True)
        return json.dumps([{"name": k, "value": v} for k, v in values.items()]) + "\n"

    async def invoke(self, args: BaseModel, ctx: ToolContext) -> Any:
        ctx.token.raise_if_cancelled(self.name)
        # Re-validate in case the caller bypassed parse_arguments
        args = self.parse_arguments(args.model_dump(by_alias=True, exclude_none=True))

        argv = interpreter_command(self.script_path)
        if argv is None:
            raise ToolExecutionError(self.name, f"unsupported script type: {self.script_path}")

        outcome = await self._executor.run_exec(
            argv,
            cwd=os.path.dirname(self.script_path),
            stdin_data=self.encode_arguments(args),
            env={**os.environ, ACTION_ENV: "execute"},
            timeout_seconds=self.execute_timeout,
            token=ctx.token,
            max_output_bytes=self.max_output_bytes,
        )
        # The script may have touched the workspace even when it failed
        if self._listing_cache is not None and self.interaction != InteractionClass.READ_ONLY:
            self._listing_cache.invalidate()
        outcome.raise_for_status(self.name)

        if outcome.exit_code != 0:
            message = outcome.stderr.strip() or f"Exited with code {outcome.exit_code}"
            raise ToolExecutionError(
                self.name,
                message,
                details={"exit_code": outcome.exit_code, "script_path": self.script_path},
            )

        output = format_output(self.manifest.name, outcome.stdout, outcome.stderr, outcome.stdout_truncated)
        ctx.events.update(
            f"Last {UPDATE_TAIL_LINES} lines of output from {self.manifest.name}:",
            detail=output.split("\n")[-UPDATE_TAIL_LINES:],
        )
        return parse_output(output)


class DynamicToolRegistry:
    """Discovers dynamic tools and installs them into a ToolRegistry.

    Manifests are cached per script path for the life of the registry;
    reload() drops the cache so the next discover() re-describes every
    script.
    """

    def __init__(
        self,
        executor: SandboxedExecutor,
        *,
        enabled: bool = True,
        max_tools: int = DEFAULT_MAX_TOOLS,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        describe_timeout: float = DESCRIBE_TIMEOUT_SECONDS,
        execute_timeout: float = EXECUTE_TIMEOUT_SECONDS,
        listing_cache: DirectoryListingCache | None = None,
    ):
        self._executor = executor
        self.listing_cache = listing_cache
        self.enabled = enabled
        self.max_tools = max_tools
        self.max_output_bytes = max_output_bytes
        self.describe_timeout = describe_timeout
        self.execute_timeout = execute_timeout
        self._manifests: dict[str, DynamicToolManifest] = {}
        self._tools: list[DynamicTool] = []

    @property
    def tools(self) -> list[DynamicTool]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [t.descriptor for t in self._tools]

    def reload(self) -> None:
        """Invalidate cached manifests."""
        self._manifests.clear()

    async def describe(self, script_path: str) -> DynamicToolManifest:
        """Run the describe phase for one script.

        Raises:
            DiscoveryError: the script timed out, exited non-zero or
                printed an invalid manifest.
        """
        cached = self._manifests.get(script_path)
        if cached is not None:
            return cached

        argv = interpreter_command(script_path)
        if argv is None:
            raise DiscoveryError(script_path, "unsupported script type")

        try:
            outcome = await self._executor.run_exec(
                argv,
                cwd=os.path.dirname(script_path),
                env={**os.environ, ACTION_ENV: "describe"},
                timeout_seconds=self.describe_timeout,
                max_output_bytes=self.max_output_bytes,
            )
        except ToolExecutionError as e:
            raise DiscoveryError(script_path, str(e)) from e

        if outcome.status == ProcessStatus.TIMEOUT:
            raise DiscoveryError(script_path, f"describe timed out after {self.describe_timeout:g} seconds")
        if outcome.exit_code != 0:
            raise DiscoveryError(
                script_path,
                f"describe exited with code {outcome.exit_code}: {outcome.stderr.strip()}",
                details={"exit_code": outcome.exit_code},
            )

        manifest = parse_manifest(script_path, outcome.stdout)
        self._manifests[script_path] = manifest
        return manifest

    async def scan_dir(self, directory: str) -> list[DynamicToolManifest]:
        """Describe every supported script in `directory`, in filename order."""
        root = Path(directory)
        if not root.is_dir():
            logger.debug(f"Dynamic tool directory not found: {directory}")
            return []

        scripts = sorted(
            str(p) for p in root.iterdir()
            if p.is_file() and not p.name.startswith(".") and p.suffix.lower() in INTERPRETERS
        )
        results = await asyncio.gather(*(self.describe(s) for s in scripts), return_exceptions=True)

        manifests: list[DynamicToolManifest] = []
        for script, result in zip(scripts, results):
            if isinstance(result, (ToolgateError, OSError)):
                logger.warning(
                    f"Skipped invalid dynamic tool: {result}",
                    extra={"script_path": script},
                )
                continue
            if isinstance(result, BaseException):
                raise result
            manifests.append(result)
        return manifests

    async def discover(self, scan_dirs: list[str]) -> list[DynamicTool]:
        """Scan directories in order; later directories override earlier ones."""
        if not self.enabled:
            logger.info("Dynamic tools disabled in config")
            self._tools = []
            return []

        merged: dict[str, DynamicTool] = {}
        for directory in scan_dirs:
            for manifest in await self.scan_dir(directory):
                if manifest.name in merged:
                    logger.info(
                        f"Dynamic tool '{manifest.name}' overridden by {manifest.script_path}",
                        extra={"script_path": manifest.script_path},
                    )
                    # Re-insert so the override counts as most recently scanned
                    del merged[manifest.name]
                merged[manifest.name] = DynamicTool(
                    manifest,
                    self._executor,
                    execute_timeout=self.execute_timeout,
                    max_output_bytes=self.max_output_bytes,
                    listing_cache=self.listing_cache,
                )

        tools = list(merged.values())
        if len(tools) > self.max_tools:
            logger.warning(f"{len(tools)} dynamic tools found, limiting to {self.max_tools}")
            tools = tools[-self.max_tools:] if self.max_tools > 0 else []

        for tool in tools:
            logger.info(f"Loaded dynamic tool: {tool.name}", extra={"script_path": tool.script_path})
        self._tools = tools
        return list(tools)

    def install(self, registry: ToolRegistry) -> None:
        """Replace every dynamic tool in `registry` with the current set."""
        for existing in registry.of_kind(ToolKind.DYNAMIC):
            registry.unregister(existing.name)
        for tool in self._tools:
            if tool.name in registry:
                logger.warning(f"Dynamic tool '{tool.name}' shadows a built-in tool, skipped")
                continue
            registry.register(tool)
