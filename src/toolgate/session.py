"""
Toolgate Session

Wires one workspace together: sandbox, executor, built-in tools,
discovered dynamic tools, approval gate and orchestrator. Everything
created here is scoped to the session; nothing is a module-level
singleton.
"""

from __future__ import annotations

from toolgate.config import WorkspaceConfig
from toolgate.execution.sandbox import SandboxConfig, SandboxedExecutor
from toolgate.logging import get_logger
from toolgate.orchestrator.approval import ApprovalGate, PromptCallback
from toolgate.orchestrator.events import EventChannel
from toolgate.orchestrator.turn import ToolOrchestrator
from toolgate.providers.base import ModelClient
from toolgate.safety.paths import PathSandbox
from toolgate.tools.builtin import ToolEnvironment, register_all_builtins
from toolgate.tools.dynamic import DynamicToolRegistry, default_scan_dirs
from toolgate.tools.registry import ToolRegistry

logger = get_logger("toolgate.session")

SYSTEM_PROMPT = """You are a coding assistant working in {working_dir}.
You may only touch files inside these directories: {roots}.
Use the provided tools to inspect and change the workspace. Destructive shell
commands are blocked; when a tool result says BLOCKED, follow its tip."""


class Workspace:
    """Tools bound to one workspace configuration."""

    def __init__(
        self,
        config: WorkspaceConfig,
        env: ToolEnvironment,
        registry: ToolRegistry,
        dynamic: DynamicToolRegistry,
    ):
        self.config = config
        self.env = env
        self.registry = registry
        self.dynamic = dynamic

    @classmethod
    async def create(cls, config: WorkspaceConfig, scan_dirs: list[str] | None = None) -> Workspace:
        sandbox = PathSandbox(config.allowed_directory_set())
        executor = SandboxedExecutor(SandboxConfig(max_output_bytes=config.tools.max_output_bytes))
        env = ToolEnvironment(
            sandbox,
            executor,
            read_only_files=config.read_only_files,
            bash_timeout=config.tools.bash.timeout_seconds,
        )
        registry = ToolRegistry()
        register_all_builtins(registry, env)

        dynamic = DynamicToolRegistry(
            executor,
            enabled=config.tools.dynamic_tools.enabled,
            max_tools=config.tools.dynamic_tools.max_tools,
            listing_cache=env.listing_cache,
        )
        workspace = cls(config, env, registry, dynamic)
        await workspace.load_dynamic_tools(scan_dirs)
        return workspace

    async def load_dynamic_tools(self, scan_dirs: list[str] | None = None, reload: bool = False) -> int:
        """Discover dynamic tools and install them; returns how many were loaded."""
        if reload:
            self.dynamic.reload()
        dirs = scan_dirs if scan_dirs is not None else default_scan_dirs(self.env.working_dir)
        tools = await self.dynamic.discover(dirs)
        self.dynamic.install(self.registry)
        return len(tools)

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(
            working_dir=self.env.working_dir,
            roots=", ".join(self.env.sandbox.allowed.roots),
        )


class Session:
    """A workspace plus the orchestrator driving a model over it."""

    def __init__(self, workspace: Workspace, orchestrator: ToolOrchestrator):
        self.workspace = workspace
        self.orchestrator = orchestrator

    @property
    def events(self) -> EventChannel:
        return self.orchestrator.events

    @classmethod
    async def create(
        cls,
        config: WorkspaceConfig,
        model: ModelClient,
        *,
        prompt: PromptCallback | None = None,
        events: EventChannel | None = None,
        scan_dirs: list[str] | None = None,
    ) -> Session:
        workspace = await Workspace.create(config, scan_dirs)
        orchestrator = ToolOrchestrator(
            workspace.registry,
            model,
            events=events,
            approval=ApprovalGate(prompt, auto_accept=config.auto_accept),
            max_turns=config.max_turns,
            system=workspace.system_prompt(),
        )
        logger.info(f"Session ready with {len(workspace.registry)} tools")
        return cls(workspace, orchestrator)
