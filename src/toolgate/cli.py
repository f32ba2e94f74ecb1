"""
Toolgate CLI

Command-line interface for toolgate.

Commands:
    toolgate run "prompt"           Run an agent session against Claude
    toolgate tools                  List built-in and dynamic tools
    toolgate check "command"        Classify a shell command
    toolgate validate-path PATH     Validate a path against the sandbox
    toolgate status                 Show version and configuration

Usage:
    toolgate run "Fix the failing test in tests/test_api.py"
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from toolgate import __version__
from toolgate.config import WorkspaceConfig, load_config, project_config_path, user_config_path
from toolgate.exceptions import ConfigError, PathNotFoundError, SandboxViolationError
from toolgate.logging import configure_logging
from toolgate.safety.commands import classify_command, is_mutating_command
from toolgate.safety.paths import PathSandbox

console = Console()


def _load(working_dir: str | None) -> WorkspaceConfig:
    try:
        return load_config(working_dir)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _print_header(title: str) -> None:
    console.print()
    console.rule(f"[bold]{escape(title)}")
    console.print()


@click.group()
@click.version_option(version=__version__, prog_name="toolgate")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR).")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines on stderr.")
def cli(log_level: str | None, json_logs: bool) -> None:
    """Toolgate: safety-gated tool execution for terminal coding agents."""
    if log_level or json_logs:
        configure_logging(level=log_level, json_output=json_logs)


@cli.command()
@click.argument("prompt")
@click.option("--working-dir", "-C", default=None, help="Workspace root (defaults to the current directory).")
@click.option("--model", default=None, help="Claude model id (overrides config and TOOLGATE_MODEL).")
@click.option("--yes", "auto_accept", is_flag=True, help="Accept every interactive tool call without prompting.")
@click.option("--verbose", "-v", is_flag=True, help="Show progress detail for every tool call.")
def run(prompt: str, working_dir: str | None, model: str | None, auto_accept: bool, verbose: bool) -> None:
    """Run one agent session for PROMPT."""
    config = _load(working_dir)
    updates = {}
    if model:
        updates["model"] = model
    if auto_accept:
        updates["auto_accept"] = True
    if updates:
        config = config.model_copy(update=updates)
    exit_code = asyncio.run(_run_session(prompt, config, verbose))
    sys.exit(exit_code)


async def _run_session(prompt: str, config: WorkspaceConfig, verbose: bool) -> int:
    """Run a session with live event rendering; Ctrl-C aborts the current turn."""
    from toolgate.providers import ClaudeModelClient, ProviderConfig
    from toolgate.session import Session
    from toolgate.ui import ConsoleRenderer, console_prompt

    err_console = Console(stderr=True)
    model = ClaudeModelClient(ProviderConfig(model=config.model))
    session = await Session.create(config, model, prompt=console_prompt(err_console))
    ConsoleRenderer(err_console, verbose=verbose).attach(session.events)

    loop = asyncio.get_running_loop()
    if os.name == "posix":
        loop.add_signal_handler(signal.SIGINT, session.orchestrator.cancel)

    try:
        outcome = await session.orchestrator.run(prompt)
    finally:
        if os.name == "posix":
            loop.remove_signal_handler(signal.SIGINT)
        session.events.close()

    if outcome.text:
        console.print(outcome.text)
    if outcome.cancelled:
        err_console.print("[yellow]Turn aborted.[/]")
        return 130
    if outcome.hit_turn_limit:
        err_console.print(f"[yellow]Stopped after {config.max_turns} turns.[/]")
    if outcome.turns and outcome.turns[-1].error:
        err_console.print(f"[red]{escape(outcome.turns[-1].error)}[/]")
        return 1
    return 0


@cli.command()
@click.option("--working-dir", "-C", default=None, help="Workspace root (defaults to the current directory).")
def tools(working_dir: str | None) -> None:
    """List built-in and discovered dynamic tools."""
    from toolgate.session import Workspace

    config = _load(working_dir)
    workspace = asyncio.run(Workspace.create(config))

    table = Table(title=f"Tools ({len(workspace.registry)})")
    table.add_column("Name", style="bold")
    table.add_column("Kind")
    table.add_column("Interaction")
    table.add_column("Description")
    for tool in workspace.registry.get_all():
        table.add_row(
            tool.name,
            tool.kind.value,
            tool.interaction.value,
            tool.descriptor.description.split("\n")[0][:80],
        )
    console.print(table)


@cli.command()
@click.argument("command")
def check(command: str) -> None:
    """Classify a shell COMMAND without running it."""
    verdict = classify_command(command)
    console.print(escape(verdict.format_message()))
    if not verdict.blocked and is_mutating_command(command):
        console.print("\n[yellow]Note:[/] this command may modify files or repository state.")
    if verdict.blocked:
        sys.exit(1)


@cli.command("validate-path")
@click.argument("path")
@click.option("--working-dir", "-C", default=None, help="Workspace root (defaults to the current directory).")
@click.option("--must-exist", is_flag=True, help="Fail when the path does not exist.")
def validate_path(path: str, working_dir: str | None, must_exist: bool) -> None:
    """Validate PATH against the configured allowed directories."""
    config = _load(working_dir)
    sandbox = PathSandbox(config.allowed_directory_set())
    try:
        resolved = sandbox.validate(path, require_existence=must_exist)
    except SandboxViolationError as e:
        console.print(f"[red]REJECTED[/] {escape(str(e))}")
        sys.exit(1)
    except PathNotFoundError as e:
        console.print(f"[yellow]NOT FOUND[/] {escape(str(e))}")
        sys.exit(2)
    console.print(f"[green]OK[/] {escape(resolved)}")


@cli.command()
@click.option("--working-dir", "-C", default=None, help="Workspace root (defaults to the current directory).")
def status(working_dir: str | None) -> None:
    """Show toolgate status and configuration."""
    import importlib

    _print_header("Toolgate Status")
    console.print(f"  Version: {__version__}")
    console.print(f"  Python: {sys.version.split()[0]}")

    console.print("\n  Dependencies:")
    for pkg in ("anthropic", "pydantic", "click", "rich"):
        try:
            mod = importlib.import_module(pkg)
            version = getattr(mod, "__version__", "installed")
            console.print(f"    {pkg:20s} {version}")
        except ImportError:
            console.print(f"    {pkg:20s} NOT INSTALLED")

    config = _load(working_dir)
    console.print("\n  Configuration:")
    for label, path in (("User config", user_config_path()), ("Project config", project_config_path(config.working_dir))):
        state = "found" if path.is_file() else "not found"
        console.print(f"    {label:20s} {escape(str(path))} ({state})")
    console.print(f"    {'Working dir':20s} {escape(config.working_dir)}")
    for root in config.allowed_directory_set().roots:
        console.print(f"    {'Allowed dir':20s} {escape(root)}")
    dynamic = config.tools.dynamic_tools
    console.print(f"    {'Dynamic tools':20s} {'enabled' if dynamic.enabled else 'disabled'} (max {dynamic.max_tools})")
    console.print(f"    {'Bash timeout':20s} {config.tools.bash.timeout_seconds:g}s")
    console.print(f"    {'Auto accept':20s} {config.auto_accept}")

    key = os.environ.get("ANTHROPIC_API_KEY")
    masked = (key[:4] + "..." + key[-4:] if len(key) > 10 else "***") if key else "NOT SET"
    console.print(f"\n  ANTHROPIC_API_KEY: {masked}")


if __name__ == "__main__":
    cli()
