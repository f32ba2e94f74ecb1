"""
Toolgate Built-in Tools

Session-scoped static tools, created from a ToolEnvironment and
registered before dynamic tool discovery.
"""

from toolgate.tools.builtin.bash import create_bash_tool
from toolgate.tools.builtin.code_exec import create_code_exec_tool
from toolgate.tools.builtin.environment import ToolEnvironment
from toolgate.tools.builtin.files import FileTools
from toolgate.tools.builtin.listing import DirectoryListingCache, create_list_directory_tool
from toolgate.tools.registry import StaticTool, ToolRegistry


def create_builtin_tools(env: ToolEnvironment) -> list[StaticTool]:
    """Every built-in tool bound to `env`."""
    return [
        create_bash_tool(env),
        *FileTools(env).create_tools(),
        create_code_exec_tool(env),
        create_list_directory_tool(env),
    ]


def register_all_builtins(registry: ToolRegistry, env: ToolEnvironment) -> None:
    """Register all built-in tools with the given registry."""
    for tool in create_builtin_tools(env):
        registry.register(tool)


__all__ = [
    "DirectoryListingCache",
    "FileTools",
    "ToolEnvironment",
    "create_builtin_tools",
    "register_all_builtins",
]
