"""Terminal rendering of tool lifecycle events."""

from toolgate.ui.console import ConsoleRenderer, console_prompt

__all__ = ["ConsoleRenderer", "console_prompt"]
