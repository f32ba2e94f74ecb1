"""
Toolgate Model Clients

Usage:
    from toolgate.providers import ClaudeModelClient, ProviderConfig

    model = ClaudeModelClient(ProviderConfig(model="claude-sonnet-4-20250514"))
"""

from toolgate.providers.base import ModelClient, ModelEvent, ModelEventType, ProviderConfig
from toolgate.providers.claude import ClaudeModelClient

__all__ = [
    "ClaudeModelClient",
    "ModelClient",
    "ModelEvent",
    "ModelEventType",
    "ProviderConfig",
]
