"""
Toolgate Orchestration

ToolOrchestrator drives model turns and dispatches tool calls.
ApprovalGate and EventChannel are its human and UI collaborators.
"""

from toolgate.orchestrator.approval import ApprovalDecision, ApprovalGate, ApprovalRequest, ApprovalResponse
from toolgate.orchestrator.events import CallEvents, EventChannel

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalResponse",
    "CallEvents",
    "EventChannel",
]
