"""
Toolgate Core Data Models

Shared types used across the safety, execution and orchestration
layers. This module must have zero internal dependencies beyond
pydantic.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ─── Enums ───────────────────────────────────────────────────

class InteractionClass(str, Enum):
    """A tool's declared concurrency safety within one model turn.

    - READ_ONLY: no side effects, dispatched concurrently
    - MUTATING: side effects but no human prompt, concurrent with other
      non-interactive calls
    - INTERACTIVE: needs human confirmation, strictly serialized
    """
    READ_ONLY = "read-only"
    MUTATING = "mutating"
    INTERACTIVE = "interactive"


class CallStatus(str, Enum):
    """Outcome of a single tool call."""
    OK = "ok"
    BLOCKED = "blocked"
    ERROR = "error"
    TIMEOUT = "timeout"
    ABORTED = "aborted"


class EventType(str, Enum):
    """Lifecycle events emitted per tool call to the UI collaborator."""
    INIT = "init"
    UPDATE = "update"
    COMPLETION = "completion"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.COMPLETION, EventType.ERROR})


# ─── Safety Verdict ─────────────────────────────────────────

class SafetyVerdict(BaseModel):
    """Allow/block decision for a command or path, always with a reason."""
    model_config = ConfigDict(frozen=True)

    blocked: bool
    reason: str = ""
    tip: str = ""
    subject: str = ""
    detector: str = ""

    @classmethod
    def allow(cls, subject: str) -> SafetyVerdict:
        return cls(blocked=False, reason="No destructive pattern detected", subject=subject)

    @classmethod
    def block(cls, subject: str, reason: str, tip: str, detector: str = "") -> SafetyVerdict:
        return cls(blocked=True, reason=reason, tip=tip, subject=subject, detector=detector)

    def format_message(self) -> str:
        """Render the verdict the way it is fed back to the model."""
        if not self.blocked:
            return f"ALLOWED\n\nCommand: {self.subject}"
        return f"BLOCKED\n\nReason: {self.reason}\n\nCommand: {self.subject}\n\nTip: {self.tip}"


# ─── Lifecycle Events ───────────────────────────────────────

class ToolEvent(BaseModel):
    """A single lifecycle event for one tool call.

    `message` is the primary human-readable line; `detail` carries an
    optional secondary block (e.g. the last lines of output or a diff).
    """
    model_config = ConfigDict(frozen=True)

    call_id: str
    tool_name: str
    event: EventType
    message: str = ""
    detail: list[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS
