"""Per-session conversation state."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable


class SessionState(Enum):
    IDLE = "idle"
    AWAITING_INFERENCE = "awaiting_inference"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FINAL_INFERENCE = "awaiting_final_inference"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Turn:
    """One entry of the conversation: a user message, model reply or tool result."""

    role: str  # "user" | "assistant" | "tool"
    content: str
    name: str | None = None  # tool name for tool results
    tool_calls: list[dict[str, Any]] = field(default_factory=list)

    def render(self) -> str:
        match self.role:
            case "user":
                return f"User: {self.content}"
            case "tool":
                return f"Tool result ({self.name}): {self.content}"
            case _:
                return f"Assistant: {self.content}"


class ConversationSession:
    """Ordered turn history with a soft cap; the oldest turns drop first.

    Turns of an in-progress request are kept outside the history and only
    committed once the request completes, so a failed request leaves the
    history untouched.
    """

    def __init__(self, session_id: str, max_turns: int = 50) -> None:
        self.session_id = session_id
        self.created_at = datetime.now(timezone.utc)
        self.turns: deque[Turn] = deque(maxlen=max_turns)
        self.state = SessionState.IDLE
        self.last_outcome: SessionState | None = None
        self.completed_requests = 0

    def __len__(self) -> int:
        return len(self.turns)

    def commit(self, turns: Iterable[Turn]) -> None:
        self.turns.extend(turns)
        self.completed_requests += 1

    def finish(self, outcome: SessionState) -> None:
        """Record how the request ended and return to Idle for the next turn."""
        self.last_outcome = outcome
        self.state = SessionState.IDLE

    def clear(self) -> None:
        self.turns.clear()

    def render_prompt(self, pending: list[Turn], max_chars: int | None = None) -> str:
        """Flatten history plus the in-progress turns into one prompt string.

        With *max_chars*, the oldest history turns are left out until the
        prompt fits. Pending turns are always kept.
        """
        history = [turn.render() for turn in self.turns]
        tail = [turn.render() for turn in pending]
        tail.append("Assistant:")
        if max_chars is not None:
            size = sum(len(part) + 2 for part in history + tail) - 2
            while history and size > max_chars:
                size -= len(history.pop(0)) + 2
        return "\n\n".join(history + tail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "turns": len(self.turns),
            "state": self.state.value,
        }
