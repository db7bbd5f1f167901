"""Provider abstraction — protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from taskpilot.errors import AIError

TOOL_CALLING = "tool-calling"


class ProviderState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    IDLE_RELEASED = "idle_released"  # weights unloaded, reloaded on next use
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class ProviderStatus:
    """Structured provider state plus an optional diagnostic message."""

    state: ProviderState
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state.value, "message": self.message}


@dataclass
class GenerationOptions:
    """Per-call generation settings."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    system_prompt: str | None = None
    timeout: float | None = None  # seconds; None = provider default


@dataclass
class ModelInfo:
    """Metadata about the model behind a provider."""

    id: str
    name: str
    provider: str
    version: str | None = None
    max_context_length: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "version": self.version,
            "max_context_length": self.max_context_length,
            "metadata": dict(self.metadata),
        }


@dataclass
class Generation:
    """Text produced by a provider, with the token count when the backend reports one."""

    text: str
    token_count: int | None = None


class Provider(Protocol):
    """Capability contract for inference backends.

    ``generate``, ``initialize``, ``cleanup`` and ``validate_prompt`` raise
    :class:`AIError` on failure; the remaining methods never raise.
    """

    kind: str  # "cloud" or "local"
    max_prompt_chars: int  # budget for the flattened prompt, history included

    async def generate(self, prompt: str, options: GenerationOptions) -> Generation: ...

    def is_ready(self) -> bool: ...

    def get_status(self) -> ProviderStatus: ...

    async def initialize(self) -> None: ...

    async def cleanup(self) -> None: ...

    def get_capabilities(self) -> set[str]: ...

    def validate_prompt(self, prompt: str) -> None: ...

    def model_info(self) -> ModelInfo: ...


def check_prompt(prompt: str, max_chars: int, provider: str) -> None:
    """Shared prompt validation: reject empty or oversized input."""
    if not prompt or not prompt.strip():
        raise AIError.invalid_request("Prompt cannot be empty")
    if len(prompt) > max_chars:
        raise AIError.invalid_request(
            f"Prompt too long for {provider} provider "
            f"({len(prompt)} characters, max {max_chars})",
            user_message="Your message is too long. Please shorten it and try again.",
        )
