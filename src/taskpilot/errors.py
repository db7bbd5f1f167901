"""Error taxonomy shared by providers, tools, the orchestrator and the audit log."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    INVALID_REQUEST = "invalid_request"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TIMEOUT = "timeout"
    MODEL_DOWNLOAD_FAILED = "model_download_failed"
    INSUFFICIENT_RESOURCES = "insufficient_resources"
    TOOL_EXECUTION_FAILED = "tool_execution_failed"
    INTERNAL_ERROR = "internal_error"
    BUSY = "busy"
    DUPLICATE_TOOL = "duplicate_tool"


_USER_MESSAGES = {
    ErrorKind.INVALID_REQUEST: "The request could not be processed. Check the message and try again.",
    ErrorKind.PROVIDER_UNAVAILABLE: "The AI model is not available. Try again or switch to another model.",
    ErrorKind.TIMEOUT: "The AI model took too long to respond. Please try again.",
    ErrorKind.MODEL_DOWNLOAD_FAILED: (
        "The local model could not be downloaded. Check your network connection "
        "or place a GGUF model in the models folder."
    ),
    ErrorKind.INSUFFICIENT_RESOURCES: (
        "Not enough free memory to run the local model. Close other applications "
        "or use the cloud model."
    ),
    ErrorKind.TOOL_EXECUTION_FAILED: "An action could not be completed.",
    ErrorKind.INTERNAL_ERROR: "Something went wrong. Please try again.",
    ErrorKind.BUSY: "The local model is busy with other requests. Please wait and try again.",
    ErrorKind.DUPLICATE_TOOL: "A tool with this name is already registered.",
}

_RETRYABLE = {ErrorKind.TIMEOUT, ErrorKind.BUSY, ErrorKind.PROVIDER_UNAVAILABLE}


class AIError(Exception):
    """An AI service failure with a technical message and a user-facing one."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        user_message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.user_message = user_message or _USER_MESSAGES[kind]
        self.code = code or kind.name
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.kind.value,
            "message": self.message,
            "user_message": self.user_message,
            "code": self.code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"AIError({self.kind.value}: {self.message})"

    # ── constructors ──────────────────────────────────────────────────

    @classmethod
    def invalid_request(cls, message: str, **kwargs: Any) -> AIError:
        return cls(ErrorKind.INVALID_REQUEST, message, **kwargs)

    @classmethod
    def provider_unavailable(cls, message: str, **kwargs: Any) -> AIError:
        return cls(ErrorKind.PROVIDER_UNAVAILABLE, message, **kwargs)

    @classmethod
    def timeout(cls, message: str, **kwargs: Any) -> AIError:
        return cls(ErrorKind.TIMEOUT, message, **kwargs)

    @classmethod
    def internal(cls, message: str, **kwargs: Any) -> AIError:
        return cls(ErrorKind.INTERNAL_ERROR, message, **kwargs)
