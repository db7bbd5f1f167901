"""Interaction log records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ModelType(Enum):
    LOCAL = "local"
    CLOUD = "cloud"


class DataClassification(Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ToolExecutionLog:
    """One tool call made while handling an interaction."""

    tool_name: str
    arguments: dict[str, Any]
    result: Any
    execution_time_ms: int
    success: bool
    error: str | None = None
    id: str = field(default_factory=_new_id)
    interaction_log_id: str = ""
    timestamp: datetime = field(default_factory=_now)


@dataclass
class AIInteractionLog:
    """Durable record of one request/response cycle, successful or failed."""

    session_id: str
    model_type: ModelType
    user_message: str
    ai_response: str
    model_info: dict[str, Any] = field(default_factory=dict)
    system_prompt: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    actions: list[Any] = field(default_factory=list)
    suggestions: list[Any] = field(default_factory=list)
    reasoning: str | None = None
    response_time_ms: int = 0
    token_count: int | None = None
    error: str | None = None
    error_code: str | None = None
    contains_sensitive_data: bool = False
    # None = let the logger classify the content
    data_classification: DataClassification | None = None
    tool_executions: list[ToolExecutionLog] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "session_id": self.session_id,
            "model_type": self.model_type.value,
            "model_info": self.model_info,
            "user_message": self.user_message,
            "system_prompt": self.system_prompt,
            "context": self.context,
            "ai_response": self.ai_response,
            "actions": self.actions,
            "suggestions": self.suggestions,
            "reasoning": self.reasoning,
            "response_time_ms": self.response_time_ms,
            "token_count": self.token_count,
            "error": self.error,
            "error_code": self.error_code,
            "contains_sensitive_data": self.contains_sensitive_data,
            "data_classification": (
                self.data_classification.value if self.data_classification else None
            ),
            "tool_executions": [
                {
                    "id": t.id,
                    "tool_name": t.tool_name,
                    "arguments": t.arguments,
                    "result": t.result,
                    "execution_time_ms": t.execution_time_ms,
                    "success": t.success,
                    "error": t.error,
                    "timestamp": t.timestamp.isoformat(),
                }
                for t in self.tool_executions
            ],
        }


@dataclass
class LogFilter:
    start_date: datetime | None = None
    end_date: datetime | None = None
    model_type: ModelType | None = None
    has_errors: bool | None = None
    contains_tool_calls: bool | None = None
    search: str | None = None
    limit: int = 100
    offset: int = 0


@dataclass
class StorageStats:
    total_logs: int
    total_size: int  # bytes of stored text
    oldest: datetime | None
    newest: datetime | None
    per_model_counts: dict[str, int]
    avg_response_time: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_logs": self.total_logs,
            "total_size": self.total_size,
            "oldest": self.oldest.isoformat() if self.oldest else None,
            "newest": self.newest.isoformat() if self.newest else None,
            "per_model_counts": self.per_model_counts,
            "avg_response_time": self.avg_response_time,
        }


@dataclass
class ToolUsage:
    """Aggregated executions of one tool."""

    tool_name: str
    executions: int
    successes: int
    avg_execution_time_ms: float
    min_execution_time_ms: int
    max_execution_time_ms: int

    @property
    def success_rate(self) -> float:
        return self.successes / self.executions if self.executions else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "executions": self.executions,
            "successes": self.successes,
            "success_rate": self.success_rate,
            "avg_execution_time_ms": self.avg_execution_time_ms,
            "min_execution_time_ms": self.min_execution_time_ms,
            "max_execution_time_ms": self.max_execution_time_ms,
        }


@dataclass
class SessionToolStats:
    """Tool activity of one conversation session, most used tool first."""

    session_id: str
    tools: list[ToolUsage] = field(default_factory=list)
    error_patterns: dict[str, int] = field(default_factory=dict)
    last_execution: datetime | None = None

    @property
    def total_executions(self) -> int:
        return sum(t.executions for t in self.tools)

    @property
    def successful_executions(self) -> int:
        return sum(t.successes for t in self.tools)

    @property
    def failed_executions(self) -> int:
        return self.total_executions - self.successful_executions

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "tools": [t.to_dict() for t in self.tools],
            "error_patterns": dict(self.error_patterns),
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
        }
