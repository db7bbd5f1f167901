"""Tool registration, argument validation, permission checks and dispatch."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from taskpilot.errors import AIError, ErrorKind

logger = logging.getLogger(__name__)


class PermissionLevel(Enum):
    READ_ONLY = "read_only"
    MODIFY_TASKS = "modify_tasks"
    TIMER_CONTROL = "timer_control"
    FULL_ACCESS = "full_access"


def parse_permissions(names: Iterable[str]) -> frozenset[PermissionLevel]:
    """Convert permission names from config into levels; unknown names raise ValueError."""
    return frozenset(PermissionLevel(name) for name in names)


def infer_permissions(tool_name: str) -> frozenset[PermissionLevel]:
    """Fallback permission inference from verbs in the tool name.

    ``delete`` → full_access; ``create``/``update`` → modify_tasks;
    ``timer`` → timer_control; anything else → read_only. The most
    restrictive match wins.
    """
    name = tool_name.lower()
    if "delete" in name:
        return frozenset({PermissionLevel.FULL_ACCESS})
    if "create" in name or "update" in name:
        return frozenset({PermissionLevel.MODIFY_TASKS})
    if "timer" in name:
        return frozenset({PermissionLevel.TIMER_CONTROL})
    return frozenset({PermissionLevel.READ_ONLY})


_JSON_TYPES = ("string", "number", "integer", "boolean", "array", "object")


@dataclass(frozen=True)
class ParameterSpec:
    """Declared type and constraints for one tool parameter."""

    type: str
    description: str = ""
    required: bool = False
    enum: tuple[str, ...] | None = None
    items: ParameterSpec | None = None  # element spec for arrays
    properties: dict[str, ParameterSpec] | None = None  # member specs for objects

    def __post_init__(self) -> None:
        if self.type not in _JSON_TYPES:
            raise ValueError(f"Unsupported parameter type: {self.type}")

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        if self.items is not None:
            schema["items"] = self.items.to_json_schema()
        if self.properties is not None:
            schema["properties"] = {k: v.to_json_schema() for k, v in self.properties.items()}
            required = [k for k, v in self.properties.items() if v.required]
            if required:
                schema["required"] = required
        return schema


@dataclass(frozen=True)
class ToolSchema:
    """Immutable description of a registered tool."""

    name: str
    description: str
    parameters: dict[str, ParameterSpec]
    permissions: frozenset[PermissionLevel]

    @property
    def required_parameters(self) -> list[str]:
        return [name for name, spec in self.parameters.items() if spec.required]

    def to_function_schema(self) -> dict[str, Any]:
        """OpenAI-compatible function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {k: v.to_json_schema() for k, v in self.parameters.items()},
                    "required": self.required_parameters,
                },
            },
        }


# Type alias for tool handler functions; called with the declared parameters as kwargs
ToolHandler = Callable[..., Awaitable[Any]]


@dataclass
class ToolDefinition:
    """What a tool author supplies at registration time.

    ``permissions`` left as None falls back to :func:`infer_permissions`.
    """

    name: str
    description: str
    parameters: dict[str, ParameterSpec]
    handler: ToolHandler
    permissions: frozenset[PermissionLevel] | None = None


@dataclass
class ToolExecutionContext:
    """Permissions granted to the current caller; passed per call."""

    permissions: frozenset[PermissionLevel]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str | None = None

    def allows(self, required: frozenset[PermissionLevel]) -> bool:
        if PermissionLevel.FULL_ACCESS in self.permissions:
            return True
        return required <= self.permissions


@dataclass
class ToolExecutionResult:
    """Uniform envelope for every tool execution, successful or not."""

    success: bool
    data: Any = None
    error: str | None = None
    user_message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_name(self) -> str:
        return self.metadata.get("tool_name", "")

    @property
    def execution_time_ms(self) -> int:
        return self.metadata.get("execution_time_ms", 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "user_message": self.user_message,
            "metadata": dict(self.metadata),
        }

    def to_message_content(self) -> str:
        """Format for inclusion in the LLM conversation as a tool result."""
        if not self.success:
            return f"ERROR: {self.error or 'unknown error'}"
        return json.dumps(self.data, default=str)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ToolUsageStats:
    executions: int = 0
    successes: int = 0
    total_time_ms: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.executions if self.executions else 0.0

    @property
    def average_time_ms(self) -> float:
        return self.total_time_ms / self.executions if self.executions else 0.0


@dataclass(frozen=True)
class _Entry:
    schema: ToolSchema
    handler: ToolHandler


def _type_errors(name: str, value: Any, spec: ParameterSpec) -> list[str]:
    """Structural type check for one value against its spec."""
    errors: list[str] = []
    match spec.type:
        case "string":
            if not isinstance(value, str):
                errors.append(f"Parameter '{name}' must be a string")
            elif spec.enum and value not in spec.enum:
                errors.append(f"Parameter '{name}' must be one of: {', '.join(spec.enum)}")
        case "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value != value:
                errors.append(f"Parameter '{name}' must be a valid number")
        case "integer":
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"Parameter '{name}' must be an integer")
        case "boolean":
            if not isinstance(value, bool):
                errors.append(f"Parameter '{name}' must be a boolean")
        case "array":
            if not isinstance(value, list):
                errors.append(f"Parameter '{name}' must be an array")
            elif spec.items is not None:
                for i, item in enumerate(value):
                    errors.extend(_type_errors(f"{name}[{i}]", item, spec.items))
        case "object":
            if not isinstance(value, dict):
                errors.append(f"Parameter '{name}' must be an object")
            elif spec.properties is not None:
                for prop, prop_spec in spec.properties.items():
                    if prop in value:
                        errors.extend(_type_errors(f"{name}.{prop}", value[prop], prop_spec))
                    elif prop_spec.required:
                        errors.append(f"Missing required property '{prop}' in parameter '{name}'")
    return errors


class ToolRegistry:
    """Manages tool registration, validation, and dispatch.

    Each registration is stored as a single entry so concurrent readers never
    see a schema without its handler.
    """

    def __init__(self) -> None:
        self._tools: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._stats: dict[str, ToolUsageStats] = {}

    # ── registration ──────────────────────────────────────────────────

    def register_tool(self, definition: ToolDefinition) -> ToolSchema:
        """Register a tool; a duplicate name raises ``DuplicateTool``."""
        schema = ToolSchema(
            name=definition.name,
            description=definition.description,
            parameters=dict(definition.parameters),
            permissions=(
                frozenset(definition.permissions)
                if definition.permissions is not None
                else infer_permissions(definition.name)
            ),
        )
        with self._lock:
            if definition.name in self._tools:
                raise AIError(
                    ErrorKind.DUPLICATE_TOOL,
                    f"Tool '{definition.name}' is already registered",
                    details={"tool_name": definition.name},
                )
            self._tools[definition.name] = _Entry(schema, definition.handler)
        logger.debug("Registered tool: %s", definition.name)
        return schema

    def unregister_tool(self, name: str) -> bool:
        with self._lock:
            removed = self._tools.pop(name, None) is not None
        if removed:
            logger.debug("Unregistered tool: %s", name)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._tools = {}
            self._stats = {}

    # ── lookup ────────────────────────────────────────────────────────

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_tool_schema(self, name: str) -> ToolSchema | None:
        entry = self._tools.get(name)
        return entry.schema if entry else None

    def get_available_tools(
        self, context: ToolExecutionContext | None = None,
    ) -> list[str]:
        """Registered tool names, optionally only those *context* may run."""
        entries = list(self._tools.values())
        if context is None:
            return [e.schema.name for e in entries]
        return [e.schema.name for e in entries if context.allows(e.schema.permissions)]

    def get_tool_info(self, name: str) -> dict[str, Any] | None:
        schema = self.get_tool_schema(name)
        if schema is None:
            return None
        return {
            "name": schema.name,
            "description": schema.description,
            "parameters": {k: v.to_json_schema() for k, v in schema.parameters.items()},
            "required_parameters": schema.required_parameters,
            "required_permissions": sorted(p.value for p in schema.permissions),
        }

    def get_tool_schemas(
        self, context: ToolExecutionContext | None = None,
    ) -> list[dict[str, Any]]:
        """Generate OpenAI-compatible tool schemas for the LLM."""
        names = self.get_available_tools(context)
        schemas = [self.get_tool_schema(n) for n in names]
        return [s.to_function_schema() for s in schemas if s is not None]

    def get_usage_stats(self, name: str) -> ToolUsageStats | None:
        return self._stats.get(name)

    # ── validation ────────────────────────────────────────────────────

    def validate_tool_arguments(self, name: str, arguments: dict[str, Any]) -> ValidationResult:
        """Check required presence and types; unknown parameters only warn."""
        schema = self.get_tool_schema(name)
        if schema is None:
            return ValidationResult(False, errors=[f"No schema found for tool '{name}'"])

        errors: list[str] = []
        warnings: list[str] = []
        for param, spec in schema.parameters.items():
            if arguments.get(param) is None:
                if spec.required:
                    errors.append(f"Missing required parameter: {param}")
                continue
            errors.extend(_type_errors(param, arguments[param], spec))

        for param in arguments:
            if param not in schema.parameters:
                warnings.append(f"Unknown parameter: {param}")

        return ValidationResult(not errors, errors, warnings)

    # ── execution ─────────────────────────────────────────────────────

    async def execute_tool(
        self,
        name: str,
        arguments: dict[str, Any],
        context: ToolExecutionContext | None = None,
    ) -> ToolExecutionResult:
        """Execute a tool by name. Never raises; failures come back as envelopes."""
        start = time.perf_counter()
        entry = self._tools.get(name)

        if entry is None:
            result = self._failure(name, f"Tool '{name}' not found")
        else:
            validation = self.validate_tool_arguments(name, arguments)
            if not validation.is_valid:
                result = self._failure(
                    name, f"Invalid arguments for tool '{name}': {', '.join(validation.errors)}",
                )
            elif context is not None and not context.allows(entry.schema.permissions):
                required = ", ".join(sorted(p.value for p in entry.schema.permissions))
                result = self._failure(
                    name,
                    f"Insufficient permissions for tool '{name}' (requires {required})",
                    user_message=f"You don't have permission to use '{name}'.",
                )
            else:
                if validation.warnings:
                    logger.warning("Tool %s: %s", name, "; ".join(validation.warnings))
                declared = {
                    k: v for k, v in arguments.items()
                    if k in entry.schema.parameters and v is not None
                }
                result = await self._invoke(entry, declared)

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        result.metadata.update({"tool_name": name, "execution_time_ms": elapsed_ms})
        if context is not None:
            result.metadata["permissions"] = sorted(p.value for p in context.permissions)
        if entry is not None:
            self._record_usage(name, result.success, elapsed_ms)
        return result

    async def _invoke(self, entry: _Entry, arguments: dict[str, Any]) -> ToolExecutionResult:
        name = entry.schema.name
        try:
            output = await entry.handler(**arguments)
        except AIError as e:
            return self._failure(name, e.message, user_message=e.user_message)
        except Exception as e:
            logger.exception("Tool %s raised an exception", name)
            return self._failure(name, f"Tool error: {type(e).__name__}: {e}")
        return self._envelope(name, output)

    def _envelope(self, name: str, output: Any) -> ToolExecutionResult:
        if isinstance(output, ToolExecutionResult):
            return output
        if isinstance(output, (str, bytes)):
            try:
                output = json.loads(output)
            except (json.JSONDecodeError, UnicodeDecodeError):
                # Malformed output is tolerated rather than treated as failure
                raw = output.decode("utf-8", "replace") if isinstance(output, bytes) else output
                return ToolExecutionResult(
                    success=True,
                    data={"data": raw},
                    user_message=f"{name} completed",
                    metadata={"raw_output": True},
                )
        if isinstance(output, dict) and output.get("success") is False:
            error = str(output.get("error") or "Unknown error")
            return self._failure(name, error, data=output)
        return ToolExecutionResult(
            success=True,
            data=output,
            user_message=(output.get("message") if isinstance(output, dict) else None)
            or f"{name} completed",
        )

    def _failure(
        self, name: str, error: str, user_message: str | None = None, data: Any = None,
    ) -> ToolExecutionResult:
        return ToolExecutionResult(
            success=False,
            data=data,
            error=error,
            user_message=user_message or f"{name} failed: {error}",
            metadata={"error_kind": ErrorKind.TOOL_EXECUTION_FAILED.value},
        )

    def _record_usage(self, name: str, success: bool, elapsed_ms: int) -> None:
        stats = self._stats.setdefault(name, ToolUsageStats())
        stats.executions += 1
        stats.total_time_ms += elapsed_ms
        if success:
            stats.successes += 1

    def render_catalog(self, context: ToolExecutionContext | None = None) -> str:
        """Format tool schemas as plain text for injection into the system prompt."""
        lines = [
            "# Available Tools",
            "",
            "To call a tool, output one block per call:",
            "",
            "<tool_call>",
            '{"name": "tool_name", "arguments": {"param": "value"}}',
            "</tool_call>",
            "",
        ]
        for name in self.get_available_tools(context):
            schema = self.get_tool_schema(name)
            if schema is None:
                continue
            lines.append(f"## {schema.name}")
            lines.append(schema.description)
            if schema.parameters:
                lines.append("Parameters:")
                for pname, spec in schema.parameters.items():
                    req = " (required)" if spec.required else ""
                    choices = f" one of: {', '.join(spec.enum)}." if spec.enum else ""
                    lines.append(f"- {pname} ({spec.type}{req}): {spec.description}{choices}")
            lines.append("")
        return "\n".join(lines)


def create_default_registry(backend) -> ToolRegistry:
    """Create a registry with the task and timer tools bound to *backend*."""
    from taskpilot.tools.task_tools import task_tool_definitions
    from taskpilot.tools.timer_tools import timer_tool_definitions

    registry = ToolRegistry()
    for definition in task_tool_definitions(backend) + timer_tool_definitions(backend):
        registry.register_tool(definition)
    return registry
