"""Time-tracking tools."""

from __future__ import annotations

from typing import Any

from taskpilot.tools.backend import TaskBackend, TaskBackendError
from taskpilot.tools.registry import ParameterSpec, PermissionLevel, ToolDefinition


def timer_tool_definitions(backend: TaskBackend) -> list[ToolDefinition]:
    """Build start_timer / stop_timer bound to *backend*."""

    async def start_timer(task_id: str, notes: str = "") -> dict[str, Any]:
        try:
            session = await backend.start_timer(task_id, notes)
        except TaskBackendError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "session": session, "message": "Timer started"}

    async def stop_timer(session_id: str | None = None, notes: str = "") -> dict[str, Any]:
        try:
            session = await backend.stop_timer(session_id, notes)
        except TaskBackendError as e:
            return {"success": False, "error": str(e)}
        minutes = round(session.get("duration_seconds", 0) / 60)
        return {
            "success": True,
            "session": session,
            "message": f"Timer stopped after {minutes} minute{'s' if minutes != 1 else ''}",
        }

    return [
        ToolDefinition(
            name="start_timer",
            description="Start time tracking for a task.",
            parameters={
                "task_id": ParameterSpec("string", "ID of the task to track", required=True),
                "notes": ParameterSpec("string", "Notes for this session"),
            },
            handler=start_timer,
            permissions=frozenset({PermissionLevel.TIMER_CONTROL}),
        ),
        ToolDefinition(
            name="stop_timer",
            description="Stop the running time-tracking session.",
            parameters={
                "session_id": ParameterSpec("string", "Session to stop (default: the active one)"),
                "notes": ParameterSpec("string", "Notes to append to the session"),
            },
            handler=stop_timer,
            permissions=frozenset({PermissionLevel.TIMER_CONTROL}),
        ),
    ]
