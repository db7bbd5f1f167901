"""Task query, creation and update tools."""

from __future__ import annotations

from typing import Any

from taskpilot.tools.backend import TASK_STATUSES, TaskBackend, TaskBackendError
from taskpilot.tools.registry import ParameterSpec, PermissionLevel, ToolDefinition

_PRIORITY_HELP = "0=Low, 1=Medium, 2=High, 3=Urgent"


def _check_priority(value: Any) -> str | None:
    if value is not None and value not in (0, 1, 2, 3):
        return f"priority must be an integer from 0 to 3 ({_PRIORITY_HELP})"
    return None


def task_tool_definitions(backend: TaskBackend) -> list[ToolDefinition]:
    """Build get_tasks / create_task / update_task bound to *backend*."""

    async def get_tasks(
        status: list[str] | None = None,
        priority: list[int] | None = None,
        search: str | None = None,
        tags: list[str] | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        limit = max(1, min(int(limit), 1000))
        tasks = await backend.list_tasks(
            {"status": status, "priority": priority, "search": search, "tags": tags, "limit": limit}
        )
        return {
            "success": True,
            "tasks": tasks,
            "count": len(tasks),
            "message": f"Found {len(tasks)} task{'s' if len(tasks) != 1 else ''}",
        }

    async def create_task(
        title: str,
        description: str = "",
        priority: int = 1,
        time_estimate: int = 60,
        due_date: str | None = None,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        error = _check_priority(priority)
        if error:
            return {"success": False, "error": error}
        if len(title) > 200:
            return {"success": False, "error": "title must be at most 200 characters"}
        try:
            task = await backend.create_task({
                "title": title,
                "description": description,
                "priority": priority,
                "time_estimate": time_estimate,
                "due_date": due_date,
                "tags": tags or [],
            })
        except TaskBackendError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "task": task, "message": f"Created task: {task['title']}"}

    async def update_task(
        task_id: str,
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: int | None = None,
        time_estimate: int | None = None,
        due_date: str | None = None,
        tags: list[str] | None = None,
    ) -> dict[str, Any]:
        error = _check_priority(priority)
        if error:
            return {"success": False, "error": error}
        changes = {
            key: value
            for key, value in {
                "title": title,
                "description": description,
                "status": status,
                "priority": priority,
                "time_estimate": time_estimate,
                "due_date": due_date,
                "tags": tags,
            }.items()
            if value is not None
        }
        if not changes:
            return {"success": False, "error": "No fields to update"}
        try:
            task = await backend.update_task(task_id, changes)
        except TaskBackendError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "task": task, "message": f"Updated task: {task['title']}"}

    return [
        ToolDefinition(
            name="get_tasks",
            description="Retrieve tasks, optionally filtered by status, priority, tags or a search term.",
            parameters={
                "status": ParameterSpec(
                    "array",
                    "Filter by task status",
                    items=ParameterSpec("string", enum=TASK_STATUSES),
                ),
                "priority": ParameterSpec(
                    "array", f"Filter by priority levels ({_PRIORITY_HELP})",
                    items=ParameterSpec("integer"),
                ),
                "search": ParameterSpec("string", "Search in task titles and descriptions"),
                "tags": ParameterSpec("array", "Filter by tags", items=ParameterSpec("string")),
                "limit": ParameterSpec("integer", "Maximum number of tasks to return (default 50)"),
            },
            handler=get_tasks,
            permissions=frozenset({PermissionLevel.READ_ONLY}),
        ),
        ToolDefinition(
            name="create_task",
            description="Create a new task with title, description, priority and other details.",
            parameters={
                "title": ParameterSpec("string", "Task title", required=True),
                "description": ParameterSpec("string", "Detailed task description"),
                "priority": ParameterSpec("integer", f"Task priority ({_PRIORITY_HELP})"),
                "time_estimate": ParameterSpec("integer", "Estimated time in minutes"),
                "due_date": ParameterSpec("string", "Due date in ISO format"),
                "tags": ParameterSpec("array", "Tags for categorization", items=ParameterSpec("string")),
            },
            handler=create_task,
            permissions=frozenset({PermissionLevel.MODIFY_TASKS}),
        ),
        ToolDefinition(
            name="update_task",
            description="Update an existing task's title, description, status, priority or schedule.",
            parameters={
                "task_id": ParameterSpec("string", "ID of the task to update", required=True),
                "title": ParameterSpec("string", "New task title"),
                "description": ParameterSpec("string", "New task description"),
                "status": ParameterSpec("string", "New task status", enum=TASK_STATUSES),
                "priority": ParameterSpec("integer", f"New priority ({_PRIORITY_HELP})"),
                "time_estimate": ParameterSpec("integer", "New time estimate in minutes"),
                "due_date": ParameterSpec("string", "New due date in ISO format"),
                "tags": ParameterSpec("array", "Replacement tag list", items=ParameterSpec("string")),
            },
            handler=update_task,
            permissions=frozenset({PermissionLevel.MODIFY_TASKS}),
        ),
    ]
