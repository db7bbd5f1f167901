"""Tests for the task and timer tools and the in-memory backend."""

from __future__ import annotations

import pytest

from taskpilot.tools.backend import InMemoryTaskBackend
from taskpilot.tools.registry import (
    PermissionLevel,
    ToolExecutionContext,
    create_default_registry,
)

ALL = ToolExecutionContext(permissions=frozenset({PermissionLevel.FULL_ACCESS}))


@pytest.fixture
def backend():
    return InMemoryTaskBackend()


@pytest.fixture
def registry(backend):
    return create_default_registry(backend)


async def _create(registry, **fields):
    result = await registry.execute_tool("create_task", fields, ALL)
    assert result.success, result.error
    return result.data["task"]


# ─── Registry wiring ─────────────────────────────────────────────────────────


class TestDefaultRegistry:
    def test_all_tools_registered(self, registry):
        assert sorted(registry.get_available_tools()) == [
            "create_task", "get_tasks", "start_timer", "stop_timer", "update_task",
        ]

    def test_declared_permissions(self, registry):
        perms = {
            name: registry.get_tool_schema(name).permissions
            for name in registry.get_available_tools()
        }
        assert perms["get_tasks"] == frozenset({PermissionLevel.READ_ONLY})
        assert perms["create_task"] == frozenset({PermissionLevel.MODIFY_TASKS})
        assert perms["update_task"] == frozenset({PermissionLevel.MODIFY_TASKS})
        assert perms["start_timer"] == frozenset({PermissionLevel.TIMER_CONTROL})
        assert perms["stop_timer"] == frozenset({PermissionLevel.TIMER_CONTROL})

    def test_read_only_context_sees_only_queries(self, registry):
        ctx = ToolExecutionContext(permissions=frozenset({PermissionLevel.READ_ONLY}))
        assert registry.get_available_tools(ctx) == ["get_tasks"]


# ─── Tasks ───────────────────────────────────────────────────────────────────


class TestTaskTools:
    async def test_create_task_defaults(self, registry, backend):
        task = await _create(registry, title="Write report")
        assert task["title"] == "Write report"
        assert task["status"] == "pending"
        assert task["priority"] == 1
        assert task["time_estimate"] == 60
        assert task["id"] in backend.tasks

    async def test_create_task_rejects_bad_priority(self, registry, backend):
        result = await registry.execute_tool("create_task", {"title": "X", "priority": 7}, ALL)
        assert not result.success
        assert "priority" in result.error
        assert backend.tasks == {}

    async def test_create_task_blank_title(self, registry):
        result = await registry.execute_tool("create_task", {"title": "   "}, ALL)
        assert not result.success
        assert "empty" in result.error

    async def test_get_tasks_filters(self, registry):
        await _create(registry, title="Draft slides", priority=2, tags=["work"])
        await _create(registry, title="Buy milk", priority=0, tags=["home"])
        await _create(registry, title="Review slides", priority=3, tags=["work"])

        result = await registry.execute_tool("get_tasks", {"search": "slides"}, ALL)
        assert result.success
        titles = [t["title"] for t in result.data["tasks"]]
        # highest priority first
        assert titles == ["Review slides", "Draft slides"]

        result = await registry.execute_tool("get_tasks", {"tags": ["home"]}, ALL)
        assert [t["title"] for t in result.data["tasks"]] == ["Buy milk"]

        result = await registry.execute_tool("get_tasks", {"priority": [0, 2]}, ALL)
        assert result.data["count"] == 2

        result = await registry.execute_tool("get_tasks", {"limit": 1}, ALL)
        assert result.data["count"] == 1

    async def test_get_tasks_status_enum_checked(self, registry):
        result = await registry.execute_tool("get_tasks", {"status": ["done"]}, ALL)
        assert not result.success
        assert "must be one of" in result.error

    async def test_update_task(self, registry):
        task = await _create(registry, title="Write report")
        result = await registry.execute_tool(
            "update_task", {"task_id": task["id"], "status": "in_progress", "priority": 2}, ALL,
        )
        assert result.success
        assert result.data["task"]["status"] == "in_progress"
        assert result.data["task"]["priority"] == 2
        assert result.data["task"]["title"] == "Write report"

    async def test_update_missing_task(self, registry):
        result = await registry.execute_tool(
            "update_task", {"task_id": "nope", "title": "X"}, ALL,
        )
        assert not result.success
        assert "Task not found" in result.error

    async def test_update_without_changes(self, registry):
        task = await _create(registry, title="Write report")
        result = await registry.execute_tool("update_task", {"task_id": task["id"]}, ALL)
        assert not result.success
        assert "No fields" in result.error


# ─── Timers ──────────────────────────────────────────────────────────────────


class TestTimerTools:
    async def test_start_and_stop(self, registry, backend):
        task = await _create(registry, title="Write report")
        started = await registry.execute_tool(
            "start_timer", {"task_id": task["id"], "notes": "first pass"}, ALL,
        )
        assert started.success
        session_id = started.data["session"]["id"]
        assert backend.active_session_id == session_id

        stopped = await registry.execute_tool("stop_timer", {"notes": "done"}, ALL)
        assert stopped.success
        assert stopped.data["session"]["end_time"] is not None
        assert stopped.data["session"]["notes"] == "first pass done"
        assert backend.active_session_id is None

    async def test_second_timer_rejected(self, registry):
        task = await _create(registry, title="Write report")
        await registry.execute_tool("start_timer", {"task_id": task["id"]}, ALL)
        result = await registry.execute_tool("start_timer", {"task_id": task["id"]}, ALL)
        assert not result.success
        assert "already running" in result.error

    async def test_stop_without_timer(self, registry):
        result = await registry.execute_tool("stop_timer", {}, ALL)
        assert not result.success
        assert "No active timer" in result.error

    async def test_timer_for_unknown_task(self, registry):
        result = await registry.execute_tool("start_timer", {"task_id": "nope"}, ALL)
        assert not result.success

    async def test_timer_requires_timer_permission(self, registry):
        task = await _create(registry, title="Write report")
        ctx = ToolExecutionContext(
            permissions=frozenset({PermissionLevel.READ_ONLY, PermissionLevel.MODIFY_TASKS})
        )
        result = await registry.execute_tool("start_timer", {"task_id": task["id"]}, ctx)
        assert not result.success
        assert "Insufficient permissions" in result.error
