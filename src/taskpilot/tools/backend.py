"""Task and time-tracking storage seen by the tools.

The real store lives outside this package; tools only depend on the
:class:`TaskBackend` protocol. Writes either fully succeed or raise
:class:`TaskBackendError`.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")


class TaskBackendError(Exception):
    """A storage operation was rejected (missing task, timer conflict, bad field)."""


class TaskBackend(Protocol):
    async def list_tasks(self, filters: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def create_task(self, fields: dict[str, Any]) -> dict[str, Any]: ...

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...

    async def start_timer(self, task_id: str, notes: str = "") -> dict[str, Any]: ...

    async def stop_timer(self, session_id: str | None = None, notes: str = "") -> dict[str, Any]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryTaskBackend:
    """Process-local task store for headless runs and tests."""

    def __init__(self) -> None:
        self.tasks: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.active_session_id: str | None = None
        self._lock = asyncio.Lock()

    async def list_tasks(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        statuses = filters.get("status") or []
        priorities = filters.get("priority") or []
        tags = set(filters.get("tags") or [])
        search = (filters.get("search") or "").lower()
        limit = int(filters.get("limit") or 50)

        found = []
        for task in self.tasks.values():
            if statuses and task["status"] not in statuses:
                continue
            if priorities and task["priority"] not in priorities:
                continue
            if tags and not tags & set(task["tags"]):
                continue
            if search and search not in f"{task['title']} {task['description']}".lower():
                continue
            found.append(dict(task))
        found.sort(key=lambda t: (-t["priority"], t["created_at"]))
        return found[:limit]

    async def create_task(self, fields: dict[str, Any]) -> dict[str, Any]:
        title = (fields.get("title") or "").strip()
        if not title:
            raise TaskBackendError("Task title cannot be empty")
        now = _now().isoformat()
        task = {
            "id": uuid.uuid4().hex,
            "title": title,
            "description": fields.get("description") or "",
            "priority": int(fields.get("priority", 1)),
            "status": "pending",
            "time_estimate": int(fields.get("time_estimate") or 60),
            "due_date": fields.get("due_date"),
            "tags": list(fields.get("tags") or []),
            "created_at": now,
            "updated_at": now,
        }
        async with self._lock:
            self.tasks[task["id"]] = task
        return dict(task)

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            task = self.tasks.get(task_id)
            if task is None:
                raise TaskBackendError(f"Task not found: {task_id}")
            if "status" in fields and fields["status"] not in TASK_STATUSES:
                raise TaskBackendError(f"Invalid status: {fields['status']}")
            updated = {**task, **fields, "updated_at": _now().isoformat()}
            self.tasks[task_id] = updated
        return dict(updated)

    async def start_timer(self, task_id: str, notes: str = "") -> dict[str, Any]:
        async with self._lock:
            if task_id not in self.tasks:
                raise TaskBackendError(f"Task not found: {task_id}")
            if self.active_session_id is not None:
                raise TaskBackendError("A timer is already running; stop it first")
            session = {
                "id": uuid.uuid4().hex,
                "task_id": task_id,
                "start_time": _now().isoformat(),
                "end_time": None,
                "notes": notes,
            }
            self.sessions[session["id"]] = session
            self.active_session_id = session["id"]
        return dict(session)

    async def stop_timer(self, session_id: str | None = None, notes: str = "") -> dict[str, Any]:
        async with self._lock:
            sid = session_id or self.active_session_id
            if sid is None or sid not in self.sessions:
                raise TaskBackendError("No active timer session")
            session = self.sessions[sid]
            if session["end_time"] is not None:
                raise TaskBackendError(f"Timer session {sid} is already stopped")
            end = _now()
            started = datetime.fromisoformat(session["start_time"])
            session.update(
                end_time=end.isoformat(),
                duration_seconds=int((end - started).total_seconds()),
                notes=" ".join(filter(None, [session["notes"], notes])),
            )
            if self.active_session_id == sid:
                self.active_session_id = None
        return dict(session)
