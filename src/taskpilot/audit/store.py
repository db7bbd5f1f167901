"""SQLite persistence for interaction logs and the logging config row."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskpilot.audit.models import (
    AIInteractionLog,
    DataClassification,
    LogFilter,
    ModelType,
    SessionToolStats,
    StorageStats,
    ToolExecutionLog,
    ToolUsage,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ai_interaction_logs (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    session_id TEXT NOT NULL,
    model_type TEXT NOT NULL,
    model_info TEXT NOT NULL,
    user_message TEXT NOT NULL,
    system_prompt TEXT,
    context TEXT NOT NULL,
    ai_response TEXT NOT NULL,
    actions TEXT NOT NULL,
    suggestions TEXT NOT NULL,
    reasoning TEXT,
    response_time_ms INTEGER NOT NULL,
    token_count INTEGER,
    error TEXT,
    error_code TEXT,
    contains_sensitive_data INTEGER NOT NULL DEFAULT 0,
    data_classification TEXT NOT NULL,
    size_bytes INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_ai_logs_timestamp ON ai_interaction_logs(timestamp);
CREATE INDEX IF NOT EXISTS idx_ai_logs_session ON ai_interaction_logs(session_id);

CREATE TABLE IF NOT EXISTS tool_execution_logs (
    id TEXT PRIMARY KEY,
    interaction_log_id TEXT NOT NULL REFERENCES ai_interaction_logs(id),
    tool_name TEXT NOT NULL,
    arguments TEXT NOT NULL,
    result TEXT NOT NULL,
    execution_time_ms INTEGER NOT NULL,
    success INTEGER NOT NULL,
    error TEXT,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tool_logs_interaction ON tool_execution_logs(interaction_log_id);

CREATE TABLE IF NOT EXISTS logging_config (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    config TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_LOG_COLUMNS = (
    "id", "timestamp", "session_id", "model_type", "model_info", "user_message",
    "system_prompt", "context", "ai_response", "actions", "suggestions", "reasoning",
    "response_time_ms", "token_count", "error", "error_code", "contains_sensitive_data",
    "data_classification", "size_bytes",
)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class LogStore:
    """Blocking SQLite access; callers run these methods off the event loop.

    A connection is opened per call so methods are safe from any thread.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.executescript(_SCHEMA)
        logger.debug("Initialized audit database at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # ── writes ────────────────────────────────────────────────────────

    def insert(self, log: AIInteractionLog) -> None:
        with closing(self._connect()) as conn, conn:
            self._insert(conn, log)

    def _insert(self, conn: sqlite3.Connection, log: AIInteractionLog) -> None:
        row = self._to_row(log)
        placeholders = ", ".join("?" for _ in _LOG_COLUMNS)
        conn.execute(
            f"INSERT INTO ai_interaction_logs ({', '.join(_LOG_COLUMNS)}) VALUES ({placeholders})",
            [row[c] for c in _LOG_COLUMNS],
        )
        conn.executemany(
            "INSERT INTO tool_execution_logs (id, interaction_log_id, tool_name, arguments, "
            "result, execution_time_ms, success, error, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    t.id, log.id, t.tool_name, _dumps(t.arguments), _dumps(t.result),
                    t.execution_time_ms, int(t.success), t.error, _ts(t.timestamp),
                )
                for t in log.tool_executions
            ],
        )

    def replace(self, log: AIInteractionLog) -> bool:
        """Rewrite an existing log and its tool executions in one transaction."""
        with closing(self._connect()) as conn, conn:
            if not self._delete(conn, [log.id]):
                return False
            self._insert(conn, log)
        return True

    def delete(self, log_id: str) -> bool:
        with closing(self._connect()) as conn, conn:
            return self._delete(conn, [log_id]) > 0

    def delete_all(self) -> int:
        with closing(self._connect()) as conn, conn:
            conn.execute("DELETE FROM tool_execution_logs")
            return conn.execute("DELETE FROM ai_interaction_logs").rowcount

    def delete_older_than(self, cutoff: datetime) -> int:
        with closing(self._connect()) as conn, conn:
            ids = [
                r["id"]
                for r in conn.execute(
                    "SELECT id FROM ai_interaction_logs WHERE timestamp < ?", (_ts(cutoff),)
                )
            ]
            return self._delete(conn, ids)

    def enforce_caps(self, max_count: int, max_size: int) -> int:
        """Drop the oldest logs until both the count and size caps hold."""
        with closing(self._connect()) as conn, conn:
            rows = conn.execute(
                "SELECT id, size_bytes FROM ai_interaction_logs ORDER BY timestamp DESC"
            ).fetchall()
            kept_size = 0
            doomed = []
            for index, row in enumerate(rows):
                kept_size += row["size_bytes"]
                if index >= max_count or kept_size > max_size:
                    doomed.append(row["id"])
            return self._delete(conn, doomed)

    def _delete(self, conn: sqlite3.Connection, ids: list[str]) -> int:
        removed = 0
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            marks = ", ".join("?" for _ in chunk)
            conn.execute(f"DELETE FROM tool_execution_logs WHERE interaction_log_id IN ({marks})", chunk)
            removed += conn.execute(f"DELETE FROM ai_interaction_logs WHERE id IN ({marks})", chunk).rowcount
        return removed

    # ── reads ─────────────────────────────────────────────────────────

    def get(self, log_id: str) -> AIInteractionLog | None:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM ai_interaction_logs WHERE id = ?", (log_id,)).fetchone()
            if row is None:
                return None
            return self._from_row(conn, row)

    def query(self, filters: LogFilter) -> list[AIInteractionLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.start_date is not None:
            clauses.append("l.timestamp >= ?")
            params.append(_ts(filters.start_date))
        if filters.end_date is not None:
            clauses.append("l.timestamp <= ?")
            params.append(_ts(filters.end_date))
        if filters.model_type is not None:
            clauses.append("l.model_type = ?")
            params.append(filters.model_type.value)
        if filters.has_errors is not None:
            clauses.append("l.error IS NOT NULL" if filters.has_errors else "l.error IS NULL")
        if filters.contains_tool_calls is not None:
            has_calls = (
                "(l.actions != '[]' OR EXISTS (SELECT 1 FROM tool_execution_logs t "
                "WHERE t.interaction_log_id = l.id))"
            )
            clauses.append(has_calls if filters.contains_tool_calls else f"NOT {has_calls}")
        if filters.search:
            clauses.append(
                "(instr(lower(l.user_message), lower(?)) > 0 "
                "OR instr(lower(l.ai_response), lower(?)) > 0)"
            )
            params.extend([filters.search, filters.search])

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = (
            f"SELECT l.* FROM ai_interaction_logs l {where} "
            "ORDER BY l.timestamp DESC LIMIT ? OFFSET ?"
        )
        params.extend([filters.limit, filters.offset])
        with closing(self._connect()) as conn:
            return [self._from_row(conn, row) for row in conn.execute(sql, params).fetchall()]

    def stats(self) -> StorageStats:
        with closing(self._connect()) as conn:
            totals = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(size_bytes), 0) AS size, "
                "MIN(timestamp) AS oldest, MAX(timestamp) AS newest, "
                "COALESCE(AVG(response_time_ms), 0) AS avg_ms FROM ai_interaction_logs"
            ).fetchone()
            per_model = {
                r["model_type"]: r["n"]
                for r in conn.execute(
                    "SELECT model_type, COUNT(*) AS n FROM ai_interaction_logs GROUP BY model_type"
                )
            }
        return StorageStats(
            total_logs=totals["n"],
            total_size=totals["size"],
            oldest=datetime.fromisoformat(totals["oldest"]) if totals["oldest"] else None,
            newest=datetime.fromisoformat(totals["newest"]) if totals["newest"] else None,
            per_model_counts=per_model,
            avg_response_time=float(totals["avg_ms"]),
        )

    def session_tool_stats(self, session_id: str) -> SessionToolStats:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT t.tool_name AS tool_name, COUNT(*) AS n, SUM(t.success) AS ok, "
                "AVG(t.execution_time_ms) AS avg_ms, MIN(t.execution_time_ms) AS min_ms, "
                "MAX(t.execution_time_ms) AS max_ms, MAX(t.timestamp) AS last "
                "FROM tool_execution_logs t JOIN ai_interaction_logs l ON l.id = t.interaction_log_id "
                "WHERE l.session_id = ? GROUP BY t.tool_name ORDER BY n DESC, t.tool_name",
                (session_id,),
            ).fetchall()
            errors = {
                r["error"]: r["n"]
                for r in conn.execute(
                    "SELECT COALESCE(t.error, 'unknown error') AS error, COUNT(*) AS n "
                    "FROM tool_execution_logs t JOIN ai_interaction_logs l "
                    "ON l.id = t.interaction_log_id "
                    "WHERE l.session_id = ? AND t.success = 0 GROUP BY 1 ORDER BY n DESC",
                    (session_id,),
                )
            }
        last = max((r["last"] for r in rows), default=None)
        return SessionToolStats(
            session_id=session_id,
            tools=[
                ToolUsage(
                    tool_name=r["tool_name"],
                    executions=r["n"],
                    successes=r["ok"],
                    avg_execution_time_ms=float(r["avg_ms"]),
                    min_execution_time_ms=r["min_ms"],
                    max_execution_time_ms=r["max_ms"],
                )
                for r in rows
            ],
            error_patterns=errors,
            last_execution=datetime.fromisoformat(last) if last else None,
        )

    # ── logging config row ────────────────────────────────────────────

    def load_config(self) -> dict[str, Any] | None:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT config FROM logging_config WHERE id = 1").fetchone()
        return json.loads(row["config"]) if row else None

    def save_config(self, config: dict[str, Any]) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT INTO logging_config (id, config, updated_at) VALUES (1, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET config = excluded.config, "
                "updated_at = excluded.updated_at",
                (json.dumps(config), _ts(datetime.now(timezone.utc))),
            )

    # ── row mapping ───────────────────────────────────────────────────

    @staticmethod
    def _to_row(log: AIInteractionLog) -> dict[str, Any]:
        row = {
            "id": log.id,
            "timestamp": _ts(log.timestamp),
            "session_id": log.session_id,
            "model_type": log.model_type.value,
            "model_info": _dumps(log.model_info),
            "user_message": log.user_message,
            "system_prompt": log.system_prompt,
            "context": _dumps(log.context),
            "ai_response": log.ai_response,
            "actions": _dumps(log.actions),
            "suggestions": _dumps(log.suggestions),
            "reasoning": log.reasoning,
            "response_time_ms": log.response_time_ms,
            "token_count": log.token_count,
            "error": log.error,
            "error_code": log.error_code,
            "contains_sensitive_data": int(log.contains_sensitive_data),
            "data_classification": (
                log.data_classification or DataClassification.INTERNAL
            ).value,
        }
        text_fields = [v for v in row.values() if isinstance(v, str)]
        tool_text = [
            _dumps(t.arguments) + _dumps(t.result) + (t.error or "") for t in log.tool_executions
        ]
        row["size_bytes"] = sum(len(s.encode("utf-8")) for s in text_fields + tool_text)
        return row

    @staticmethod
    def _from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> AIInteractionLog:
        tools = [
            ToolExecutionLog(
                id=t["id"],
                interaction_log_id=t["interaction_log_id"],
                tool_name=t["tool_name"],
                arguments=json.loads(t["arguments"]),
                result=json.loads(t["result"]),
                execution_time_ms=t["execution_time_ms"],
                success=bool(t["success"]),
                error=t["error"],
                timestamp=datetime.fromisoformat(t["timestamp"]),
            )
            for t in conn.execute(
                "SELECT * FROM tool_execution_logs WHERE interaction_log_id = ? "
                "ORDER BY timestamp, rowid",
                (row["id"],),
            )
        ]
        return AIInteractionLog(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            session_id=row["session_id"],
            model_type=ModelType(row["model_type"]),
            model_info=json.loads(row["model_info"]),
            user_message=row["user_message"],
            system_prompt=row["system_prompt"],
            context=json.loads(row["context"]),
            ai_response=row["ai_response"],
            actions=json.loads(row["actions"]),
            suggestions=json.loads(row["suggestions"]),
            reasoning=row["reasoning"],
            response_time_ms=row["response_time_ms"],
            token_count=row["token_count"],
            error=row["error"],
            error_code=row["error_code"],
            contains_sensitive_data=bool(row["contains_sensitive_data"]),
            data_classification=DataClassification(row["data_classification"]),
            tool_executions=tools,
        )
