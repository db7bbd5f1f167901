"""Interaction logging: record, query, export, retention and redaction."""

from __future__ import annotations

import asyncio
import csv
import dataclasses
import hashlib
import io
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from taskpilot.audit.classify import classify, redact
from taskpilot.audit.models import (
    AIInteractionLog,
    DataClassification,
    LogFilter,
    SessionToolStats,
    StorageStats,
    ToolExecutionLog,
)
from taskpilot.audit.store import LogStore
from taskpilot.config import EXPORT_FORMATS, LoggingConfig
from taskpilot.errors import AIError

logger = logging.getLogger(__name__)
# Audit write failures go here instead of back to the caller
fallback_logger = logging.getLogger("taskpilot.audit.fallback")

_TRUNCATE_AT = 2000
_TRUNCATED_SUFFIX = "... [truncated]"

# Fields that may be corrected after a log is written
_UPDATABLE = {
    "ai_response", "reasoning", "suggestions", "actions", "error", "error_code",
    "contains_sensitive_data", "data_classification",
}

_CSV_COLUMNS = (
    "id", "timestamp", "session_id", "model_type", "user_message", "ai_response",
    "system_prompt", "response_time_ms", "token_count", "error", "error_code",
    "contains_sensitive_data", "data_classification", "model_info", "context",
    "actions", "suggestions", "reasoning", "tool_executions",
)


def _truncate(value: Any) -> Any:
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, default=str)
    if len(text) <= _TRUNCATE_AT:
        return value
    return text[:_TRUNCATE_AT] + _TRUNCATED_SUFFIX


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InteractionLogger:
    """Durable audit trail of request/response cycles.

    ``log_interaction`` never raises: failures are reported on the
    ``taskpilot.audit.fallback`` logger and ``None`` is returned.
    """

    def __init__(
        self,
        store: LogStore,
        config: LoggingConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or LoggingConfig()
        self._clock = clock

    @classmethod
    async def open(cls, db_path: str | Path, defaults: LoggingConfig | None = None) -> InteractionLogger:
        """Open the audit database; a persisted config row wins over *defaults*."""
        defaults = defaults or LoggingConfig()
        store = await asyncio.to_thread(LogStore, db_path)
        saved = await asyncio.to_thread(store.load_config)
        config = defaults
        if saved:
            try:
                config = defaults.merged(saved)
            except ValueError as e:
                logger.warning("Ignoring invalid persisted logging config: %s", e)
        return cls(store, config)

    # ── writing ───────────────────────────────────────────────────────

    async def log_interaction(self, record: AIInteractionLog) -> AIInteractionLog | None:
        if not self.config.enabled:
            return None
        try:
            stored = self._prepare(record)
            await asyncio.to_thread(self._write, stored, self.config)
        except Exception as e:
            fallback_logger.error(
                "Failed to write interaction log %s (session %s): %s: %s",
                record.id, record.session_id, type(e).__name__, e,
            )
            return None
        return stored

    def _prepare(self, record: AIInteractionLog) -> AIInteractionLog:
        cfg = self.config
        system_prompt = record.system_prompt if cfg.include_system_prompts else None
        context = dict(record.context)
        reasoning = record.reasoning
        tools = list(record.tool_executions) if cfg.include_tool_executions else []

        if cfg.log_level == "minimal":
            system_prompt = None
            context = {}
            reasoning = None
            tools = [dataclasses.replace(t, arguments={}, result=None) for t in tools]
        elif cfg.log_level == "standard":
            context = {k: _truncate(v) for k, v in context.items()}
            tools = [dataclasses.replace(t, result=_truncate(t.result)) for t in tools]

        sensitive, detected = classify(record.user_message, record.ai_response, system_prompt)
        classification = (
            detected if sensitive else record.data_classification or DataClassification.INTERNAL
        )
        return dataclasses.replace(
            record,
            system_prompt=system_prompt,
            context=context,
            reasoning=reasoning,
            tool_executions=[dataclasses.replace(t, interaction_log_id=record.id) for t in tools],
            response_time_ms=record.response_time_ms if cfg.include_performance_metrics else 0,
            token_count=record.token_count if cfg.include_performance_metrics else None,
            contains_sensitive_data=record.contains_sensitive_data or sensitive,
            data_classification=classification,
        )

    def _write(self, log: AIInteractionLog, cfg: LoggingConfig) -> None:
        self.store.insert(log)
        if cfg.auto_cleanup:
            expired = self.store.delete_older_than(self._clock() - timedelta(days=cfg.retention_days))
            capped = self.store.enforce_caps(cfg.max_log_count, cfg.max_log_size)
            if expired or capped:
                logger.info("Audit cleanup removed %d expired and %d over-cap logs", expired, capped)

    # ── queries ───────────────────────────────────────────────────────

    async def get_interaction_log(self, log_id: str) -> AIInteractionLog | None:
        return await asyncio.to_thread(self.store.get, log_id)

    async def get_interaction_logs(self, filters: LogFilter | None = None) -> list[AIInteractionLog]:
        return await asyncio.to_thread(self.store.query, filters or LogFilter())

    async def get_storage_stats(self) -> StorageStats:
        return await asyncio.to_thread(self.store.stats)

    async def get_session_tool_statistics(self, session_id: str) -> SessionToolStats:
        """Per-tool counts, success rate and timings for one session, plus grouped errors."""
        return await asyncio.to_thread(self.store.session_tool_stats, session_id)

    # ── maintenance ───────────────────────────────────────────────────

    async def update_interaction_log(
        self, log_id: str, updates: dict[str, Any],
    ) -> AIInteractionLog | None:
        """Apply a correction to a stored log; returns None if it does not exist."""
        rejected = set(updates) - _UPDATABLE
        if rejected:
            raise AIError.invalid_request(
                f"Interaction log fields cannot be changed: {', '.join(sorted(rejected))}"
            )
        if isinstance(updates.get("data_classification"), str):
            try:
                updates = {
                    **updates,
                    "data_classification": DataClassification(updates["data_classification"]),
                }
            except ValueError as e:
                raise AIError.invalid_request(str(e)) from e

        current = await self.get_interaction_log(log_id)
        if current is None:
            return None
        updated = dataclasses.replace(current, **updates)
        if not await asyncio.to_thread(self.store.replace, updated):
            return None
        return updated

    async def delete_interaction_log(self, log_id: str) -> bool:
        return await asyncio.to_thread(self.store.delete, log_id)

    async def clear_all_logs(self) -> int:
        count = await asyncio.to_thread(self.store.delete_all)
        logger.info("Cleared %d interaction logs", count)
        return count

    async def cleanup_old_logs(self) -> int:
        """Delete logs older than the retention window; returns the number removed."""
        cutoff = self._clock() - timedelta(days=self.config.retention_days)
        count = await asyncio.to_thread(self.store.delete_older_than, cutoff)
        if count:
            logger.info("Removed %d interaction logs older than %s", count, cutoff.date())
        return count

    async def redact_sensitive_data(self, log_id: str) -> bool:
        """Scrub sensitive matches from one log. Irreversible."""
        log = await self.get_interaction_log(log_id)
        if log is None:
            return False
        return await asyncio.to_thread(self.store.replace, self._redacted(log))

    async def anonymize_logs(self, log_ids: Iterable[str]) -> int:
        """Redact and pseudonymize logs; drops context and tool arguments. Irreversible."""
        count = 0
        for log_id in log_ids:
            log = await self.get_interaction_log(log_id)
            if log is None:
                continue
            digest = hashlib.sha256(log.session_id.encode()).hexdigest()[:12]
            scrubbed = dataclasses.replace(
                self._redacted(log),
                session_id=f"anonymous-{digest}",
                context={},
                tool_executions=[
                    dataclasses.replace(t, arguments={}) for t in log.tool_executions
                ],
            )
            if await asyncio.to_thread(self.store.replace, scrubbed):
                count += 1
        return count

    @staticmethod
    def _redacted(log: AIInteractionLog) -> AIInteractionLog:
        return dataclasses.replace(
            log,
            user_message=redact(log.user_message) or "",
            ai_response=redact(log.ai_response) or "",
            system_prompt=redact(log.system_prompt),
            reasoning=redact(log.reasoning),
            error=redact(log.error),
            contains_sensitive_data=False,
            data_classification=(
                DataClassification.INTERNAL
                if log.data_classification == DataClassification.CONFIDENTIAL
                else log.data_classification
            ),
            tool_executions=[
                dataclasses.replace(t, error=redact(t.error)) for t in log.tool_executions
            ],
        )

    # ── export ────────────────────────────────────────────────────────

    async def export_logs(self, filters: LogFilter | None = None, fmt: str | None = None) -> bytes:
        fmt = fmt or self.config.export_format
        if fmt not in EXPORT_FORMATS:
            raise AIError.invalid_request(
                f"Unsupported export format '{fmt}' (expected {', '.join(EXPORT_FORMATS)})"
            )
        logs = await self.get_interaction_logs(filters)
        records = [log.to_dict() for log in logs]
        if fmt == "json":
            return json.dumps(records, indent=2, default=str).encode("utf-8")

        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=_CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for record in records:
            writer.writerow({
                key: json.dumps(value, default=str) if isinstance(value, (dict, list)) else value
                for key, value in record.items()
            })
        return buf.getvalue().encode("utf-8")

    # ── configuration ─────────────────────────────────────────────────

    async def update_logging_config(self, partial: dict[str, Any]) -> LoggingConfig:
        try:
            updated = self.config.merged(partial)
        except (TypeError, ValueError) as e:
            raise AIError.invalid_request(f"Invalid logging config: {e}") from e
        await asyncio.to_thread(self.store.save_config, updated.to_dict())
        self.config = updated
        logger.info("Logging config updated: %s", ", ".join(sorted(partial)))
        return updated
