"""Service manager: provider pool, sessions and the request pipeline.

One ``ServiceManager`` is built by the composition root and passed to
callers. A request runs validate → infer → parse tool calls → execute
tools → re-infer → finalize, then the interaction is logged in the
background.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from taskpilot.agent.operations import timed_operation
from taskpilot.agent.session import ConversationSession, SessionState, Turn
from taskpilot.agent.system_prompt import build_system_prompt
from taskpilot.agent.tool_calls import ToolCall, parse_tool_calls
from taskpilot.audit.logger import InteractionLogger
from taskpilot.audit.models import (
    AIInteractionLog,
    LogFilter,
    ModelType,
    SessionToolStats,
    ToolExecutionLog,
)
from taskpilot.config import AgentConfig, LoggingConfig
from taskpilot.errors import AIError
from taskpilot.inference.engine import (
    TOOL_CALLING,
    GenerationOptions,
    ModelInfo,
    Provider,
    ProviderState,
    ProviderStatus,
)
from taskpilot.tools.registry import (
    PermissionLevel,
    ToolExecutionContext,
    ToolExecutionResult,
    ToolRegistry,
    parse_permissions,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 100_000
MAX_SESSION_ID_CHARS = 255
_STEP_CHARS = 200


@dataclass
class AIRequest:
    session_id: str
    message: str
    system_prompt_override: str | None = None
    provider_preference: str | None = None
    # None = the manager's granted permissions
    permissions: frozenset[PermissionLevel] | None = None
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCallRecord:
    call: ToolCall
    result: ToolExecutionResult

    def to_dict(self) -> dict[str, Any]:
        return {**self.call.to_dict(), "result": self.result.to_dict()}


@dataclass
class AIResponse:
    response: str
    session_id: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    model_info: ModelInfo | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "tool_calls": [r.to_dict() for r in self.tool_calls],
            "session_id": self.session_id,
            "model_info": self.model_info.to_dict() if self.model_info else None,
            "metadata": dict(self.metadata),
            "error": None,
        }


@dataclass
class _Trace:
    """What one request did, collected for its audit record."""

    request: AIRequest
    started: float = field(default_factory=time.perf_counter)
    provider_name: str | None = None
    provider: Provider | None = None
    system_prompt: str | None = None
    records: list[ToolCallRecord] = field(default_factory=list)
    token_count: int | None = None
    rounds: int = 0
    # (kind, content): thought, action, observation, final_answer or error
    steps: list[tuple[str, str]] = field(default_factory=list)

    def add_tokens(self, count: int | None) -> None:
        if count is not None:
            self.token_count = (self.token_count or 0) + count

    def step(self, kind: str, content: str) -> None:
        if len(content) > _STEP_CHARS:
            content = content[:_STEP_CHARS] + "..."
        self.steps.append((kind, content))

    def reasoning(self) -> str | None:
        """Numbered step trace for the audit record."""
        if not self.steps:
            return None
        return "\n".join(
            f"{index}. {kind}: {content}" for index, (kind, content) in enumerate(self.steps, 1)
        )


class ServiceManager:
    """Owns the active provider, conversation sessions and the tool-calling loop."""

    def __init__(
        self,
        registry: ToolRegistry,
        interaction_logger: InteractionLogger | None = None,
        config: AgentConfig | None = None,
    ) -> None:
        self.registry = registry
        self.interaction_logger = interaction_logger
        self.config = config or AgentConfig()
        self.granted_permissions = parse_permissions(self.config.granted_permissions)

        self._providers: dict[str, Provider] = {}
        self._active: str | None = None
        self._switch_lock = asyncio.Lock()
        self._in_flight: dict[str, int] = {}
        self._drained: dict[str, asyncio.Event] = {}

        self._sessions: dict[str, ConversationSession] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._log_tasks: set[asyncio.Task] = set()

    # ── providers ─────────────────────────────────────────────────────

    def register_provider(self, name: str, provider: Provider) -> None:
        """Add a provider to the pool without activating it."""
        if name in self._providers:
            raise AIError.invalid_request(f"Provider '{name}' is already registered")
        self._providers[name] = provider
        self._in_flight[name] = 0
        self._drained[name] = asyncio.Event()
        self._drained[name].set()
        logger.debug("Registered provider: %s (%s)", name, provider.kind)

    @property
    def active_provider_name(self) -> str | None:
        return self._active

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    async def switch_provider(self, name: str) -> ProviderStatus:
        """Make *name* the active provider.

        The target is initialized first; only then does it replace the
        current provider, which is cleaned up once its in-flight requests
        finish. On failure the previous provider stays active.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise AIError.invalid_request(
                f"Unknown provider '{name}' (registered: {', '.join(self._providers) or 'none'})",
                code="UNKNOWN_PROVIDER",
            )

        async with self._switch_lock:
            if self._active == name and provider.is_ready():
                return provider.get_status()

            await timed_operation(f"initialize {name}", provider.initialize)
            if not provider.is_ready():
                status = provider.get_status()
                raise AIError.provider_unavailable(
                    f"Provider '{name}' did not become ready ({status.state.value}: {status.message})"
                )

            previous, self._active = self._active, name
            logger.info("Active provider: %s (was %s)", name, previous or "none")
            if previous is not None and previous != name:
                await self._retire(previous)
            return provider.get_status()

    async def _retire(self, name: str) -> None:
        await self._drained[name].wait()
        try:
            await self._providers[name].cleanup()
        except Exception as e:
            logger.warning("Cleanup of provider %s failed: %s", name, e)

    def _acquire_provider(self, preference: str | None) -> tuple[str, Provider]:
        name = self._active
        if name is None:
            raise AIError.provider_unavailable("No active provider", code="NO_ACTIVE_PROVIDER")
        if preference is not None and preference != name:
            raise AIError.invalid_request(
                f"Requested provider '{preference}' is not active (active: {name})",
                user_message=f"Switch to '{preference}' before sending this message.",
                code="PROVIDER_NOT_ACTIVE",
            )
        provider = self._providers[name]
        if not provider.is_ready():
            status = provider.get_status()
            raise AIError.provider_unavailable(
                f"Provider '{name}' is not ready ({status.state.value}: {status.message})"
            )
        self._in_flight[name] += 1
        self._drained[name].clear()
        return name, provider

    def _release_provider(self, name: str) -> None:
        self._in_flight[name] -= 1
        if self._in_flight[name] == 0:
            self._drained[name].set()

    # ── requests ──────────────────────────────────────────────────────

    async def process_message(self, request: AIRequest) -> AIResponse:
        """Run one conversational turn; raises :class:`AIError` on failure.

        Turns for the same session run strictly in submission order.
        """
        session_id = request.session_id
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                return await timed_operation(
                    f"process_message[{session_id}]", lambda: self._process(request),
                )
        finally:
            # The lock lives only while requests for the session are running or queued
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._session_locks[session_id]

    def _validate_request(self, request: AIRequest) -> None:
        if not request.session_id or not request.session_id.strip():
            raise AIError.invalid_request("Session ID cannot be empty")
        if len(request.session_id) > MAX_SESSION_ID_CHARS:
            raise AIError.invalid_request(
                f"Session ID too long ({len(request.session_id)} characters, "
                f"max {MAX_SESSION_ID_CHARS})"
            )
        if not request.message or not request.message.strip():
            raise AIError.invalid_request(
                "Message cannot be empty", user_message="Please enter a message.",
            )
        if len(request.message) > MAX_MESSAGE_CHARS:
            raise AIError.invalid_request(
                f"Message too long ({len(request.message)} characters, max {MAX_MESSAGE_CHARS})",
                user_message="Your message is too long. Please shorten it and try again.",
            )
        if request.provider_preference is not None and request.provider_preference not in self._providers:
            raise AIError.invalid_request(
                f"Unknown provider '{request.provider_preference}'", code="UNKNOWN_PROVIDER",
            )

    async def _process(self, request: AIRequest) -> AIResponse:
        trace = _Trace(request)
        session: ConversationSession | None = None
        try:
            self._validate_request(request)
            name, provider = self._acquire_provider(request.provider_preference)
            trace.provider_name, trace.provider = name, provider
            try:
                session = self._get_or_create_session(request.session_id)
                response = await self._run_turn(session, provider, request, trace)
            finally:
                self._release_provider(name)
        except AIError as e:
            self._schedule_log(trace, error=e)
            raise
        except Exception as e:
            logger.exception("Unexpected error processing message for session %s", request.session_id)
            error = AIError.internal(f"{type(e).__name__}: {e}")
            self._schedule_log(trace, error=error)
            raise error from e
        finally:
            if session is not None and session.state not in (SessionState.IDLE, SessionState.COMPLETED):
                session.finish(SessionState.FAILED)

        session.finish(SessionState.COMPLETED)
        self._schedule_log(trace, response=response)
        return response

    async def _run_turn(
        self,
        session: ConversationSession,
        provider: Provider,
        request: AIRequest,
        trace: _Trace,
    ) -> AIResponse:
        context = ToolExecutionContext(
            permissions=request.permissions if request.permissions is not None else self.granted_permissions,
            session_id=request.session_id,
        )
        system_prompt = request.system_prompt_override or build_system_prompt(self.registry, context)
        trace.system_prompt = system_prompt
        options = GenerationOptions(
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            system_prompt=system_prompt,
            timeout=self.config.timeout_seconds,
        )
        use_tools = TOOL_CALLING in provider.get_capabilities()
        # Oldest history is left out of the prompt once it outgrows the provider's budget
        budget = provider.max_prompt_chars

        session.state = SessionState.AWAITING_INFERENCE
        provider.validate_prompt(request.message)
        pending = [Turn("user", request.message)]
        generation = await provider.generate(session.render_prompt(pending, budget), options)
        trace.add_tokens(generation.token_count)
        reply = parse_tool_calls(generation.text)

        if not use_tools:
            final_text = generation.text.strip()
        else:
            while reply.tool_calls and trace.rounds < self.config.max_tool_rounds:
                trace.rounds += 1
                trace.step("thought", reply.text or f"requested {len(reply.tool_calls)} tool call(s)")
                session.state = SessionState.TOOL_CALLS_PENDING
                pending.append(Turn(
                    "assistant", reply.text, tool_calls=[c.to_dict() for c in reply.tool_calls],
                ))

                session.state = SessionState.EXECUTING_TOOLS
                # Sequential: later calls may depend on earlier side effects
                for call in reply.tool_calls:
                    trace.step("action", f"{call.name} {json.dumps(call.arguments, default=str)}")
                    result = await self.registry.execute_tool(call.name, call.arguments, context)
                    trace.records.append(ToolCallRecord(call, result))
                    trace.step("observation", (
                        f"{call.name} ok: {result.user_message}" if result.success
                        else f"{call.name} failed: {result.error}"
                    ))
                    pending.append(Turn("tool", result.to_message_content(), name=call.name))

                session.state = SessionState.AWAITING_FINAL_INFERENCE
                generation = await provider.generate(session.render_prompt(pending, budget), options)
                trace.add_tokens(generation.token_count)
                reply = parse_tool_calls(generation.text)

            if reply.tool_calls:
                logger.info(
                    "Tool round limit (%d) reached; ignoring %d further tool call(s)",
                    self.config.max_tool_rounds, len(reply.tool_calls),
                )
            final_text = reply.text
            if not final_text and trace.records:
                final_text = "\n".join(r.result.user_message for r in trace.records)

        trace.step("final_answer", final_text)
        pending.append(Turn("assistant", final_text))
        session.commit(pending)
        session.state = SessionState.COMPLETED
        return AIResponse(
            response=final_text,
            session_id=request.session_id,
            tool_calls=list(trace.records),
            model_info=provider.model_info(),
            metadata={
                "provider": trace.provider_name,
                "response_time_ms": int((time.perf_counter() - trace.started) * 1000),
                "token_count": trace.token_count,
                "tool_rounds": trace.rounds,
            },
        )

    # ── audit ─────────────────────────────────────────────────────────

    def _schedule_log(
        self, trace: _Trace, response: AIResponse | None = None, error: AIError | None = None,
    ) -> None:
        """Write the audit record in the background; the caller never waits on it."""
        if self.interaction_logger is None:
            return
        provider = trace.provider
        if provider is None and self._active is not None:
            provider = self._providers[self._active]
        if provider is None:
            logger.debug("No provider resolved; interaction not logged")
            return

        try:
            record = self._build_record(trace, provider, response, error)
        except Exception as e:
            logger.warning("Could not build interaction log for session %s: %s", trace.request.session_id, e)
            return
        task = asyncio.create_task(self.interaction_logger.log_interaction(record))
        self._log_tasks.add(task)
        task.add_done_callback(self._log_tasks.discard)

    def _build_record(
        self,
        trace: _Trace,
        provider: Provider,
        response: AIResponse | None,
        error: AIError | None,
    ) -> AIInteractionLog:
        session = self._sessions.get(trace.request.session_id)
        if error is not None:
            trace.step("error", f"{error.code}: {error.message}")
        return AIInteractionLog(
            session_id=trace.request.session_id,
            model_type=ModelType(provider.kind),
            model_info=provider.model_info().to_dict(),
            user_message=trace.request.message,
            system_prompt=trace.system_prompt,
            context={
                **trace.request.context,
                "provider": trace.provider_name or self._active,
                "history_turns": len(session) if session else 0,
                "tool_rounds": trace.rounds,
            },
            ai_response=response.response if response else "",
            actions=[r.to_dict() for r in trace.records],
            reasoning=trace.reasoning(),
            response_time_ms=int((time.perf_counter() - trace.started) * 1000),
            token_count=trace.token_count,
            error=error.message if error else None,
            error_code=error.code if error else None,
            tool_executions=[
                ToolExecutionLog(
                    tool_name=r.call.name,
                    arguments=r.call.arguments,
                    result=r.result.data,
                    execution_time_ms=r.result.execution_time_ms,
                    success=r.result.success,
                    error=r.result.error,
                )
                for r in trace.records
            ],
        )

    async def flush_logs(self) -> None:
        """Wait for background audit writes to finish."""
        while self._log_tasks:
            await asyncio.gather(*list(self._log_tasks))

    def _require_logger(self) -> InteractionLogger:
        if self.interaction_logger is None:
            raise AIError.internal("Interaction logging is not configured", code="LOGGING_DISABLED")
        return self.interaction_logger

    async def get_interaction_logs(self, filters: LogFilter | None = None) -> list[AIInteractionLog]:
        return await self._require_logger().get_interaction_logs(filters)

    async def update_logging_config(self, partial: dict[str, Any]) -> LoggingConfig:
        return await self._require_logger().update_logging_config(partial)

    async def cleanup_old_logs(self) -> int:
        return await self._require_logger().cleanup_old_logs()

    async def get_session_tool_statistics(self, session_id: str) -> SessionToolStats:
        return await self._require_logger().get_session_tool_statistics(session_id)

    # ── sessions & status ─────────────────────────────────────────────

    def _get_or_create_session(self, session_id: str) -> ConversationSession:
        session = self._sessions.get(session_id)
        if session is None:
            session = ConversationSession(session_id, self.config.max_session_turns)
            self._sessions[session_id] = session
        return session

    def get_session(self, session_id: str) -> ConversationSession | None:
        return self._sessions.get(session_id)

    def clear_conversation(self, session_id: str | None = None) -> None:
        """Drop turn history for one session, or for all sessions."""
        if session_id is None:
            self._sessions.clear()
            logger.debug("Cleared all conversations")
        elif self._sessions.pop(session_id, None) is not None:
            logger.debug("Cleared conversation %s", session_id)

    def get_model_status(self) -> ProviderStatus:
        if self._active is None:
            return ProviderStatus(ProviderState.UNAVAILABLE, "No active provider")
        return self._providers[self._active].get_status()

    def get_model_info(self) -> ModelInfo | None:
        if self._active is None:
            return None
        return self._providers[self._active].model_info()

    def get_status(self) -> dict[str, Any]:
        active = self._providers.get(self._active) if self._active else None
        return {
            "active_provider": self._active,
            "ready": bool(active and active.is_ready()),
            "providers": {name: p.get_status().to_dict() for name, p in self._providers.items()},
            "session_count": len(self._sessions),
            "in_flight": sum(self._in_flight.values()),
        }

    async def aclose(self) -> None:
        """Flush pending audit writes and release every provider."""
        await self.flush_logs()
        for name, provider in self._providers.items():
            if provider.get_status().state == ProviderState.UNINITIALIZED:
                continue
            try:
                await provider.cleanup()
            except Exception as e:
                logger.warning("Cleanup of provider %s failed: %s", name, e)
        self._active = None
