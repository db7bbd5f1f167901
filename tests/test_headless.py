"""Tests for headless mode."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from taskpilot.agent.service import ServiceManager
from taskpilot.errors import AIError, ErrorKind
from taskpilot.headless import run_headless
from taskpilot.inference.engine import (
    TOOL_CALLING,
    Generation,
    ModelInfo,
    ProviderState,
    ProviderStatus,
)
from taskpilot.tools.backend import InMemoryTaskBackend
from taskpilot.tools.registry import create_default_registry


def _make_manager(responses: list, init_error: Exception | None = None) -> tuple[ServiceManager, MagicMock]:
    """Create a manager with a mocked cloud provider."""
    provider = MagicMock()
    provider.kind = "cloud"
    provider.max_prompt_chars = 100_000
    provider.is_ready.return_value = init_error is None
    provider.get_status.return_value = ProviderStatus(
        ProviderState.READY if init_error is None else ProviderState.UNAVAILABLE
    )
    provider.get_capabilities.return_value = {"text_generation", TOOL_CALLING}
    provider.model_info.return_value = ModelInfo(id="gemini", name="Gemini", provider="gemini")
    provider.initialize = AsyncMock(side_effect=init_error)
    provider.cleanup = AsyncMock()
    provider.generate = AsyncMock(side_effect=responses)

    manager = ServiceManager(create_default_registry(InMemoryTaskBackend()))
    manager.register_provider("cloud", provider)
    return manager, provider


# ─── Basic operation ─────────────────────────────────────────────────────────


class TestHeadlessBasic:
    async def test_text_response_to_stdout(self, capsys):
        manager, provider = _make_manager([Generation(text="Hello from headless!", token_count=9)])
        code = await run_headless(manager, "cloud", "hi")
        assert code == 0
        captured = capsys.readouterr()
        assert "Hello from headless!" in captured.out
        assert "[stats]" in captured.err
        assert "tokens=9" in captured.err
        provider.cleanup.assert_awaited_once()

    async def test_tool_activity_to_stderr(self, capsys):
        manager, _ = _make_manager([
            Generation(text='<tool_call>{"name": "create_task", "arguments": {"title": "Ship it"}}</tool_call>'),
            Generation(text="Added 'Ship it'."),
        ])
        code = await run_headless(manager, "cloud", "add ship it")
        assert code == 0
        captured = capsys.readouterr()
        assert captured.out.strip() == "Added 'Ship it'."
        assert "[tool] create_task ok" in captured.err


# ─── Errors ──────────────────────────────────────────────────────────────────


class TestHeadlessErrors:
    async def test_generation_error_returns_exit_code_1(self, capsys):
        manager, provider = _make_manager([AIError.timeout("slow")])
        code = await run_headless(manager, "cloud", "fail")
        assert code == 1
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "[error]" in captured.err
        provider.cleanup.assert_awaited_once()

    async def test_provider_unavailable(self, capsys):
        error = AIError(ErrorKind.PROVIDER_UNAVAILABLE, "API key missing", code="API_KEY_MISSING")
        manager, provider = _make_manager([], init_error=error)
        code = await run_headless(manager, "cloud", "hi")
        assert code == 1
        assert "API key missing" in capsys.readouterr().err
        provider.generate.assert_not_awaited()

    async def test_unknown_provider(self, capsys):
        manager, _ = _make_manager([])
        code = await run_headless(manager, "local", "hi")
        assert code == 1
        assert "Unknown provider" in capsys.readouterr().err
