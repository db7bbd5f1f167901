"""Headless (non-interactive) mode — single-shot CLI execution.

Usage: taskpilot --headless "what should I work on next?"

Response text goes to stdout (pipeable), everything else to stderr.
"""

from __future__ import annotations

import sys

from taskpilot.agent.service import AIRequest, ServiceManager
from taskpilot.errors import AIError


async def run_headless(
    manager: ServiceManager,
    provider: str,
    prompt: str,
    session_id: str = "headless",
) -> int:
    """Activate *provider*, run one prompt and print the answer.

    Returns:
        Exit code (0 = success, 1 = error).
    """
    try:
        try:
            await manager.switch_provider(provider)
        except AIError as e:
            _err(f"[error] {e.user_message} ({e.message})")
            return 1

        try:
            response = await manager.process_message(AIRequest(session_id=session_id, message=prompt))
        except AIError as e:
            _err(f"[error] {e.user_message} ({e.message})")
            return 1

        for record in response.tool_calls:
            outcome = "ok" if record.result.success else f"failed: {record.result.error}"
            _err(f"[tool] {record.call.name} {outcome} ({record.result.execution_time_ms}ms)")
        print(response.response, flush=True)
        tokens = response.metadata.get("token_count")
        _err(f"[stats] {response.metadata.get('response_time_ms', 0)}ms, tokens={tokens or '?'}")
        return 0
    finally:
        await manager.aclose()


def _err(msg: str) -> None:
    """Print a message to stderr."""
    print(msg, file=sys.stderr, flush=True)
