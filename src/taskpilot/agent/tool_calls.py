"""Extract ``<tool_call>`` directives from model output.

Models emit calls as::

    <tool_call>
    {"name": "create_task", "arguments": {"title": "Write report"}}
    </tool_call>

If any block in a reply is malformed the whole reply is treated as plain
text with no tool calls.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Regex to match <tool_call>...</tool_call> blocks
_TOOL_CALL_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)
_OPEN_TAG = "<tool_call>"


@dataclass
class ToolCall:
    name: str
    arguments: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ParsedReply:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


def _parse_block(body: str) -> ToolCall | None:
    try:
        parsed = json.loads(body.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("name"), str):
        return None
    arguments = parsed.get("arguments", {})
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            return None
    if not isinstance(arguments, dict) or not parsed["name"]:
        return None
    return ToolCall(name=parsed["name"], arguments=arguments)


def parse_tool_calls(text: str) -> ParsedReply:
    """Split a model reply into prose and tool calls."""
    if _OPEN_TAG not in text:
        return ParsedReply(text.strip())

    blocks = _TOOL_CALL_RE.findall(text)
    if len(blocks) != text.count(_OPEN_TAG):
        logger.warning("Unterminated tool_call block in model output")
        return ParsedReply(text.strip())

    calls = []
    for body in blocks:
        call = _parse_block(body)
        if call is None:
            logger.warning("Failed to parse tool_call from content: %s", body.strip()[:200])
            return ParsedReply(text.strip())
        calls.append(call)

    return ParsedReply(_TOOL_CALL_RE.sub("", text).strip(), calls)
