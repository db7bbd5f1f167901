"""Tests for tool_call directive parsing."""

from __future__ import annotations

from taskpilot.agent.tool_calls import parse_tool_calls


class TestParseToolCalls:
    def test_plain_text(self):
        reply = parse_tool_calls("  You have three tasks today.  ")
        assert reply.text == "You have three tasks today."
        assert reply.tool_calls == []

    def test_single_call_stripped_from_text(self):
        text = (
            "Let me add that.\n"
            '<tool_call>\n{"name": "create_task", "arguments": {"title": "Write report"}}\n</tool_call>'
        )
        reply = parse_tool_calls(text)
        assert reply.text == "Let me add that."
        (call,) = reply.tool_calls
        assert call.name == "create_task"
        assert call.arguments == {"title": "Write report"}
        assert len(call.id) == 8

    def test_multiple_calls_in_order(self):
        text = (
            '<tool_call>{"name": "get_tasks", "arguments": {}}</tool_call>'
            '<tool_call>{"name": "start_timer", "arguments": {"task_id": "t1"}}</tool_call>'
        )
        reply = parse_tool_calls(text)
        assert [c.name for c in reply.tool_calls] == ["get_tasks", "start_timer"]
        assert reply.text == ""
        assert reply.tool_calls[0].id != reply.tool_calls[1].id

    def test_missing_arguments_default_to_empty(self):
        reply = parse_tool_calls('<tool_call>{"name": "stop_timer"}</tool_call>')
        assert reply.tool_calls[0].arguments == {}

    def test_string_arguments_decoded(self):
        reply = parse_tool_calls(
            '<tool_call>{"name": "get_tasks", "arguments": "{\\"limit\\": 5}"}</tool_call>'
        )
        assert reply.tool_calls[0].arguments == {"limit": 5}

    def test_invalid_json_yields_raw_text(self):
        text = "Sure <tool_call>{not json}</tool_call>"
        reply = parse_tool_calls(text)
        assert reply.tool_calls == []
        assert reply.text == text

    def test_one_bad_block_discards_all_calls(self):
        text = (
            '<tool_call>{"name": "get_tasks", "arguments": {}}</tool_call>'
            '<tool_call>{"arguments": {}}</tool_call>'
        )
        reply = parse_tool_calls(text)
        assert reply.tool_calls == []
        assert reply.text == text

    def test_unterminated_block(self):
        text = 'Working on it <tool_call>{"name": "get_tasks"'
        reply = parse_tool_calls(text)
        assert reply.tool_calls == []
        assert reply.text == text

    def test_non_object_arguments_rejected(self):
        reply = parse_tool_calls('<tool_call>{"name": "get_tasks", "arguments": [1]}</tool_call>')
        assert reply.tool_calls == []

    def test_to_dict(self):
        (call,) = parse_tool_calls(
            '<tool_call>{"name": "get_tasks", "arguments": {"limit": 1}}</tool_call>'
        ).tool_calls
        assert call.to_dict() == {"id": call.id, "name": "get_tasks", "arguments": {"limit": 1}}
