"""Tests for per-session conversation state."""

from __future__ import annotations

from taskpilot.agent.session import ConversationSession, SessionState, Turn


class TestTurn:
    def test_render_roles(self):
        assert Turn("user", "hi").render() == "User: hi"
        assert Turn("assistant", "hello").render() == "Assistant: hello"
        assert Turn("tool", '{"count": 0}', name="get_tasks").render() == (
            'Tool result (get_tasks): {"count": 0}'
        )


class TestConversationSession:
    def test_new_session_is_idle(self):
        session = ConversationSession("s1")
        assert session.state is SessionState.IDLE
        assert session.last_outcome is None
        assert len(session) == 0

    def test_commit_appends_in_order(self):
        session = ConversationSession("s1")
        session.commit([Turn("user", "one"), Turn("assistant", "two")])
        session.commit([Turn("user", "three")])
        assert [t.content for t in session.turns] == ["one", "two", "three"]
        assert session.completed_requests == 2

    def test_oldest_turns_dropped_at_cap(self):
        session = ConversationSession("s1", max_turns=3)
        session.commit([Turn("user", str(i)) for i in range(5)])
        assert [t.content for t in session.turns] == ["2", "3", "4"]

    def test_render_prompt_includes_pending(self):
        session = ConversationSession("s1")
        session.commit([Turn("user", "hi"), Turn("assistant", "hello")])
        prompt = session.render_prompt([Turn("user", "list tasks")])
        assert prompt == "User: hi\n\nAssistant: hello\n\nUser: list tasks\n\nAssistant:"
        # pending turns are not committed by rendering
        assert len(session) == 2

    def test_render_prompt_drops_oldest_history_to_fit(self):
        session = ConversationSession("s1")
        session.commit([Turn("user", "a" * 50), Turn("assistant", "ok")])
        pending = [Turn("user", "next")]
        full = session.render_prompt(pending)

        assert session.render_prompt(pending, max_chars=len(full)) == full
        trimmed = session.render_prompt(pending, max_chars=len(full) - 1)
        assert trimmed == "Assistant: ok\n\nUser: next\n\nAssistant:"
        # pending turns survive even when they alone exceed the budget
        assert session.render_prompt(pending, max_chars=5) == "User: next\n\nAssistant:"
        assert len(session) == 2

    def test_finish_returns_to_idle(self):
        session = ConversationSession("s1")
        session.state = SessionState.EXECUTING_TOOLS
        session.finish(SessionState.FAILED)
        assert session.state is SessionState.IDLE
        assert session.last_outcome is SessionState.FAILED

    def test_clear(self):
        session = ConversationSession("s1")
        session.commit([Turn("user", "hi")])
        session.clear()
        assert len(session) == 0

    def test_to_dict(self):
        session = ConversationSession("s1")
        session.commit([Turn("user", "hi")])
        data = session.to_dict()
        assert data["session_id"] == "s1"
        assert data["turns"] == 1
        assert data["state"] == "idle"
