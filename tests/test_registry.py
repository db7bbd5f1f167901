"""Tests for the tool registry: registration, validation, permissions and dispatch."""

from __future__ import annotations

import asyncio

import pytest

from taskpilot.errors import AIError, ErrorKind
from taskpilot.tools.registry import (
    ParameterSpec,
    PermissionLevel,
    ToolDefinition,
    ToolExecutionContext,
    ToolRegistry,
    infer_permissions,
    parse_permissions,
)

READ_ONLY = frozenset({PermissionLevel.READ_ONLY})


async def _echo(**kwargs):
    return {"success": True, "echo": kwargs}


def _definition(name="echo", handler=_echo, parameters=None, permissions=None) -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description=f"The {name} tool",
        parameters=parameters
        if parameters is not None
        else {
            "text": ParameterSpec("string", "Text to echo", required=True),
            "count": ParameterSpec("number", "How many times"),
        },
        handler=handler,
        permissions=permissions,
    )


@pytest.fixture
def registry():
    return ToolRegistry()


# ─── Permissions ─────────────────────────────────────────────────────────────


class TestPermissions:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("get_tasks", PermissionLevel.READ_ONLY),
            ("create_task", PermissionLevel.MODIFY_TASKS),
            ("update_task", PermissionLevel.MODIFY_TASKS),
            ("delete_task", PermissionLevel.FULL_ACCESS),
            ("start_timer", PermissionLevel.TIMER_CONTROL),
            # the most restrictive verb wins
            ("create_or_delete", PermissionLevel.FULL_ACCESS),
        ],
    )
    def test_infer_permissions(self, name, expected):
        assert infer_permissions(name) == frozenset({expected})

    def test_parse_permissions(self):
        assert parse_permissions(["read_only", "timer_control"]) == frozenset(
            {PermissionLevel.READ_ONLY, PermissionLevel.TIMER_CONTROL}
        )
        with pytest.raises(ValueError):
            parse_permissions(["root"])

    def test_context_subset(self):
        ctx = ToolExecutionContext(permissions=READ_ONLY)
        assert ctx.allows(READ_ONLY)
        assert not ctx.allows(frozenset({PermissionLevel.MODIFY_TASKS}))

    def test_full_access_allows_everything(self):
        ctx = ToolExecutionContext(permissions=frozenset({PermissionLevel.FULL_ACCESS}))
        assert ctx.allows(frozenset({PermissionLevel.MODIFY_TASKS, PermissionLevel.TIMER_CONTROL}))


# ─── Registration ────────────────────────────────────────────────────────────


class TestRegistration:
    def test_register_and_unregister(self, registry):
        registry.register_tool(_definition())
        assert registry.has_tool("echo")
        assert registry.unregister_tool("echo") is True
        assert not registry.has_tool("echo")
        assert registry.unregister_tool("echo") is False

    def test_duplicate_rejected(self, registry):
        registry.register_tool(_definition())
        with pytest.raises(AIError) as exc_info:
            registry.register_tool(_definition())
        assert exc_info.value.kind is ErrorKind.DUPLICATE_TOOL

    def test_explicit_permissions_take_precedence(self, registry):
        schema = registry.register_tool(
            _definition(name="create_note", permissions=READ_ONLY)
        )
        assert schema.permissions == READ_ONLY

    def test_inferred_permissions_when_not_declared(self, registry):
        schema = registry.register_tool(_definition(name="update_note"))
        assert schema.permissions == frozenset({PermissionLevel.MODIFY_TASKS})

    def test_schema_and_info(self, registry):
        registry.register_tool(_definition())
        schema = registry.get_tool_schema("echo")
        assert schema.required_parameters == ["text"]
        info = registry.get_tool_info("echo")
        assert info["parameters"]["count"] == {"type": "number", "description": "How many times"}
        assert info["required_permissions"] == ["read_only"]
        assert registry.get_tool_info("missing") is None

    def test_function_schema(self, registry):
        registry.register_tool(_definition())
        (schema,) = registry.get_tool_schemas()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "echo"
        assert schema["function"]["parameters"]["required"] == ["text"]

    def test_available_tools_filtered_by_context(self, registry):
        registry.register_tool(_definition(name="get_things"))
        registry.register_tool(_definition(name="create_thing"))
        ctx = ToolExecutionContext(permissions=READ_ONLY)
        assert registry.get_available_tools(ctx) == ["get_things"]
        assert sorted(registry.get_available_tools()) == ["create_thing", "get_things"]

    def test_clear(self, registry):
        registry.register_tool(_definition(name="a"))
        registry.register_tool(_definition(name="b"))
        registry.clear()
        assert registry.get_available_tools() == []

    def test_unsupported_parameter_type(self):
        with pytest.raises(ValueError):
            ParameterSpec("date")

    def test_render_catalog(self, registry):
        registry.register_tool(_definition())
        text = registry.render_catalog()
        assert "<tool_call>" in text
        assert "## echo" in text
        assert "- text (string (required)): Text to echo" in text


# ─── Validation ──────────────────────────────────────────────────────────────


class TestValidation:
    def test_valid(self, registry):
        registry.register_tool(_definition())
        result = registry.validate_tool_arguments("echo", {"text": "hi", "count": 2})
        assert result.is_valid
        assert result.errors == []

    def test_missing_required(self, registry):
        registry.register_tool(_definition())
        result = registry.validate_tool_arguments("echo", {"count": 2})
        assert not result.is_valid
        assert "Missing required parameter: text" in result.errors

    def test_unknown_parameter_only_warns(self, registry):
        registry.register_tool(_definition())
        result = registry.validate_tool_arguments("echo", {"text": "hi", "colour": "red"})
        assert result.is_valid
        assert result.warnings == ["Unknown parameter: colour"]

    def test_null_optional_is_absent(self, registry):
        registry.register_tool(_definition())
        assert registry.validate_tool_arguments("echo", {"text": "hi", "count": None}).is_valid

    @pytest.mark.parametrize(
        "spec,value,message",
        [
            (ParameterSpec("string"), 5, "must be a string"),
            (ParameterSpec("number"), "5", "must be a valid number"),
            (ParameterSpec("number"), True, "must be a valid number"),
            (ParameterSpec("integer"), 1.5, "must be an integer"),
            (ParameterSpec("boolean"), "yes", "must be a boolean"),
            (ParameterSpec("array"), "a,b", "must be an array"),
            (ParameterSpec("object"), [1], "must be an object"),
            (ParameterSpec("string", enum=("low", "high")), "mid", "must be one of: low, high"),
        ],
    )
    def test_type_mismatch(self, registry, spec, value, message):
        registry.register_tool(_definition(parameters={"p": spec}))
        result = registry.validate_tool_arguments("echo", {"p": value})
        assert not result.is_valid
        assert message in result.errors[0]

    def test_array_items_checked(self, registry):
        spec = ParameterSpec("array", items=ParameterSpec("string"))
        registry.register_tool(_definition(parameters={"tags": spec}))
        result = registry.validate_tool_arguments("echo", {"tags": ["a", 2]})
        assert result.errors == ["Parameter 'tags[1]' must be a string"]

    def test_object_properties_checked(self, registry):
        spec = ParameterSpec(
            "object",
            properties={"id": ParameterSpec("string", required=True), "n": ParameterSpec("integer")},
        )
        registry.register_tool(_definition(parameters={"ref": spec}))
        result = registry.validate_tool_arguments("echo", {"ref": {"n": "x"}})
        assert "Parameter 'ref.n' must be an integer" in result.errors
        assert "Missing required property 'id' in parameter 'ref'" in result.errors

    def test_unknown_tool(self, registry):
        result = registry.validate_tool_arguments("missing", {})
        assert not result.is_valid


# ─── Execution ───────────────────────────────────────────────────────────────


class TestExecution:
    async def test_success_envelope(self, registry):
        registry.register_tool(_definition())
        result = await registry.execute_tool("echo", {"text": "hi"})
        assert result.success
        assert result.data == {"success": True, "echo": {"text": "hi"}}
        assert result.tool_name == "echo"
        assert result.execution_time_ms >= 0

    async def test_unknown_tool(self, registry):
        result = await registry.execute_tool("missing", {})
        assert not result.success
        assert "not found" in result.error

    async def test_invalid_arguments_never_invoke(self, registry):
        calls = []

        async def handler(**kwargs):
            calls.append(kwargs)

        registry.register_tool(_definition(handler=handler))
        result = await registry.execute_tool("echo", {"count": 1})
        assert not result.success
        assert "Missing required parameter: text" in result.error
        assert calls == []

    async def test_insufficient_permissions(self, registry):
        calls = []

        async def create_task(title):
            calls.append(title)
            return {"success": True}

        registry.register_tool(ToolDefinition(
            name="create_task",
            description="Create a task",
            parameters={"title": ParameterSpec("string", required=True)},
            handler=create_task,
            permissions=frozenset({PermissionLevel.MODIFY_TASKS}),
        ))
        ctx = ToolExecutionContext(permissions=READ_ONLY)
        result = await registry.execute_tool("create_task", {"title": "X"}, ctx)
        assert result.success is False
        assert "Insufficient permissions" in result.error
        assert calls == []

    async def test_handler_exception_wrapped(self, registry):
        async def boom(text):
            raise RuntimeError("disk on fire")

        registry.register_tool(_definition(handler=boom))
        result = await registry.execute_tool("echo", {"text": "hi"})
        assert not result.success
        assert "disk on fire" in result.error
        assert result.metadata["error_kind"] == "tool_execution_failed"

    async def test_handler_ai_error_keeps_user_message(self, registry):
        async def refuse(text):
            raise AIError.invalid_request("bad text", user_message="Try other text.")

        registry.register_tool(_definition(handler=refuse))
        result = await registry.execute_tool("echo", {"text": "hi"})
        assert not result.success
        assert result.user_message == "Try other text."

    async def test_malformed_string_output_tolerated(self, registry):
        async def raw(text):
            return "not {json"

        registry.register_tool(_definition(handler=raw))
        result = await registry.execute_tool("echo", {"text": "hi"})
        assert result.success
        assert result.data == {"data": "not {json"}
        assert result.metadata["raw_output"] is True

    async def test_json_string_output_parsed(self, registry):
        async def as_json(text):
            return '{"value": 3}'

        registry.register_tool(_definition(handler=as_json))
        result = await registry.execute_tool("echo", {"text": "hi"})
        assert result.success
        assert result.data == {"value": 3}

    async def test_structured_failure_payload(self, registry):
        async def missing(text):
            return {"success": False, "error": "Task not found: 42"}

        registry.register_tool(_definition(handler=missing))
        result = await registry.execute_tool("echo", {"text": "hi"})
        assert not result.success
        assert result.error == "Task not found: 42"
        assert result.to_message_content() == "ERROR: Task not found: 42"

    async def test_unknown_arguments_not_forwarded(self, registry):
        async def strict(text):
            return {"text": text}

        registry.register_tool(_definition(handler=strict))
        result = await registry.execute_tool("echo", {"text": "hi", "extra": 1})
        assert result.success
        assert result.data == {"text": "hi"}

    async def test_usage_stats(self, registry):
        async def flaky(text):
            if text == "bad":
                raise ValueError("nope")
            return {}

        registry.register_tool(_definition(handler=flaky))
        await registry.execute_tool("echo", {"text": "ok"})
        await registry.execute_tool("echo", {"text": "bad"})
        stats = registry.get_usage_stats("echo")
        assert stats.executions == 2
        assert stats.successes == 1
        assert stats.success_rate == 0.5

    async def test_registration_during_execution(self, registry):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(text):
            started.set()
            await release.wait()
            return {"text": text}

        registry.register_tool(_definition(handler=slow))
        task = asyncio.create_task(registry.execute_tool("echo", {"text": "hi"}))
        await started.wait()
        registry.register_tool(_definition(name="other"))
        registry.unregister_tool("echo")
        release.set()
        result = await task
        assert result.success
        assert registry.has_tool("other")
