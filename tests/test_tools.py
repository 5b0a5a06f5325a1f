"""Unit tests for the tool registry and dispatcher."""

from __future__ import annotations

import pytest

from steward.agent.tools import ToolRegistry, skill, to_output
from steward.shared.types import ImageData, RichResult, TextResult, ToolCall, ToolDefinition


@skill(name="double", description="Double a number", parameters={"val": {"type": "integer"}})
def double(val: int):
    return val * 2


@skill(
    name="greet",
    description="Greet someone",
    parameters={
        "name": {"type": "string"},
        "greeting": {"type": "string", "default": "hello"},
    },
)
async def greet(name: str, greeting: str = "hello"):
    return f"{greeting} {name}"


@skill(name="explode", description="Always fails", parameters={})
async def explode():
    raise RuntimeError("kaboom")


@skill(name="whoami", description="Uses an injected dependency", parameters={})
async def whoami(*, session_manager=None):
    return f"manager={session_manager}"


class FakeProvider:
    name = "mcp"

    def __init__(self, tools: list[str]):
        self._tools = tools
        self.calls: list[tuple[str, dict]] = []

    def list_tools(self) -> list[ToolDefinition]:
        return [
            ToolDefinition(
                name=t,
                description=f"external {t}",
                parameters={"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
            )
            for t in self._tools
        ]

    async def call_tool(self, name: str, arguments: dict):
        self.calls.append((name, arguments))
        return RichResult(text=f"{name}:{arguments['q']}", images=[ImageData(mime_type="image/png", data="AA")])


def _call(name: str, /, **args) -> ToolCall:
    return ToolCall(id="call_1", name=name, args=args)


class TestSkillDefinitions:
    def test_required_params_exclude_defaults(self):
        registry = ToolRegistry()
        registry.register_skill(greet)
        (definition,) = registry.get_tool_definitions()
        assert definition.name == "greet"
        assert definition.parameters["required"] == ["name"]
        assert "default" not in definition.parameters["properties"]["greeting"]

    def test_undecorated_function_rejected(self):
        def plain():
            pass

        with pytest.raises(ValueError, match="not decorated"):
            ToolRegistry().register_skill(plain)

    def test_duplicate_name_rejected(self):
        registry = ToolRegistry()
        registry.register_skill(double)
        with pytest.raises(ValueError, match="already registered"):
            registry.register_skill(double)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sync_skill(self):
        registry = ToolRegistry()
        registry.register_skill(double)
        assert await registry.dispatch(_call("double", val=5)) == TextResult(text="10")

    @pytest.mark.asyncio
    async def test_async_skill_with_default(self):
        registry = ToolRegistry()
        registry.register_skill(greet)
        result = await registry.dispatch(_call("greet", name="world"))
        assert result.text == "hello world"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_data(self):
        result = await ToolRegistry().dispatch(_call("missing"))
        assert result == TextResult(text="Unknown tool: missing")

    @pytest.mark.asyncio
    async def test_missing_argument_is_data(self):
        registry = ToolRegistry()
        registry.register_skill(greet)
        result = await registry.dispatch(_call("greet"))
        assert result.text == "Invalid arguments for greet: missing name"

    @pytest.mark.asyncio
    async def test_exception_is_data(self):
        registry = ToolRegistry()
        registry.register_skill(explode)
        result = await registry.dispatch(_call("explode"))
        assert result.text == "Tool error: kaboom"

    @pytest.mark.asyncio
    async def test_unexpected_argument_is_data(self):
        registry = ToolRegistry()
        registry.register_skill(double)
        result = await registry.dispatch(_call("double", val=1, bogus=2))
        assert result.text.startswith("Tool error:")

    @pytest.mark.asyncio
    async def test_dependency_injection(self):
        registry = ToolRegistry(session_manager="SM")
        registry.register_skill(whoami)
        result = await registry.dispatch(_call("whoami"))
        assert result.text == "manager=SM"

    @pytest.mark.asyncio
    async def test_injection_absent_dependency_is_none(self):
        registry = ToolRegistry()
        registry.register_skill(whoami)
        assert (await registry.dispatch(_call("whoami"))).text == "manager=None"

    @pytest.mark.asyncio
    async def test_provide_after_construction(self):
        registry = ToolRegistry()
        registry.register_skill(whoami)
        registry.provide(session_manager="late")
        assert (await registry.dispatch(_call("whoami"))).text == "manager=late"


class TestProviders:
    @pytest.mark.asyncio
    async def test_provider_tools_dispatch_by_name(self):
        registry = ToolRegistry()
        provider = FakeProvider(["files__read", "files__write"])
        assert registry.register_provider(provider) == 2
        assert registry.provider_of("files__read") == "mcp"

        result = await registry.dispatch(_call("files__read", q="x"))
        assert isinstance(result, RichResult)
        assert result.text == "files__read:x"
        assert provider.calls == [("files__read", {"q": "x"})]

    @pytest.mark.asyncio
    async def test_provider_required_args_enforced(self):
        registry = ToolRegistry()
        registry.register_provider(FakeProvider(["files__read"]))
        result = await registry.dispatch(_call("files__read"))
        assert result.text == "Invalid arguments for files__read: missing q"

    def test_collision_with_builtin_rejected(self):
        registry = ToolRegistry()
        registry.register_skill(double)
        with pytest.raises(ValueError):
            registry.register_provider(FakeProvider(["double"]))

    def test_unregister_provider(self):
        registry = ToolRegistry()
        registry.register_skill(double)
        registry.register_provider(FakeProvider(["a__b"]))
        registry.unregister_provider("mcp")
        assert registry.list_tools() == ["double"]


class TestToOutput:
    def test_string(self):
        assert to_output("hi") == TextResult(text="hi")

    def test_none(self):
        assert to_output(None).text == "(no output)"

    def test_dict_serialized(self):
        assert to_output({"a": 1}).text == '{"a": 1}'

    def test_tagged_dict(self):
        out = to_output({"kind": "rich", "text": "t", "images": [{"mime_type": "image/png", "data": "x"}]})
        assert isinstance(out, RichResult)
        assert out.images[0].data == "x"

    def test_sanitizes_invisible_characters(self):
        assert to_output("a\u200bb").text == "ab"
