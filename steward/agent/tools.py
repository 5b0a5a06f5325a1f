"""Tool registry and dispatcher.

Built-in tools are plain Python functions with a @skill decorator.
External tools come from providers (e.g. MCP servers) and are registered
once, under a namespaced name, against exactly one provider. Dispatch is
a single map lookup.

``dispatch`` never raises: unknown names, bad arguments and exceptions
inside a tool all come back as a TextResult the backend can read.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from pydantic import TypeAdapter

from steward.shared.types import RichResult, TextResult, ToolCall, ToolDefinition, ToolOutput
from steward.shared.utils import sanitize_for_prompt, setup_logging, truncate

logger = setup_logging("agent.tools")

_SKILL_ATTR = "__steward_skill__"
_output_adapter: TypeAdapter[ToolOutput] = TypeAdapter(ToolOutput)


def skill(name: str, description: str, parameters: dict):
    """Decorator marking a function as a built-in tool.

    ``parameters`` maps argument name to a JSON-schema fragment. Arguments
    without a ``default`` are required.
    """

    def decorator(func):
        setattr(func, _SKILL_ATTR, {
            "name": name,
            "description": description,
            "parameters": parameters,
        })
        return func

    return decorator


class ToolProvider(Protocol):
    """A source of externally defined tools."""

    name: str

    def list_tools(self) -> list[ToolDefinition]: ...

    async def call_tool(self, name: str, arguments: dict) -> ToolOutput: ...


@dataclass(frozen=True)
class RegisteredTool:
    name: str
    provider: str
    definition: ToolDefinition
    handler: Callable[[dict], Awaitable[Any]]
    required: tuple[str, ...] = ()


def to_output(value: Any) -> ToolOutput:
    """Normalize whatever a tool returned into a tagged ToolOutput."""
    if isinstance(value, (TextResult, RichResult)):
        output = value
    elif isinstance(value, str):
        output = TextResult(text=value)
    elif isinstance(value, dict) and value.get("kind") in ("text", "rich"):
        output = _output_adapter.validate_python(value)
    elif isinstance(value, (dict, list)):
        output = TextResult(text=json.dumps(value, default=str))
    elif value is None:
        output = TextResult(text="(no output)")
    else:
        output = TextResult(text=str(value))
    return output.model_copy(update={"text": sanitize_for_prompt(output.text)})


def _skill_definition(info: dict) -> tuple[ToolDefinition, tuple[str, ...]]:
    properties = {}
    required = []
    for param_name, param_info in info["parameters"].items():
        properties[param_name] = {k: v for k, v in param_info.items() if k != "default"}
        properties[param_name].setdefault("type", "string")
        if "default" not in param_info:
            required.append(param_name)
    definition = ToolDefinition(
        name=info["name"],
        description=info["description"],
        parameters={"type": "object", "properties": properties, "required": required},
    )
    return definition, tuple(required)


class ToolRegistry:
    """Maps tool names to handlers. Each name belongs to one provider.

    Keyword arguments given to the constructor are injected into skill
    functions that declare a parameter of the same name (for example
    ``session_manager`` or ``wake_control``).
    """

    def __init__(self, **dependencies: Any):
        self._tools: dict[str, RegisteredTool] = {}
        self._dependencies = dependencies

    def provide(self, **dependencies: Any) -> None:
        """Add injectable dependencies after construction."""
        self._dependencies.update(dependencies)

    def register(self, tool: RegisteredTool) -> None:
        if tool.name in self._tools:
            existing = self._tools[tool.name].provider
            raise ValueError(
                f"Tool '{tool.name}' from '{tool.provider}' is already registered by '{existing}'"
            )
        self._tools[tool.name] = tool

    def register_skill(self, func: Callable, provider: str = "builtin") -> None:
        info = getattr(func, _SKILL_ATTR, None)
        if info is None:
            raise ValueError(f"{func!r} is not decorated with @skill")
        definition, required = _skill_definition(info)
        sig = inspect.signature(func)
        injectable = [p for p in sig.parameters if p in self._dependencies or p in _INJECTABLE]

        async def handler(arguments: dict) -> Any:
            call_args = dict(arguments)
            for param in injectable:
                call_args[param] = self._dependencies.get(param)
            if inspect.iscoroutinefunction(func):
                return await func(**call_args)
            return await asyncio.get_running_loop().run_in_executor(None, lambda: func(**call_args))

        self.register(RegisteredTool(
            name=definition.name,
            provider=provider,
            definition=definition,
            handler=handler,
            required=required,
        ))

    def register_skills(self, *funcs: Callable, provider: str = "builtin") -> None:
        for func in funcs:
            self.register_skill(func, provider=provider)

    def register_provider(self, provider: ToolProvider) -> int:
        """Register every tool a provider exposes. Returns the count."""
        count = 0
        for definition in provider.list_tools():
            name = definition.name

            async def handler(arguments: dict, _name: str = name) -> Any:
                return await provider.call_tool(_name, arguments)

            self.register(RegisteredTool(
                name=name,
                provider=provider.name,
                definition=definition,
                handler=handler,
                required=tuple(definition.parameters.get("required", [])),
            ))
            count += 1
        return count

    def unregister_provider(self, provider_name: str) -> None:
        self._tools = {n: t for n, t in self._tools.items() if t.provider != provider_name}

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def provider_of(self, name: str) -> str | None:
        tool = self._tools.get(name)
        return tool.provider if tool else None

    def get_tool_definitions(self) -> list[ToolDefinition]:
        return [t.definition for t in self._tools.values()]

    async def dispatch(self, call: ToolCall) -> ToolOutput:
        """Execute one tool call. Failures come back as data."""
        tool = self._tools.get(call.name)
        if tool is None:
            return TextResult(text=f"Unknown tool: {call.name}")
        if not isinstance(call.args, dict):
            return TextResult(text=f"Invalid arguments for {call.name}: expected an object")
        missing = [p for p in tool.required if p not in call.args]
        if missing:
            return TextResult(
                text=f"Invalid arguments for {call.name}: missing {', '.join(missing)}",
            )
        try:
            return to_output(await tool.handler(call.args))
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}", extra={"extra_data": {
                "tool": call.name, "args": truncate(json.dumps(call.args, default=str), 200),
            }})
            return TextResult(text=sanitize_for_prompt(f"Tool error: {e}"))


# Dependency names a skill may declare even when no value is provided.
_INJECTABLE = frozenset({"session_manager", "wake_control", "memory_files"})
