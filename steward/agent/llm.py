"""Reasoning backend interface.

The turn engine only needs ``generate(system, messages, tools)``. Any
object with that coroutine is a backend; ``HTTPBackend`` speaks a neutral
JSON contract over httpx so a provider-specific gateway can sit behind it.

Request body::

    {"model": ..., "max_tokens": ..., "system": "...",
     "messages": [Message, ...], "tools": [ToolDefinition, ...]}

Response body::

    {"text": "...", "tool_calls": [{"id": ..., "name": ..., "arguments": {...}}],
     "usage": {"input_tokens": 0, "output_tokens": 0}, "metadata": ...}

Tool calls without an id get one assigned here, so every call in the
transcript is addressable by its result.
"""

from __future__ import annotations

import json
from typing import Protocol

import httpx

from steward.shared.trace import trace_headers
from steward.shared.types import Message, ModelResponse, ToolCall, ToolDefinition, Usage
from steward.shared.utils import generate_id, setup_logging

logger = setup_logging("agent.llm")


class BackendUnavailableError(RuntimeError):
    """The backend kept failing past the retry bound."""


class ReasoningBackend(Protocol):
    async def generate(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolDefinition],
    ) -> ModelResponse: ...


def parse_response(data: dict) -> ModelResponse:
    """Turn a backend JSON body into a ModelResponse."""
    if data.get("error"):
        raise RuntimeError(f"Backend call failed: {data['error']}")

    tool_calls = []
    for tc in data.get("tool_calls") or []:
        args = tc.get("arguments", tc.get("args", {}))
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError:
                logger.warning(f"Malformed tool arguments for {tc['name']}, using raw string")
                args = {"raw": args}
        if not isinstance(args, dict):
            args = {"value": args}
        tool_calls.append(ToolCall(
            id=tc.get("id") or generate_id("call"),
            name=tc["name"],
            args=args,
        ))

    usage = data.get("usage") or {}
    return ModelResponse(
        text=data.get("text") or None,
        tool_calls=tool_calls or None,
        usage=Usage(
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
        ),
        metadata=data.get("metadata"),
    )


class HTTPBackend:
    """Reasoning backend reached over HTTP."""

    def __init__(
        self,
        url: str,
        model: str = "",
        token: str = "",
        timeout: float = 120,
        max_tokens: int = 8192,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers: dict[str, str] = {}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=headers, transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def generate(
        self,
        system: str,
        messages: list[Message],
        tools: list[ToolDefinition],
    ) -> ModelResponse:
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": [m.model_dump(mode="json", exclude_none=True) for m in messages],
            "tools": [t.model_dump(mode="json") for t in tools],
        }
        client = await self._get_client()
        response = await client.post(
            f"{self.url}/generate", json=body, headers=trace_headers(),
        )
        response.raise_for_status()
        return parse_response(response.json())
