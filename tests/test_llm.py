"""Tests for the HTTP reasoning backend and response parsing."""

from __future__ import annotations

import json

import httpx
import pytest

from steward.agent.llm import HTTPBackend, parse_response
from steward.shared.trace import TRACE_HEADER, current_trace_id
from steward.shared.types import Message, ToolDefinition


class TestParseResponse:
    def test_text_and_usage(self):
        resp = parse_response({"text": "hi", "usage": {"input_tokens": 12, "output_tokens": 3}})
        assert resp.text == "hi"
        assert resp.tool_calls is None
        assert resp.usage.input_tokens == 12
        assert resp.usage.output_tokens == 3

    def test_empty_text_is_none(self):
        assert parse_response({"text": ""}).text is None

    def test_tool_calls_with_ids(self):
        resp = parse_response({"tool_calls": [
            {"id": "c1", "name": "bash", "arguments": {"command": "ls"}},
        ]})
        assert resp.tool_calls[0].id == "c1"
        assert resp.tool_calls[0].args == {"command": "ls"}

    def test_missing_id_assigned(self):
        resp = parse_response({"tool_calls": [{"name": "bash", "args": {}}]})
        assert resp.tool_calls[0].id.startswith("call_")

    def test_json_string_arguments(self):
        resp = parse_response({"tool_calls": [{"id": "c", "name": "x", "arguments": '{"a": 1}'}]})
        assert resp.tool_calls[0].args == {"a": 1}

    def test_malformed_arguments_kept_raw(self):
        resp = parse_response({"tool_calls": [{"id": "c", "name": "x", "arguments": "{not json"}]})
        assert resp.tool_calls[0].args == {"raw": "{not json"}

    def test_non_object_arguments_wrapped(self):
        resp = parse_response({"tool_calls": [{"id": "c", "name": "x", "arguments": [1, 2]}]})
        assert resp.tool_calls[0].args == {"value": [1, 2]}

    def test_metadata_passed_through(self):
        assert parse_response({"metadata": {"sig": "abc"}}).metadata == {"sig": "abc"}

    def test_error_raises(self):
        with pytest.raises(RuntimeError, match="overloaded"):
            parse_response({"error": "overloaded"})


class TestHTTPBackend:
    @pytest.mark.asyncio
    async def test_request_body_and_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["trace"] = request.headers.get(TRACE_HEADER)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"text": "pong", "usage": {"input_tokens": 5}})

        backend = HTTPBackend(
            "http://backend/", model="m1", token="secret", max_tokens=64,
            transport=httpx.MockTransport(handler),
        )
        token = current_trace_id.set("tr_abc")
        try:
            resp = await backend.generate(
                system="sys",
                messages=[Message(role="user", text="ping")],
                tools=[ToolDefinition(name="bash", description="Run")],
            )
        finally:
            current_trace_id.reset(token)
            await backend.close()

        assert resp.text == "pong"
        assert seen["url"] == "http://backend/generate"
        assert seen["auth"] == "Bearer secret"
        assert seen["trace"] == "tr_abc"
        body = seen["body"]
        assert body["model"] == "m1"
        assert body["max_tokens"] == 64
        assert body["system"] == "sys"
        assert body["messages"] == [{"role": "user", "text": "ping"}]
        assert body["tools"][0]["name"] == "bash"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        backend = HTTPBackend(
            "http://backend", transport=httpx.MockTransport(lambda r: httpx.Response(503)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await backend.generate(system="", messages=[], tools=[])
        await backend.close()

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={})

        backend = HTTPBackend("http://backend", transport=httpx.MockTransport(handler))
        await backend.generate(system="", messages=[], tools=[])
        await backend.close()
        assert seen["auth"] is None
