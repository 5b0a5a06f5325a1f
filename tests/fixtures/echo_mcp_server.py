"""Small MCP server used by the end-to-end tests.

Tools:
  - echo: returns the text unchanged
  - word_count: counts whitespace-separated words
  - pixel: returns a one-pixel PNG
  - fail: always errors
  - env_value: reads an environment variable

Run directly: python tests/fixtures/echo_mcp_server.py
"""

import base64
import os

from mcp.server.fastmcp import FastMCP, Image

server = FastMCP("steward-test-server")

_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@server.tool()
def echo(text: str) -> str:
    """Return the input text."""
    return text


@server.tool()
def word_count(text: str) -> str:
    """Count the words in a text."""
    return str(len(text.split()))


@server.tool()
def pixel() -> Image:
    """Return a tiny PNG image."""
    return Image(data=_PIXEL, format="png")


@server.tool()
def fail() -> str:
    """Raise an error."""
    raise ValueError("deliberate failure")


@server.tool()
def env_value(name: str) -> str:
    """Return the value of an environment variable, or <unset>."""
    return os.environ.get(name, "<unset>")


if __name__ == "__main__":
    server.run(transport="stdio")
