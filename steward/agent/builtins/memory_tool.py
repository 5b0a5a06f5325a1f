"""Memory tools: read, write and search the agent's Markdown memory files.

``memory_files`` is injected by the tool registry.
"""

from __future__ import annotations

from steward.agent.memory import DAILY_DIR, MEMORY_FILE
from steward.agent.tools import skill

_FILE_PARAM = {
    "type": "string",
    "description": f"Path relative to the memory directory (e.g. '{MEMORY_FILE}', '{DAILY_DIR}/2025-01-15.md')",
}


def _require(memory_files):
    if memory_files is None:
        raise RuntimeError("memory files are not available")
    return memory_files


@skill(
    name="memory_read",
    description=(
        f"Read a memory file. Use '{MEMORY_FILE}' for long-term knowledge or "
        f"'{DAILY_DIR}/YYYY-MM-DD.md' for daily logs."
    ),
    parameters={"file": _FILE_PARAM},
)
def memory_read(file: str, *, memory_files=None) -> str:
    content = _require(memory_files).read(file)
    if content is None:
        return f"Memory file not found: {file}"
    return content or "(empty file)"


@skill(
    name="memory_write",
    description=(
        "Write or append to a memory file. Append new entries to daily logs; "
        f"rewrite {MEMORY_FILE} in full to keep it organized. With no file, "
        "appends a timestamped entry to today's log."
    ),
    parameters={
        "content": {"type": "string", "description": "Content to write"},
        "file": {**_FILE_PARAM, "default": None},
        "append": {
            "type": "boolean",
            "description": "Append instead of overwriting (default: false)",
            "default": False,
        },
    },
)
def memory_write(content: str, file: str | None = None, append: bool = False, *, memory_files=None) -> str:
    memory_files = _require(memory_files)
    if not file:
        return f"Appended to {memory_files.append_daily_log(content)}"
    memory_files.write(file, content, append=append)
    return f"{'Appended to' if append else 'Wrote'} {file}"


@skill(
    name="memory_search",
    description="Search all memory files by keyword. Returns the best matching files and lines.",
    parameters={
        "query": {"type": "string", "description": "Keyword or phrase to search for"},
        "max_results": {
            "type": "integer",
            "description": "Maximum files to return (default: 5)",
            "default": 5,
        },
    },
)
def memory_search(query: str, max_results: int = 5, *, memory_files=None) -> str:
    hits = _require(memory_files).search(query, max_results=max(1, int(max_results)))
    if not hits:
        return f'No results found for "{query}"'
    sections = []
    for hit in hits:
        quoted = "\n".join(f"> {line}" for line in hit["lines"])
        sections.append(f"## {hit['file']}\n{quoted}" if quoted else f"## {hit['file']}")
    return "\n\n".join(sections)
