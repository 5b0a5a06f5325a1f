"""Memory files: the agent's durable notes on disk.

Layout under the memory directory:
  MEMORY.md              curated long-term knowledge
  memory/YYYY-MM-DD.md   daily logs, one bullet per entry

All files are plain Markdown. Compaction notices point the agent here, so
anything worth keeping across trims should be written to these files.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from datetime import datetime
from pathlib import Path

from steward.shared.utils import setup_logging, utcnow

logger = setup_logging("agent.memory")

MEMORY_FILE = "MEMORY.md"
DAILY_DIR = "memory"
MAX_FILE_CHARS = 200_000

_MEMORY_SCAFFOLD = (
    "# Long-Term Memory\n\n"
    "Durable facts, decisions and open threads. Keep this file organized.\n"
)

_STOP_WORDS = frozenset(
    "a an and are as at be by for from has have i in is it of on or that the to was with".split()
)


def _tokenize(text: str) -> list[str]:
    return [w for w in re.findall(r"[a-z0-9]+", text.lower()) if len(w) > 1 and w not in _STOP_WORDS]


def _bm25(query: list[str], docs: list[list[str]], k1: float = 1.5, b: float = 0.75) -> list[float]:
    """Okapi BM25 score of *query* against each tokenized document."""
    n = len(docs)
    avg_len = sum(len(d) for d in docs) / n
    df = Counter(term for d in docs for term in set(d))
    scores = []
    for doc in docs:
        tf = Counter(doc)
        score = 0.0
        for term in query:
            if term not in df:
                continue
            idf = math.log((n - df[term] + 0.5) / (df[term] + 0.5) + 1.0)
            freq = tf[term]
            score += idf * freq * (k1 + 1) / (freq + k1 * (1 - b + b * len(doc) / avg_len))
        scores.append(score)
    return scores


def _matching_lines(content: str, query: list[str], limit: int = 5) -> list[str]:
    """Lines mentioning any query term, in file order."""
    hits = []
    for line in content.splitlines():
        lowered = line.lower()
        if line.strip() and any(term in lowered for term in query):
            hits.append(line.strip())
            if len(hits) >= limit:
                break
    return hits


class MemoryFiles:
    """Reads, writes and searches Markdown memory files under one root."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def ensure(self) -> None:
        """Create the directory layout and a starter MEMORY.md if missing."""
        (self.root / DAILY_DIR).mkdir(parents=True, exist_ok=True)
        memory = self.root / MEMORY_FILE
        if not memory.exists():
            memory.write_text(_MEMORY_SCAFFOLD, encoding="utf-8")
            logger.info(f"Created {memory}")

    def resolve(self, relative_path: str) -> Path:
        """Map a relative path to a file under the root.

        Raises ValueError for absolute paths or paths escaping the root.
        """
        if not relative_path or Path(relative_path).is_absolute():
            raise ValueError(f"Memory paths must be relative: {relative_path!r}")
        root = self.root.resolve()
        path = (root / relative_path).resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Path escapes the memory directory: {relative_path}")
        return path

    def read(self, relative_path: str) -> str | None:
        path = self.resolve(relative_path)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")[:MAX_FILE_CHARS]

    def write(self, relative_path: str, content: str, append: bool = False) -> Path:
        path = self.resolve(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if append:
            with path.open("a", encoding="utf-8") as f:
                f.write(f"\n{content}")
        else:
            path.write_text(content, encoding="utf-8")
        logger.info(f"{'Appended to' if append else 'Wrote'} memory file {relative_path}")
        return path

    def daily_log_path(self, now: datetime | None = None) -> str:
        return f"{DAILY_DIR}/{(now or utcnow()).date().isoformat()}.md"

    def append_daily_log(self, entry: str, now: datetime | None = None) -> str:
        """Add a timestamped bullet to today's log. Returns its relative path."""
        now = now or utcnow()
        relative = self.daily_log_path(now)
        path = self.resolve(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(f"- [{now.strftime('%H:%M')}] {entry.strip()}\n")
        return relative

    def list_files(self) -> list[str]:
        if not self.root.exists():
            return []
        return sorted(str(p.relative_to(self.root)) for p in self.root.rglob("*.md"))

    def search(self, query: str, max_results: int = 5) -> list[dict]:
        """Rank memory files against *query*.

        Returns ``[{"file", "score", "lines"}]``, best match first, where
        ``lines`` are up to five lines mentioning a query term.
        """
        terms = _tokenize(query)
        if not terms:
            return []
        files: list[tuple[str, str]] = []
        for relative in self.list_files():
            content = (self.root / relative).read_text(encoding="utf-8", errors="replace")[:MAX_FILE_CHARS]
            if content.strip():
                files.append((relative, content))
        if not files:
            return []

        scores = _bm25(terms, [_tokenize(content) for _, content in files])
        ranked = sorted(zip(scores, files), key=lambda pair: pair[0], reverse=True)
        return [
            {"file": relative, "score": round(score, 3), "lines": _matching_lines(content, terms)}
            for score, (relative, content) in ranked[:max_results]
            if score > 0
        ]
