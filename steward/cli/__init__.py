"""CLI package for steward.

Re-exports the entry point and config loader used by pyproject.toml and tests.
"""

from steward.cli.config import StewardConfig, load_config  # noqa: F401
from steward.cli.main import cli  # noqa: F401
