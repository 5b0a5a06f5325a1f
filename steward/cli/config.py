"""Configuration loading: YAML file, ``.env`` file, environment overrides."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("cli")

# ── Path constants ──────────────────────────────────────────

DEFAULT_CONFIG_FILE = Path("steward.yaml")
DEFAULT_STATE_DIR = Path("~/.steward")
ENV_FILE = Path(".env")

TRANSCRIPT_FILENAME = "messages.jsonl"
SESSIONS_FILE = Path("terminals") / "sessions.json"
MEMORY_DIRNAME = "workspace"

# Environment variable → dotted config path.
_ENV_OVERRIDES = {
    "STEWARD_NAME": ("name",),
    "STEWARD_STATE_DIR": ("state_dir",),
    "STEWARD_BACKEND_URL": ("backend", "url"),
    "STEWARD_BACKEND_TOKEN": ("backend", "token"),
    "STEWARD_MODEL": ("backend", "model"),
}


# ── Models ──────────────────────────────────────────────────


class BackendConfig(BaseModel):
    url: str = "http://localhost:8080"
    token: str = ""
    model: str = ""
    timeout: float = 120
    max_tokens: int = 8192


class ContextConfig(BaseModel):
    max_messages: int = Field(100, ge=2)
    max_message_chars: int = Field(20_000, gt=0)
    max_request_chars: int = Field(400_000, gt=0)
    min_window: int = Field(4, ge=1)


class ProcessConfig(BaseModel):
    max_output_chars: int = Field(100_000, gt=0)
    persisted_output_chars: int = Field(20_000, gt=0)
    grace_seconds: float = Field(5, gt=0)
    default_timeout_seconds: float = Field(300, gt=0)
    shell: str = "bash"


class WakeConfig(BaseModel):
    mode: Literal["autonomous", "periodic"] = "autonomous"
    interval_minutes: Optional[float] = None
    max_interval_minutes: float = 60
    backoff_multiplier: float = Field(1.5, ge=1)
    max_turns_per_wake: int = Field(200, ge=1)


class MCPServerConfig(BaseModel):
    name: str
    command: str
    args: list[str] = []
    env: dict[str, str] = {}

    @field_validator("name")
    @classmethod
    def _no_separator(cls, v: str) -> str:
        if "__" in v:
            raise ValueError("MCP server names may not contain '__'")
        return v


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(8400, ge=0, le=65535)


class StewardConfig(BaseModel):
    name: str = "steward"
    state_dir: Path = DEFAULT_STATE_DIR
    instructions: str = ""
    backend: BackendConfig = Field(default_factory=BackendConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    processes: ProcessConfig = Field(default_factory=ProcessConfig)
    wake: WakeConfig = Field(default_factory=WakeConfig)
    mcp_servers: list[MCPServerConfig] = []
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("state_dir")
    @classmethod
    def _expand_state_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()

    @property
    def transcript_path(self) -> Path:
        return self.state_dir / TRANSCRIPT_FILENAME

    @property
    def sessions_path(self) -> Path:
        return self.state_dir / SESSIONS_FILE

    @property
    def memory_path(self) -> Path:
        return self.state_dir / MEMORY_DIRNAME


# ── Loading ─────────────────────────────────────────────────


def _apply_env_overrides(data: dict) -> dict:
    for var, path in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if not value:
            continue
        target = data
        for key in path[:-1]:
            section = target.get(key)
            if not isinstance(section, dict):
                section = {}
                target[key] = section
            target = section
        target[path[-1]] = value
    return data


def resolve_config_path(config_path: str | Path | None = None) -> Path:
    if config_path:
        return Path(config_path)
    env_path = os.environ.get("STEWARD_CONFIG")
    return Path(env_path) if env_path else DEFAULT_CONFIG_FILE


def load_config(config_path: str | Path | None = None, env_file: str | Path | None = None) -> StewardConfig:
    """Load configuration. A missing YAML file means all defaults.

    Raises ``pydantic.ValidationError`` for invalid values and
    ``yaml.YAMLError`` for unparseable files.
    """
    load_dotenv(env_file or ENV_FILE)
    path = resolve_config_path(config_path)
    data: dict = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: top level must be a mapping")
    else:
        logger.debug(f"No config file at {path}, using defaults")
    return StewardConfig.model_validate(_apply_env_overrides(data))
