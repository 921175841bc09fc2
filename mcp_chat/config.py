import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

load_dotenv()

log = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "mcp_config.json"
MAX_CHAT_TURNS = 30


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------- LLM ----------
@dataclass
class LLMConfig:
    backend: str = "anthropic"          # "openai" | "anthropic"
    openai_model: str = "gpt-4o"
    openai_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    anthropic_api_key: Optional[str] = None
    max_tokens: int = 1000


# ---------- MCP ----------
@dataclass
class MCPConfig:
    config_path: Path = Path(DEFAULT_CONFIG_PATH)
    start_timeout_s: float = 30.0
    init_timeout_s: float = 30.0
    request_timeout_s: float = 45.0


# ---------- Orchestrator ----------
@dataclass
class LoopConfig:
    max_chat_turns: int = MAX_CHAT_TURNS
    max_tool_steps: int = 10
    flatten_tool_results: bool = True


# ---------- AppConfig ----------
@dataclass
class AppConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    mcp: MCPConfig = field(default_factory=MCPConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build the config from the process environment (and `.env`)."""
        llm = LLMConfig(
            backend=os.getenv("LLM_BACKEND", os.getenv("LLM", "anthropic")).strip().lower(),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "1000")),
        )
        mcp = MCPConfig(
            config_path=Path(os.getenv("MCP_CONFIG_PATH", DEFAULT_CONFIG_PATH)),
            start_timeout_s=float(os.getenv("MCP_START_TIMEOUT", "30")),
            init_timeout_s=float(os.getenv("MCP_INIT_TIMEOUT", "30")),
            request_timeout_s=float(os.getenv("MCP_CALL_TIMEOUT", "45")),
        )
        loop = LoopConfig(
            max_chat_turns=int(os.getenv("MAX_CHAT_TURNS", str(MAX_CHAT_TURNS))),
            max_tool_steps=int(os.getenv("MAX_TOOL_STEPS", "10")),
            flatten_tool_results=_env_bool("FLATTEN_TOOL_RESULTS", True),
        )
        return cls(
            llm=llm,
            mcp=mcp,
            loop=loop,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=_env_bool("LOG_JSON", True),
        )


# ---------- server descriptors ----------
class ServerDescriptor(BaseModel):
    """One entry of the `mcpServers` mapping. Read-only once loaded."""

    model_config = ConfigDict(frozen=True)

    server_id: str
    command: str = Field(..., min_length=1)
    args: list[str]
    env: Optional[Dict[str, str]] = None

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        # JSON configs often carry ports and flags as numbers or booleans
        if not isinstance(v, Mapping):
            return v
        out = {}
        for key, val in v.items():
            if isinstance(val, bool):
                val = "true" if val else "false"
            elif isinstance(val, (int, float)):
                val = str(val)
            out[key] = val
        return out


def parse_server_config(raw: Any) -> Dict[str, ServerDescriptor]:
    """Validate a decoded config document.

    File-level problems raise ConfigError; a bad individual entry is logged
    and skipped so the remaining servers can still be used.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError("Invalid MCP configuration: top-level value must be an object")
    servers = raw.get("mcpServers")
    if not isinstance(servers, Mapping):
        raise ConfigError("Invalid MCP configuration: missing or invalid mcpServers object")
    if not servers:
        raise ConfigError("No MCP servers defined in configuration file")

    out: Dict[str, ServerDescriptor] = {}
    for server_id, entry in servers.items():
        if not isinstance(entry, Mapping):
            log.warning("server_config_invalid", server_id=server_id, reason="entry is not an object")
            continue
        try:
            out[server_id] = ServerDescriptor(server_id=server_id, **entry)
        except (ValidationError, TypeError) as e:
            log.warning("server_config_invalid", server_id=server_id, reason=str(e))
    return out


def load_server_config(path: Path | str | None = None) -> Dict[str, ServerDescriptor]:
    p = Path(path or os.getenv("MCP_CONFIG_PATH", DEFAULT_CONFIG_PATH))
    if not p.exists():
        raise ConfigError(f"MCP configuration file not found at: {p}")
    try:
        raw = json.loads(p.read_text("utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse MCP configuration file: {e}") from e
    return parse_server_config(raw)
