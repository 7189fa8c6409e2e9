"""Configuration management for toolpipe."""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from dotenv import load_dotenv

from .logger import get_logger
from .mcp_client import MCPServerConfig
from .permissions import DEFAULT_PERMISSION_MODE, parse_permission_mode

log = get_logger("config")

DEFAULT_MODEL = "gpt-4o-mini"
API_FORMATS = ("openai", "anthropic")


def get_global_config_path() -> Path:
    """Get path to global config: ~/.toolpipe.json"""
    return Path.home() / ".toolpipe.json"


def get_workspace_config_path(workspace: Optional[Path] = None) -> Path:
    """Get path to workspace config: workspace/.toolpipe/config.json"""
    ws = workspace or Path.cwd()
    return ws / ".toolpipe" / "config.json"


def load_json_config(path: Path) -> dict:
    """Load config from JSON file if it exists."""
    if path.exists():
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, IOError) as e:
            log.warning("Ignoring unreadable config %s: %s", path, e)
    return {}


def parse_mcp_servers(raw: Dict[str, Any]) -> Dict[str, MCPServerConfig]:
    """Build MCPServerConfig entries from the ``mcp_servers`` JSON object.

    Each entry looks like ``{"command": "...", "args": [...], "env": {...},
    "required": false}``.
    """
    servers = {}
    for name, entry in (raw or {}).items():
        if not isinstance(entry, dict) or not entry.get("command"):
            raise ValueError(f"MCP server '{name}' needs a 'command'")
        servers[name] = MCPServerConfig(
            command=str(entry["command"]),
            args=tuple(str(a) for a in entry.get("args", [])),
            env={str(k): str(v) for k, v in (entry.get("env") or {}).items()},
            required=bool(entry.get("required", False)),
        )
    return servers


@dataclass
class Config:
    """Configuration for the assistant core."""

    api_url: str = ""
    api_key: str = ""
    api_format: str = "openai"
    model: str = DEFAULT_MODEL
    max_tokens: int = 8192
    temperature: float = 0.7
    workspace_path: Path = field(default_factory=lambda: Path.cwd())
    permission_mode: str = DEFAULT_PERMISSION_MODE.value
    max_turns: int = 25
    request_timeout: float = 30.0
    handshake_timeout: float = 30.0
    undo_limit: int = 50
    mcp_servers: Dict[str, MCPServerConfig] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], workspace: Optional[Path] = None) -> "Config":
        return cls(
            api_url=data.get("api_url", ""),
            api_key=data.get("api_key", ""),
            api_format=data.get("api_format", "openai"),
            model=data.get("model", DEFAULT_MODEL),
            max_tokens=int(data.get("max_tokens", 8192)),
            temperature=float(data.get("temperature", 0.7)),
            workspace_path=workspace or Path.cwd(),
            permission_mode=data.get("permission_mode", DEFAULT_PERMISSION_MODE.value),
            max_turns=int(data.get("max_turns", 25)),
            request_timeout=float(data.get("request_timeout", 30.0)),
            handshake_timeout=float(data.get("handshake_timeout", 30.0)),
            undo_limit=int(data.get("undo_limit", 50)),
            mcp_servers=parse_mcp_servers(data.get("mcp_servers", {})),
        )

    @classmethod
    def from_json(cls, workspace: Optional[Path] = None) -> "Config":
        """Load configuration from JSON files.

        Priority (later overrides earlier):
        1. ~/.toolpipe.json (global)
        2. workspace/.toolpipe/config.json (workspace-specific)
        """
        config_data: Dict[str, Any] = {}
        config_data.update(load_json_config(get_global_config_path()))
        ws_config = load_json_config(get_workspace_config_path(workspace))
        # Server tables merge by name rather than replacing wholesale
        servers = dict(config_data.get("mcp_servers") or {})
        servers.update(ws_config.get("mcp_servers") or {})
        config_data.update(ws_config)
        config_data["mcp_servers"] = servers
        return cls.from_dict(config_data, workspace)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None, workspace: Optional[Path] = None) -> "Config":
        """Load configuration from environment variables on top of the JSON files."""
        if env_path and env_path.exists():
            load_dotenv(env_path)
        else:
            load_dotenv()

        config = cls.from_json(workspace)

        config.api_url = os.getenv("LLM_API_URL", config.api_url)
        config.api_key = os.getenv("LLM_API_KEY", config.api_key)
        config.api_format = os.getenv("LLM_API_FORMAT", config.api_format)
        config.model = os.getenv("LLM_MODEL", config.model)
        config.max_tokens = int(os.getenv("LLM_MAX_TOKENS", str(config.max_tokens)))
        config.temperature = float(os.getenv("LLM_TEMPERATURE", str(config.temperature)))
        config.permission_mode = os.getenv("TOOLPIPE_PERMISSION_MODE", config.permission_mode)
        if os.getenv("WORKSPACE_PATH"):
            config.workspace_path = Path(os.environ["WORKSPACE_PATH"])
        return config

    def validate(self) -> bool:
        """Validate the configuration."""
        if not self.api_url:
            raise ValueError("API URL is required. Set LLM_API_URL or api_url in ~/.toolpipe.json.")
        if not self.api_key:
            raise ValueError("API key is required. Set LLM_API_KEY or api_key in ~/.toolpipe.json.")
        if self.api_format not in API_FORMATS:
            raise ValueError(f"api_format must be one of {', '.join(API_FORMATS)}, got '{self.api_format}'")
        parse_permission_mode(self.permission_mode)
        if self.max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if self.undo_limit < 1:
            raise ValueError("undo_limit must be at least 1")
        return True
