"""Tests for configuration loading and validation."""

import json
import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from toolpipe.config import Config, parse_mcp_servers
from toolpipe.mcp_client import MCPServerConfig

ENV_VARS = [
    "LLM_API_URL", "LLM_API_KEY", "LLM_API_FORMAT", "LLM_MODEL", "LLM_MAX_TOKENS",
    "LLM_TEMPERATURE", "TOOLPIPE_PERMISSION_MODE", "WORKSPACE_PATH",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate HOME and the LLM_* variables; restored after the test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for var in ENV_VARS:
        monkeypatch.setenv(var, "")
        monkeypatch.delenv(var)
    return home


def write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestJsonConfig:

    def test_defaults(self, clean_env, tmp_path):
        config = Config.from_json(tmp_path)
        assert config.model == "gpt-4o-mini"
        assert config.permission_mode == "ask"
        assert config.mcp_servers == {}
        assert config.workspace_path == tmp_path

    def test_workspace_overrides_global_and_servers_merge(self, clean_env, tmp_path):
        write_json(clean_env / ".toolpipe.json", {
            "model": "global-model",
            "max_turns": 7,
            "mcp_servers": {
                "docs": {"command": "docs-server"},
                "db": {"command": "db-server", "args": ["--ro"]},
            },
        })
        workspace = tmp_path / "ws"
        write_json(workspace / ".toolpipe" / "config.json", {
            "model": "ws-model",
            "mcp_servers": {"db": {"command": "db-server-2", "required": True, "env": {"TOKEN": 1}}},
        })
        config = Config.from_json(workspace)
        assert config.model == "ws-model"
        assert config.max_turns == 7
        assert config.mcp_servers["docs"] == MCPServerConfig(command="docs-server")
        assert config.mcp_servers["db"].command == "db-server-2"
        assert config.mcp_servers["db"].required is True
        assert config.mcp_servers["db"].env == {"TOKEN": "1"}

    def test_unreadable_file_is_ignored(self, clean_env, tmp_path):
        (clean_env / ".toolpipe.json").write_text("{not json", encoding="utf-8")
        assert Config.from_json(tmp_path).model == "gpt-4o-mini"

    def test_server_without_command(self):
        with pytest.raises(ValueError, match="needs a 'command'"):
            parse_mcp_servers({"broken": {"args": ["x"]}})


class TestEnvConfig:

    def test_env_overrides_json(self, clean_env, tmp_path, monkeypatch):
        write_json(clean_env / ".toolpipe.json", {"model": "json-model", "api_url": "http://json"})
        monkeypatch.setenv("LLM_MODEL", "env-model")
        monkeypatch.setenv("LLM_MAX_TOKENS", "1000")
        monkeypatch.setenv("TOOLPIPE_PERMISSION_MODE", "strict")
        config = Config.from_env(tmp_path / "missing.env", workspace=tmp_path)
        assert config.model == "env-model"
        assert config.api_url == "http://json"
        assert config.max_tokens == 1000
        assert config.permission_mode == "strict"

    def test_dotenv_file(self, clean_env, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("LLM_API_URL=http://dotenv\nLLM_API_KEY=secret\nLLM_API_FORMAT=anthropic\n",
                            encoding="utf-8")
        config = Config.from_env(env_file, workspace=tmp_path)
        assert config.api_url == "http://dotenv"
        assert config.api_key == "secret"
        assert config.api_format == "anthropic"


class TestValidate:

    def _valid(self, **overrides):
        values = {"api_url": "http://x", "api_key": "k"}
        values.update(overrides)
        return Config(**values)

    def test_valid(self):
        assert self._valid().validate() is True

    @pytest.mark.parametrize("overrides, message", [
        ({"api_url": ""}, "API URL"),
        ({"api_key": ""}, "API key"),
        ({"api_format": "soap"}, "api_format"),
        ({"permission_mode": "yolo"}, "permission mode"),
        ({"max_turns": 0}, "max_turns"),
        ({"undo_limit": 0}, "undo_limit"),
    ])
    def test_invalid(self, overrides, message):
        with pytest.raises(ValueError, match=message):
            self._valid(**overrides).validate()
