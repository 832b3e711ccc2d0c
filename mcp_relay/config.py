"""
Server configuration.

The config file maps server names to launch commands, in the same shape
most tool-protocol clients use:

    {
      "mcpServers": {
        "weather": {"command": "npx", "args": ["-y", "weather-mcp"]},
        "echo":    {"command": "python", "args": ["-m", "mcp_relay.servers.echo"],
                    "description": "Echo test server"}
      }
    }

JSON and YAML files are both accepted. Order of the mapping is the
server registration order used everywhere else (catalog, summaries).
"""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from mcp_relay.errors import ConfigError

DEFAULT_CONFIG_FILE = "mcp_config.json"


@dataclass(frozen=True)
class ServerConfig:
    """How to launch one tool server. Immutable for the process lifetime."""
    name: str
    command: str
    argv: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    description: str = ""

    @property
    def command_line(self) -> list[str]:
        return [self.command, *self.argv]

    @property
    def is_remote(self) -> bool:
        """True when the server proxies to a remote backend (any http arg)."""
        return any("http" in arg for arg in self.argv)


@dataclass(frozen=True)
class TimeoutPolicy:
    """Per-phase deadlines, in seconds."""
    handshake: float = 10.0
    discovery: float = 12.0
    call: float = 15.0
    remote_call: float = 25.0

    def call_timeout_for(self, config: ServerConfig) -> float:
        return self.remote_call if config.is_remote else self.call


def _default_config_path() -> str:
    explicit = os.getenv("MCP_CONFIG_PATH")
    if explicit:
        return explicit
    return os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)


def _interpolate_env(value: Any) -> Any:
    # format: ${env:VAR}
    if isinstance(value, str) and value.startswith("${env:") and value.endswith("}"):
        var_name = value[len("${env:"):-1]
        return os.environ.get(var_name, value)
    return value


def _resolve_command(command: str) -> str:
    # Child servers written in Python run under the same interpreter/venv
    if command in ("python", "python3"):
        return sys.executable
    return command


def parse_config(data: Any) -> dict[str, ServerConfig]:
    """Build ServerConfigs from an already-decoded config document."""
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping object")

    servers = data.get("mcpServers")
    if not isinstance(servers, dict):
        raise ConfigError("Config must contain 'mcpServers' as a mapping")

    configs: dict[str, ServerConfig] = {}
    for name, item in servers.items():
        if not isinstance(item, dict):
            raise ConfigError(f"Server entry '{name}' must be a mapping", str(name))

        command = _interpolate_env(item.get("command"))
        args = item.get("args", [])
        env = item.get("env", {})

        if not command:
            raise ConfigError(f"Server entry '{name}' requires 'command'", str(name))
        if not isinstance(args, list):
            raise ConfigError(f"'args' for server '{name}' must be a list of strings", str(name))
        if not isinstance(env, dict):
            raise ConfigError(f"'env' for server '{name}' must be a mapping of strings", str(name))

        configs[str(name)] = ServerConfig(
            name=str(name),
            command=_resolve_command(str(command)),
            argv=tuple(str(_interpolate_env(a)) for a in args),
            env={str(k): str(_interpolate_env(v)) for k, v in env.items()},
            description=str(item.get("description") or ""),
        )

    return configs


def load_config(path: str | os.PathLike | None = None) -> dict[str, ServerConfig]:
    """
    Load server configurations from a JSON or YAML file.

    Args:
        path: Config file. Defaults to $MCP_CONFIG_PATH, then
              ./mcp_config.json.

    Returns:
        {server_name: ServerConfig} in file order.
    """
    config_path = Path(path or _default_config_path())
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    text = config_path.read_text(encoding="utf-8")
    try:
        if config_path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e

    return parse_config(data)
