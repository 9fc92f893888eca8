"""
MCP Server Configuration Module
Loads, validates and saves the mcpServers configuration document
"""

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "mcp.config.json"

# Appended to PATH for spawned servers; launchers like npx often live here
EXTRA_PATH_ENTRIES = [
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "/opt/homebrew/bin",
    "./node_modules/.bin",
]


class ServerMode(str, Enum):
    """Transport used to reach an upstream server"""
    STDIO = "stdio"  # child process, stdio pipes
    HTTP = "http"    # child process listening on a local port
    SSE = "sse"      # push-style event stream endpoint


class SseOptions(BaseModel):
    """Event-stream specific options"""
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    endpoint: str
    headers: Dict[str, str] = Field(default_factory=dict)
    # milliseconds between reconnect attempts
    reconnect_timeout: Optional[int] = Field(default=None, alias="reconnectTimeout")


class ServerConfig(BaseModel):
    """Definition of one upstream server"""
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    command: str
    args: List[str]
    env: Dict[str, str] = Field(default_factory=dict)
    mode: ServerMode = ServerMode.STDIO
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    sse_options: Optional[SseOptions] = Field(default=None, alias="sseOptions")
    disabled: bool = False
    auto_approve: List[str] = Field(default_factory=list, alias="autoApprove")
    health_path: str = Field(default="/health", alias="healthPath")
    mcp_path: str = Field(default="/mcp", alias="mcpPath")

    @model_validator(mode="after")
    def _check_mode_fields(self) -> "ServerConfig":
        if self.mode == ServerMode.HTTP and self.port is None:
            raise ValueError("port is required when mode is 'http'")
        if self.mode == ServerMode.SSE and self.sse_options is None:
            raise ValueError("sseOptions is required when mode is 'sse'")
        return self


class MCPServersConfig(BaseModel):
    """Top-level configuration document"""
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    mcp_servers: Dict[str, ServerConfig] = Field(alias="mcpServers")

    def enabled_servers(self) -> Dict[str, ServerConfig]:
        return {name: cfg for name, cfg in self.mcp_servers.items() if not cfg.disabled}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_defaults=True)


@dataclass(frozen=True)
class Timings:
    """Readiness, retry and timeout bounds (seconds)"""
    settle_interval: float = 2.0
    health_interval: float = 1.0
    health_attempts: int = 30
    connect_timeout: float = 10.0
    reconnect_attempts: int = 3
    reconnect_interval: float = 1.0
    client_retries: int = 3
    client_connect_timeout: float = 15.0
    retry_delay: float = 2.0
    request_timeout: float = 10.0
    stop_grace: float = 5.0


def _format_validation_error(error: ValidationError) -> List[str]:
    messages = []
    for err in error.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{location}: {err.get('msg')}" if location else err.get("msg", "invalid"))
    return messages


def parse_mcp_config(data: Dict[str, Any]) -> MCPServersConfig:
    """Validate a raw configuration mapping"""
    try:
        return MCPServersConfig.model_validate(data)
    except ValidationError as e:
        errors = _format_validation_error(e)
        raise ConfigError("Invalid server configuration: " + "; ".join(errors)) from e


def load_mcp_config(config_path: Union[str, Path, None] = None) -> MCPServersConfig:
    """Load MCP configuration from a JSON file"""
    path = Path(config_path) if config_path else Path.cwd() / DEFAULT_CONFIG_FILE
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        logger.error(f"Config file not found: {path}")
        raise ConfigError(
            f"MCP configuration is required. Please provide a valid {DEFAULT_CONFIG_FILE} ({path})"
        ) from e
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse config {path}: {e}")
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    config = parse_mcp_config(data)
    logger.info(f"Loaded {len(config.mcp_servers)} server configurations from {path}")
    return config


def save_mcp_config(config: MCPServersConfig, config_path: Union[str, Path]) -> None:
    """Save MCP configuration to a JSON file"""
    path = Path(config_path)
    with open(path, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)
    logger.debug(f"Saved MCP config to {path}")


def validate_server_config(config: Dict[str, Any]) -> List[str]:
    """Return a list of 'field: problem' strings, empty when the config is valid"""
    try:
        ServerConfig.model_validate(config)
        return []
    except ValidationError as e:
        errors = _format_validation_error(e)
        logger.error(f"Server config validation failed: {errors}")
        return errors


def build_server_env(config: ServerConfig, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for a spawned server: inherited, extended PATH, then overrides"""
    inherited = dict(os.environ if base is None else base)
    path = inherited.get("PATH", "")
    extra = os.pathsep.join(EXTRA_PATH_ENTRIES)
    env = {
        **inherited,
        "NODE_ENV": inherited.get("NODE_ENV", "development"),
        "PATH": f"{path}{os.pathsep}{extra}" if path else extra,
    }
    env.update(config.env)
    return env
