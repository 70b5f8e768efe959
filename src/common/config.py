"""
Configuration loader for the devtools MCP server.

Loads settings from config.yaml. The listening port can additionally be
overridden through the ``devtools.mcp.port`` key or the DEVTOOLS_MCP_PORT
environment variable.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

# Named configuration key for the listening port
PORT_CONFIG_KEY = "devtools.mcp.port"
PORT_ENV_VAR = "DEVTOOLS_MCP_PORT"
DEFAULT_PORT = 9999


class ServerConfig(BaseModel):
    """Configuration for the MCP listener and protocol identity."""

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(
        default=DEFAULT_PORT, ge=0, le=65535, description="Port to bind to (0 picks a free port)"
    )
    path: str = Field(default="/mcp", description="HTTP path the transport is mounted on")
    name: str = Field(default="Python Devtools MCP Server", description="Advertised server name")
    version: str = Field(default="1.0.0", description="Advertised server version")
    startup_timeout: float = Field(
        default=10.0, gt=0, description="Seconds to wait for the listener to come up"
    )
    max_workers: int = Field(default=8, ge=1, description="Worker threads for blocking tools")


class HostConfig(BaseModel):
    """Facts about the host process used in standalone mode."""

    name: str = Field(default="devtools-host", description="Host application name")
    profiles: List[str] = Field(default_factory=list, description="Active profiles")
    settings: Dict[str, Any] = Field(
        default_factory=dict, description="Settings exposed through the property lookup tool"
    )


class Config(BaseModel):
    """Main configuration object."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    log_level: str = Field(default="INFO", description="Logging level")
    enable_pretty_print: bool = Field(
        default=False, description="Enable custom pretty print for debugging"
    )
    save_to_file: bool = Field(default=False, description="Save logs to file")
    log_file_path: str = Field(default="server.log", description="Log file path (relative to root)")
    max_log_file_size: int = Field(
        default=10485760, description="Max log file size in bytes (10MB)"
    )
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


def _lookup_port_key(config_data: Dict[str, Any]) -> Optional[Any]:
    """Find ``devtools.mcp.port`` in either dotted or nested form."""
    if PORT_CONFIG_KEY in config_data:
        return config_data.pop(PORT_CONFIG_KEY)

    devtools = config_data.get("devtools")
    if isinstance(devtools, dict):
        mcp_section = devtools.get("mcp")
        if isinstance(mcp_section, dict) and "port" in mcp_section:
            return mcp_section["port"]

    return None


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from YAML file.

    Port precedence (highest first): DEVTOOLS_MCP_PORT environment variable,
    ``devtools.mcp.port`` key, ``server.port``, built-in default.

    Args:
        config_path: Path to config.yaml file. Defaults to ./config.yaml

    Returns:
        Loaded configuration object
    """
    if config_path is None:
        config_path = Path("config.yaml")

    config_data: Dict[str, Any] = {}

    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

    # Handle nested logging configuration
    if "logging" in config_data:
        logging_config = config_data.pop("logging") or {}
        if "level" in logging_config:
            config_data["log_level"] = logging_config["level"]
        for key in (
            "enable_pretty_print",
            "save_to_file",
            "log_file_path",
            "max_log_file_size",
            "backup_count",
        ):
            if key in logging_config:
                config_data[key] = logging_config[key]

    server_data = dict(config_data.get("server") or {})

    port_override = _lookup_port_key(config_data)
    config_data.pop("devtools", None)
    if port_override is not None:
        server_data["port"] = port_override

    env_port = os.environ.get(PORT_ENV_VAR)
    if env_port:
        server_data["port"] = env_port

    config_data["server"] = server_data

    return Config(**config_data)
