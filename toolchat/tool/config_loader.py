from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List

import yaml

from toolchat.constants import COMPOUND_SEPARATOR, MCP_CONFIG_PATH
from toolchat.errors import ConfigError

from .types import McpConfig, ServerDescriptor, TransportKind

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")

_TRANSPORT_ALIASES = {
    "stdio": TransportKind.PROCESS,
    "process": TransportKind.PROCESS,
    "sse": TransportKind.STREAM,
    "stream": TransportKind.STREAM,
}


def _default_config_path() -> Path:
    explicit = os.getenv("TOOLCHAT_MCP_CONFIG")
    if explicit:
        return Path(explicit)
    return MCP_CONFIG_PATH


def resolve_credential(value: str | None) -> str:
    # format: ${VAR}; unset variables resolve to "" rather than failing
    if not value:
        return ""
    match = _ENV_REF.match(value.strip())
    if match:
        return os.environ.get(match.group(1), "")
    return value


def read_config_file(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {path} is not valid YAML/JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config root of {path} must be a mapping object")
    return data


def _parse_server(index: int, item: Any) -> ServerDescriptor:
    if not isinstance(item, dict):
        raise ConfigError(f"Server entry at index {index} must be a mapping")

    name = item.get("name")
    if not name or not isinstance(name, str):
        raise ConfigError(f"Server entry at index {index} requires a 'name'")
    if COMPOUND_SEPARATOR in name:
        raise ConfigError(
            f"Server name '{name}' must not contain '{COMPOUND_SEPARATOR}'"
        )

    kind = _TRANSPORT_ALIASES.get(str(item.get("type", "")).lower())
    if kind is None:
        raise ConfigError(
            f"Server '{name}' has unknown type {item.get('type')!r}; "
            f"expected one of {sorted(_TRANSPORT_ALIASES)}"
        )

    command = item.get("command")
    url = item.get("url")
    if kind is TransportKind.PROCESS and not command:
        raise ConfigError(f"Process server '{name}' requires a 'command'")
    if kind is TransportKind.STREAM and not url:
        raise ConfigError(f"Stream server '{name}' requires a 'url'")

    env = item.get("env", {}) or {}
    if not isinstance(env, dict):
        raise ConfigError(f"'env' for server '{name}' must be a mapping of strings")

    return ServerDescriptor(
        name=name,
        transport=kind,
        command=str(command) if command else None,
        url=str(url) if url else None,
        api_key=item.get("apiKey"),
        enabled=bool(item.get("enabled", True)),
        auto_start=bool(item.get("autoStart", False)),
        env={str(k): str(v) for k, v in env.items()},
    )


def load_mcp_config(config_path: str | Path | None = None) -> McpConfig:
    path = config_path or _default_config_path()
    data = read_config_file(path)

    servers = data.get("servers")
    if not isinstance(servers, list):
        raise ConfigError("Config must contain 'servers' as a list")

    descriptors: List[ServerDescriptor] = []
    seen = set()
    for i, item in enumerate(servers):
        descriptor = _parse_server(i, item)
        if descriptor.name in seen:
            raise ConfigError(f"Duplicate server name '{descriptor.name}'")
        seen.add(descriptor.name)
        descriptors.append(descriptor)

    default_server = data.get("defaultServer")
    if default_server is not None and default_server not in seen:
        raise ConfigError(f"defaultServer '{default_server}' is not a configured server")

    kwargs = {}
    for key, attr in (("handshakeTimeout", "handshake_timeout"), ("connectTimeout", "connect_timeout")):
        if key in data:
            try:
                kwargs[attr] = float(data[key])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"'{key}' must be a number") from e

    logger.info("Loaded %d tool server(s) from %s", len(descriptors), path)
    return McpConfig(servers=tuple(descriptors), default_server=default_server, **kwargs)
