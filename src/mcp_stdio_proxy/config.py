"""Configuration loading for the MCP stdio proxy"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .errors import ConfigError
from .models import BackendConfig, ProxyConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.json"

_NUMBER_KEYS = ("idle_timeout", "sweep_interval", "startup_timeout")


def load_config(config_path: Optional[Union[str, Path]] = None) -> ProxyConfig:
    """Load configuration from a JSON file.

    Args:
        config_path: Path to config file (defaults to ./config.json)

    Returns:
        Validated ProxyConfig instance

    Raises:
        ConfigError: If the file is missing, unreadable or malformed
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")

    config = parse_config(data)
    logger.debug(f"Loaded {len(config.servers)} server(s) from {path}")
    return config


def parse_config(data: Any) -> ProxyConfig:
    """Build a ProxyConfig from already-decoded JSON data.

    Raises:
        ConfigError: If the data does not have the expected shape
    """
    if not isinstance(data, dict):
        raise ConfigError("config: top level must be an object")

    servers = data.get("servers")
    if not isinstance(servers, dict):
        raise ConfigError("config: 'servers' must be an object")

    config = ProxyConfig(servers=_parse_servers(servers))

    if "host" in data:
        if not isinstance(data["host"], str):
            raise ConfigError("config: 'host' must be a string")
        config.host = data["host"]
    if "port" in data:
        config.port = data["port"]
    for key in _NUMBER_KEYS:
        if key in data:
            value = data[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"config: '{key}' must be a number")
            setattr(config, key, float(value))
    if "json_response" in data:
        config.json_response = bool(data["json_response"])

    config.validate()
    return config


def _parse_servers(servers: Dict[str, Any]) -> Dict[str, BackendConfig]:
    parsed: Dict[str, BackendConfig] = {}
    for name, server in servers.items():
        if not isinstance(server, dict):
            raise ConfigError(f"config: server '{name}' must be an object")

        command = server.get("command")
        if not command or not isinstance(command, str):
            raise ConfigError(f"config: server '{name}' must have a 'command' string")

        args = server.get("args")
        if not isinstance(args, list):
            args = []
        args = [str(arg) for arg in args]

        env = server.get("env")
        if env is not None:
            if not isinstance(env, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in env.items()
            ):
                raise ConfigError(f"config: server '{name}' env must map strings to strings")

        parsed[name] = BackendConfig(name=name, command=command, args=args, env=env)
    return parsed
