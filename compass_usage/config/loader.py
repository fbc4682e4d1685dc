"""
Configuration management and loading.

Handles the YAML settings file and environment variable overrides.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ..core.session import ENDPOINT

DEFAULT_CACHE_DIR = "/tmp"
DEFAULT_LISTEN = ":8080"

# Environment variable -> AppConfig field
ENV_OVERRIDES: Dict[str, str] = {
    "COMPASS_USERNAME": "username",
    "COMPASS_PASSWORD": "password",
    "COMPASS_CACHE_DIR": "cache_dir",
}


def parse_listen(listen: str) -> Tuple[str, int]:
    """Split a ``host:port`` listen address; an empty host binds all interfaces.

    Raises:
        ValueError: If the port is missing or not a valid port number
    """
    host, sep, port_str = listen.rpartition(":")
    if not sep:
        raise ValueError(f"listen address {listen!r} must be host:port or :port")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"invalid port in listen address {listen!r}")
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in listen address {listen!r}")
    return host or "0.0.0.0", port


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    username: str = ""
    password: str = ""
    cache_dir: str = DEFAULT_CACHE_DIR
    listen: str = DEFAULT_LISTEN
    base_url: str = ENDPOINT
    timeout: Optional[float] = None
    strict_persist: bool = False
    log_level: Optional[str] = None

    def __post_init__(self):
        """Validate values that would otherwise fail late."""
        if not self.cache_dir:
            raise ValueError("cache_dir cannot be empty")
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        parse_listen(self.listen)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    def with_overrides(self, **overrides: Any) -> "AppConfig":
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self


_STRING_KEYS = {"username", "password", "cache_dir", "listen", "base_url", "log_level"}
_ALLOWED_KEYS = _STRING_KEYS | {"timeout", "strict_persist"}


def _parse_config_data(raw_config: Dict, path: str) -> Dict[str, Any]:
    unknown_keys = set(raw_config.keys()) - _ALLOWED_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys in {path}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key in _STRING_KEYS & raw_config.keys():
        value = raw_config[key]
        if not isinstance(value, str):
            raise ValueError(f"'{key}' in {path} must be a string")
        values[key] = value

    if "timeout" in raw_config:
        timeout = raw_config["timeout"]
        if timeout is not None:
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
                raise ValueError(f"'timeout' in {path} must be a number")
            timeout = float(timeout)
        values["timeout"] = timeout

    if "strict_persist" in raw_config:
        if not isinstance(raw_config["strict_persist"], bool):
            raise ValueError(f"'strict_persist' in {path} must be true or false")
        values["strict_persist"] = raw_config["strict_persist"]

    return values


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> AppConfig:
    """Load configuration from an optional YAML file and the environment.

    Environment variables take precedence over the file.

    Args:
        path: Path to YAML configuration file, or None for defaults only
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the YAML is invalid
        ValueError: If the configuration is invalid
    """
    values: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if raw_config is None:
            raw_config = {}
        if not isinstance(raw_config, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        values.update(_parse_config_data(raw_config, path))

    env = os.environ if environ is None else environ
    for var, field_name in ENV_OVERRIDES.items():
        if env.get(var):
            values[field_name] = env[var]

    return AppConfig(**values)
