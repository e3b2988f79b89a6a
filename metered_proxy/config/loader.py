"""
Configuration management and loading.

Handles proxy settings from a YAML file and secrets from the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from metered_proxy.core.request_shape import REQUEST_SHAPES

DEFAULT_PROJECT = "<default>"


@dataclass(frozen=True)
class StorageConfig:
    """Where the usage ledger lives."""
    path: str = "metered-proxy.db"
    pool_size: int = 4

    def __post_init__(self):
        if not self.path:
            raise ValueError("storage.path must not be empty")
        if self.pool_size < 1:
            raise ValueError("storage.pool_size must be >= 1")


@dataclass(frozen=True)
class UpstreamConfig:
    """The single upstream API every call is forwarded to."""
    base_url: str = "https://api.openai.com"
    api_key_env: str = "OPENAI_KEY"
    timeout_seconds: float = 60.0

    def __post_init__(self):
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("upstream.base_url must be an http(s) URL")
        if self.timeout_seconds <= 0:
            raise ValueError("upstream.timeout_seconds must be > 0")

    @property
    def api_key(self) -> str:
        """Upstream credential, read from the environment on each access."""
        return os.environ.get(self.api_key_env, "").strip()


@dataclass(frozen=True)
class ProxySettings:
    """How inbound calls are interpreted."""
    request_shape: str = "chat"
    default_project: str = DEFAULT_PROJECT
    project_header: str = "X-Project"

    def __post_init__(self):
        if self.request_shape not in REQUEST_SHAPES:
            raise ValueError(
                f"proxy.request_shape must be one of: {sorted(REQUEST_SHAPES)}"
            )
        if not self.default_project:
            raise ValueError("proxy.default_project must not be empty")
        if not self.project_header:
            raise ValueError("proxy.project_header must not be empty")


@dataclass(frozen=True)
class ProxyConfig:
    """Complete proxy configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    proxy: ProxySettings = field(default_factory=ProxySettings)


# section name -> (dataclass, {key: accepted types})
_SECTIONS = {
    "storage": (StorageConfig, {"path": (str,), "pool_size": (int,)}),
    "upstream": (
        UpstreamConfig,
        {"base_url": (str,), "api_key_env": (str,), "timeout_seconds": (int, float)},
    ),
    "proxy": (
        ProxySettings,
        {"request_shape": (str,), "default_project": (str,), "project_header": (str,)},
    ),
}


def load_proxy_config(path: Optional[str] = None) -> ProxyConfig:
    """Load and validate proxy configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys and
    wrong types are errors. Without a path, defaults are used.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated ProxyConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return ProxyConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Proxy config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return ProxyConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config.get(name))
        for name in _SECTIONS
    }
    return ProxyConfig(**sections)


def _parse_section(name: str, data: Any) -> Any:
    """Parse and validate one configuration section.

    Raises:
        ValueError: If the section is invalid
    """
    section_cls, allowed = _SECTIONS[name]
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(allowed)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        types = allowed[key]
        # bool is an int subclass but never a valid setting here
        if isinstance(value, bool) or not isinstance(value, types):
            expected = " or ".join(t.__name__ for t in types)
            raise ValueError(f"'{key}' in {name} must be {expected}")
        values[key] = value
    return section_cls(**values)
