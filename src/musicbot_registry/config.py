"""Configuration loading and merging for the MusicBot registry."""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


@dataclass
class RegistryConfig:
    # HTTP bind address
    host: str = "0.0.0.0"
    port: int = 8000

    # Expiry policy; None keeps entries until the process exits
    ttl_seconds: Optional[int] = None
    prune_interval: int = 60

    # Maximum number of distinct client IPs; None means unbounded
    capacity: Optional[int] = None

    # Register callers under the first X-Forwarded-For hop when present
    trust_forwarded_for: bool = True

    log_level: str = "INFO"

    @property
    def expiry_enabled(self) -> bool:
        return self.ttl_seconds is not None


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def load_config(path: str | Path) -> RegistryConfig:
    """Load a RegistryConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    valid_fields = {f.name for f in fields(RegistryConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return RegistryConfig(**filtered)


def merge_cli_args(config: RegistryConfig, args) -> RegistryConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for f in fields(RegistryConfig):
        cli_val = getattr(args, f.name, None)
        if cli_val is not None:
            setattr(config, f.name, cli_val)
    return config


def _check_int(name: str, value, optional: bool = False) -> None:
    if optional and value is None:
        return
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def validate_config(config: RegistryConfig) -> None:
    """Check field types and ranges; normalizes log_level to upper case."""
    if not isinstance(config.host, str) or not config.host:
        raise ConfigError(f"host must be a non-empty string, got {config.host!r}")
    _check_int("port", config.port)
    _check_int("ttl_seconds", config.ttl_seconds, optional=True)
    _check_int("prune_interval", config.prune_interval)
    _check_int("capacity", config.capacity, optional=True)
    if not isinstance(config.trust_forwarded_for, bool):
        raise ConfigError(
            f"trust_forwarded_for must be true or false, got {config.trust_forwarded_for!r}"
        )
    if not isinstance(config.log_level, str) or config.log_level.upper() not in LOG_LEVELS:
        raise ConfigError(
            f"log_level must be one of {', '.join(LOG_LEVELS)}, got {config.log_level!r}"
        )
    config.log_level = config.log_level.upper()

    if not 0 <= config.port <= 65535:
        raise ConfigError(f"port must be between 0 and 65535, got {config.port}")
    if config.ttl_seconds is not None and config.ttl_seconds <= 0:
        raise ConfigError("ttl_seconds must be positive")
    if config.prune_interval <= 0:
        raise ConfigError("prune_interval must be positive")
    if config.capacity is not None and config.capacity <= 0:
        raise ConfigError("capacity must be positive")


def config_to_yaml(config: RegistryConfig) -> str:
    """Serialize a RegistryConfig to YAML, omitting unset optional fields."""
    data: dict = {
        "host": config.host,
        "port": config.port,
    }
    if config.ttl_seconds is not None:
        data["ttl_seconds"] = config.ttl_seconds
        data["prune_interval"] = config.prune_interval
    if config.capacity is not None:
        data["capacity"] = config.capacity
    data["trust_forwarded_for"] = config.trust_forwarded_for
    data["log_level"] = config.log_level
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
