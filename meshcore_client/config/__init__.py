"""
Configuration management for meshcore-client.

This module loads serial and session settings from TOML files. The shipped
defaults.toml is always read first; a user file passed to load_config()
only needs the keys it overrides.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent

DEFAULTS_FILE = CONFIG_DIR / "defaults.toml"

# A 16-bit length field cannot describe more
FRAME_SIZE_LIMIT = 65535


@dataclass
class SerialConfig:
    """Serial port settings."""

    port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    connect_delay: float = 0.3
    drain_duration: float = 0.5
    read_chunk_size: int = 1024


@dataclass
class SessionConfig:
    """Command and event handling settings."""

    command_timeout: float = 5.0
    settle_delay: float = 0.05
    startup_settle: float = 0.2
    event_queue_size: int = 256
    max_frame_size: int = FRAME_SIZE_LIMIT


@dataclass
class ClientConfig:
    """Loaded client configuration."""

    serial: SerialConfig = field(default_factory=SerialConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


def _coerce(section: str, name: str, value: Any, default: Any) -> Any:
    """
    Convert a TOML value to the type of its default.

    Malformed values (wrong type, negative numbers, oversized frame limits)
    fall back to the default with a warning.
    """
    expected = type(default)
    try:
        if isinstance(value, bool) or isinstance(value, (dict, list)):
            raise TypeError(type(value).__name__)
        if expected is str:
            if not isinstance(value, str):
                raise TypeError(type(value).__name__)
            result: Any = value
        elif expected is int:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            result = int(value)
        else:
            result = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s.%s: %r, using default %r", section, name, value, default)
        return default

    if expected is not str and result < 0:
        logger.warning("Negative value for %s.%s: %r, using default %r", section, name, value, default)
        return default
    if name == "max_frame_size" and not 0 < result <= FRAME_SIZE_LIMIT:
        logger.warning("max_frame_size must be 1..%d, got %r; using default", FRAME_SIZE_LIMIT, value)
        return default
    if name in ("event_queue_size", "read_chunk_size", "baudrate") and result == 0:
        logger.warning("%s.%s must be positive, using default %r", section, name, default)
        return default
    return result


def _parse_section(cls: type, section: str, data: Any) -> Any:
    """Build a section dataclass from a TOML table."""
    instance = cls()
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Config section [%s] is not a table, ignoring", section)
        return instance

    known = {f.name for f in fields(cls)}
    for key, value in data.items():
        if key not in known:
            logger.warning("Unknown config key %s.%s, ignoring", section, key)
            continue
        setattr(instance, key, _coerce(section, key, value, getattr(instance, key)))
    return instance


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_config(config_path: Path | str | None = None) -> ClientConfig:
    """
    Load client configuration from TOML.

    Args:
        config_path: Optional user config file, overlaid on the defaults.

    Returns:
        Loaded ClientConfig instance.

    Raises:
        FileNotFoundError: If config_path does not exist.
        tomllib.TOMLDecodeError: If a file is not valid TOML.
    """
    logger.debug("Loading default config from %s", DEFAULTS_FILE)
    with DEFAULTS_FILE.open("rb") as f:
        data = tomllib.load(f)

    if config_path is not None:
        config_path = Path(config_path)
        logger.debug("Loading config overrides from %s", config_path)
        with config_path.open("rb") as f:
            data = _merge(data, tomllib.load(f))

    for section in data:
        if section not in ("serial", "session"):
            logger.warning("Unknown config section [%s], ignoring", section)

    return ClientConfig(
        serial=_parse_section(SerialConfig, "serial", data.get("serial")),
        session=_parse_section(SessionConfig, "session", data.get("session")),
    )


# Global singleton instance (lazy loaded)
_config: ClientConfig | None = None


def get_config() -> ClientConfig:
    """
    Get the global client configuration (lazy loaded singleton).

    Returns:
        The ClientConfig instance.
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def reload_config(config_path: Path | str | None = None) -> ClientConfig:
    """
    Force reload of the client configuration.

    Returns:
        The newly loaded ClientConfig instance.
    """
    global _config
    _config = load_config(config_path)
    return _config
