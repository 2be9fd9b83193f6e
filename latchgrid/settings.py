"""Configuration loading for latchgrid.

Settings live in a YAML file (default: latchgrid/config/grid.yaml). A
missing file yields the built-in defaults; a present file is merged over
them, so it only needs the keys it changes.
"""

import copy
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from latchgrid import osc


PACKAGE_ROOT = Path(__file__).parent
DEFAULT_CONFIG_PATH = PACKAGE_ROOT / "config" / "grid.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "daemon": {
        "host": osc.LOCALHOST,
        "port": osc.PORT_SERIALOSC,
    },
    "discovery": {
        "reply_host": osc.LOCALHOST,
        "reply_port": osc.PORT_DISCOVERY_REPLY,
        "timeout": 2.0,
        "max_retries": 3,
        "backoff": 2.0,
    },
    "session": {
        "event_host": osc.LOCALHOST,
        "event_port": osc.PORT_DEVICE_EVENTS,
        "prefix": "",
        "light_all_latches": False,
    },
    "runner": {
        "tick_hz": 30.0,
    },
}


class ConfigError(ValueError):
    """Raised when a configuration file cannot be used."""


def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` into a copy of `base`."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def validate_config(config: Dict[str, Any]) -> None:
    """Check ports and rates.

    Raises:
        ConfigError: If a value is out of range
    """
    try:
        osc.validate_port(config["daemon"]["port"])
        osc.validate_port(config["discovery"]["reply_port"], allow_ephemeral=True)
        osc.validate_port(config["session"]["event_port"], allow_ephemeral=True)
    except (ValueError, KeyError, TypeError) as e:
        raise ConfigError(f"Invalid port setting: {e}") from e

    tick_hz = config["runner"].get("tick_hz")
    if not isinstance(tick_hz, (int, float)) or isinstance(tick_hz, bool) or tick_hz <= 0:
        raise ConfigError(f"runner.tick_hz must be a positive number, got {tick_hz!r}")


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load configuration, falling back to defaults.

    Args:
        config_path: Path to a YAML file; None uses DEFAULT_CONFIG_PATH

    Returns:
        Merged configuration dict

    Raises:
        ConfigError: If the file is not valid YAML, is not a mapping, or
            holds out-of-range values
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(path) as f:
            loaded = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(loaded).__name__}")

    config = merge(DEFAULT_CONFIG, loaded)
    validate_config(config)
    return config
