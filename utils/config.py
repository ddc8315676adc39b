"""
Simple config loader for backend components.
Reads the service TOML config (config/relay.toml, or $RELAY_CONFIG).

@.architecture
Incoming: config/relay.toml, config/settings.py --- {TOML file, load_config calls}
Processing: load_config(), get_fallback_config(), get_section() --- {3 jobs: config_loading, fallback_generation, setting_extraction}
Outgoing: config/settings.py --- {Dict[str, Any] config data}
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import toml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path(__file__).parent.parent / "config" / "relay.toml"


def config_path() -> Path:
    """Config file location ($RELAY_CONFIG overrides the bundled file)."""
    override = os.getenv("RELAY_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_FILE


def load_config(path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """Load configuration from the TOML file, falling back to built-in defaults."""
    config_file = Path(path) if path else config_path()
    try:
        with open(config_file, 'r') as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as e:
        logger.warning(f"Failed to load config from {config_file}: {e}; using defaults")
        return get_fallback_config()


def get_fallback_config() -> Dict[str, Any]:
    """Fallback configuration if the TOML file can't be loaded."""
    return {
        "LLM": {
            "provider": "openai-compatible",
            "api_base": "https://openrouter.ai/api/v1",
            "model": "mistralai/mistral-7b-instruct:free",
        },
        "SECURITY": {
            "bind_host": "127.0.0.1",
            "bind_port": 3001,
        },
        "SYNC": {
            "listener_queue_size": 256,
        },
    }


def get_section(name: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Get one section (case-insensitive) of the loaded config.

    Returns an empty dict for a missing section.
    """
    config = config if config is not None else load_config()
    for key, value in config.items():
        if key.lower() == name.lower() and isinstance(value, dict):
            return dict(value)
    return {}
