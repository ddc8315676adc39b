"""
Utilities Package - Helper modules.

- http: Pooled streaming HTTP client with connect retry
- config: TOML configuration loading
"""

from .http import (
    HTTPClient,
    HTTPClientConfig,
)

from .config import (
    config_path,
    get_section,
    load_config,
)

__all__ = [
    # HTTP
    'HTTPClient',
    'HTTPClientConfig',

    # Config
    'config_path',
    'get_section',
    'load_config',
]
