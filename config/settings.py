"""
Settings Management

Pydantic-based settings schema with environment variable support.
Integrates with the TOML config and provides type-safe access.

@.architecture
Incoming: utils/config.py, Environment variables, relay.toml, api/dependencies.py --- {Dict from load_toml_config, str from os.getenv, get_settings calls}
Processing: get_settings(), reload_settings(), _section(), _env_overrides(), field_validator() --- {4 jobs: configuration_loading, environment_variable_merging, schema_validation, caching}
Outgoing: api/dependencies.py, app.py, main.py, core/sync/generation.py, utils/http.py --- {Settings Pydantic model with typed config sections}
"""

import os
import typing
from typing import Any, ClassVar, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator
from functools import lru_cache

from utils.config import load_config as load_toml_config


# =============================================================================
# Settings Schemas
# =============================================================================

class LLMSettings(BaseModel):
    """Generation provider settings."""
    env_prefix: ClassVar[str] = "LLM_"

    provider: str = "openai-compatible"  # openai-compatible|echo
    api_base: str = "https://openrouter.ai/api/v1"
    api_key: Optional[str] = None
    model: str = "mistralai/mistral-7b-instruct:free"
    max_tokens: int = 1024
    temperature: float = 0.7
    # OpenRouter attribution headers
    referer: Optional[str] = None
    title: Optional[str] = "Relay"
    system_prompt: str = ""
    connect_timeout: float = 5.0
    read_timeout: float = 60.0
    echo_delay: float = 0.0

    @field_validator('provider')
    @classmethod
    def validate_provider(cls, v: str) -> str:
        allowed = ['openai-compatible', 'echo']
        if v not in allowed:
            raise ValueError(f"LLM provider must be one of {allowed}")
        return v


class SecuritySettings(BaseModel):
    """Bind address and CORS configuration."""
    env_prefix: ClassVar[str] = "SECURITY_"

    bind_host: str = "127.0.0.1"
    bind_port: int = 3001
    allowed_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://127.0.0.1",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    )
    cors_allow_credentials: bool = True
    cors_allow_methods: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_headers: List[str] = Field(default_factory=lambda: ["*"])


class MonitoringSettings(BaseModel):
    """Monitoring and logging configuration."""
    env_prefix: ClassVar[str] = "MONITORING_"

    log_level: str = "INFO"
    log_format: str = "json"  # json|text
    metrics_enabled: bool = True


class SyncSettings(BaseModel):
    """Synchronization engine and duplex channel tuning."""
    env_prefix: ClassVar[str] = "SYNC_"

    listener_queue_size: int = Field(256, ge=1)
    max_message_length: int = Field(32000, ge=1)
    coalesce_window: float = Field(0.0, ge=0.0)
    ws_send_timeout: float = Field(3.0, gt=0.0)
    ws_broadcast_timeout: float = Field(5.0, gt=0.0)
    heartbeat_interval: float = Field(30.0, gt=0.0)


class Settings(BaseModel):
    """
    Main application settings.

    Loads configuration from:
    1. Environment variables (prefixed by section)
    2. TOML config file (config/relay.toml or $RELAY_CONFIG)
    3. Defaults defined in schemas

    Priority: Environment variables > TOML config > Defaults
    """

    app_name: str = "Relay Backend"
    app_version: str = "0.1.0"
    environment: str = "development"  # development|production|test

    llm: LLMSettings = Field(default_factory=LLMSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @property
    def base_url(self) -> str:
        return f"http://{self.security.bind_host}:{self.security.bind_port}"

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ['development', 'production', 'test']
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v


# =============================================================================
# Settings Loader
# =============================================================================

def _env_overrides(model: type) -> Dict[str, Any]:
    """Collect ``{PREFIX}{FIELD}`` environment variables for a section model."""
    overrides: Dict[str, Any] = {}
    for name, field in model.model_fields.items():
        raw = os.getenv(f"{model.env_prefix}{name.upper()}")
        if raw is None:
            continue
        if typing.get_origin(field.annotation) in (list, List):
            overrides[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            overrides[name] = raw
    return overrides


def _section(toml_config: Dict[str, Any], name: str, model: type) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, section in toml_config.items():
        if key.lower() == name and isinstance(section, dict):
            values.update({k: v for k, v in section.items() if k in model.model_fields})
    values.update(_env_overrides(model))
    return values


@lru_cache()
def get_settings() -> Settings:
    """
    Load and return application settings (cached).

    Returns:
        Settings: Complete application settings
    """
    toml_config = load_toml_config()

    llm = _section(toml_config, "llm", LLMSettings)
    if "api_key" not in llm and (key := os.getenv("OPENROUTER_API_KEY")):
        llm["api_key"] = key

    security = _section(toml_config, "security", SecuritySettings)
    # PORT as set by hosting platforms
    if "bind_port" not in _env_overrides(SecuritySettings) and (port := os.getenv("PORT")):
        security["bind_port"] = port

    settings_dict: Dict[str, Any] = {
        "environment": os.getenv("RELAY_ENVIRONMENT", "development"),
        "llm": llm,
        "security": security,
        "monitoring": _section(toml_config, "monitoring", MonitoringSettings),
        "sync": _section(toml_config, "sync", SyncSettings),
    }

    return Settings(**settings_dict)


def reload_settings() -> Settings:
    """
    Reload settings (clears cache).

    Returns:
        Settings: Reloaded application settings
    """
    get_settings.cache_clear()
    return get_settings()
