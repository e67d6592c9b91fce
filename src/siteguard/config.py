"""
Configuration management.

Uses Pydantic Settings for environment variable handling and validation.
An optional config.yaml provides defaults; environment variables win.
"""

import json
import os
from functools import lru_cache
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        possible_paths = [
            "config.yaml",
            "../../config.yaml",
            "../../../config.yaml",
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


class StoreSettings(BaseSettings):
    """Key-value store backend configuration."""

    redis_url: str = Field(default="", description="Redis connection string, empty for in-process fallback")
    connect_timeout_seconds: float = Field(default=5.0, description="Connect/ping timeout")
    command_timeout_seconds: float = Field(default=5.0, description="Per-command socket timeout")

    model_config = SettingsConfigDict(env_prefix="SITEGUARD_STORE_")


class RateLimitSettings(BaseSettings):
    """Rate limit overrides, applied once at start-up."""

    overrides: Dict[str, Dict[str, int]] = Field(
        default_factory=dict,
        description="Per-category {max_requests, window_seconds} overrides",
    )

    @field_validator("overrides", mode="before")
    def parse_overrides(cls, v: Any) -> Dict[str, Dict[str, int]]:
        """Parse overrides from JSON string if needed."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        if isinstance(v, dict):
            return v
        return {}

    model_config = SettingsConfigDict(env_prefix="SITEGUARD_RATE_LIMIT_")


class LoggerSettings(BaseSettings):
    """Secure logger delivery configuration."""

    environment: str = Field(default="development", description="development or production")
    buffer_size: int = Field(default=1000, description="Flush when this many events are buffered")
    flush_interval_seconds: int = Field(default=60, description="Periodic buffer flush interval")
    sink_url: str = Field(default="", description="HTTP log sink endpoint, empty to discard flushed batches")
    sink_timeout_seconds: int = Field(default=10, description="HTTP log sink request timeout")
    sink_max_pending_batches: int = Field(default=100, description="Batches kept while the sink is failing")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    model_config = SettingsConfigDict(env_prefix="SITEGUARD_LOGGER_")


class MonitorSettings(BaseSettings):
    """Security monitor thresholds and sweep intervals."""

    failed_logins_per_ip: int = Field(default=10)
    failed_logins_per_user: int = Field(default=5)
    suspicious_actions_per_user: int = Field(default=20)
    database_errors_per_minute: int = Field(default=50)
    coordinated_attack_events: int = Field(default=20)
    error_spike_events: int = Field(default=10)
    recent_endpoints: int = Field(default=20)
    retention_seconds: int = Field(default=24 * 60 * 60)
    analysis_interval_seconds: int = Field(default=5 * 60)
    cleanup_interval_seconds: int = Field(default=15 * 60)
    scheduler_interval_seconds: int = Field(default=30, description="Background scheduler wake-up interval")

    model_config = SettingsConfigDict(env_prefix="SITEGUARD_MONITOR_")


class SecuritySettings(BaseSettings):
    """Admin API credentials."""

    admin_token: str = Field(default="", description="Bearer token for admin endpoints")

    model_config = SettingsConfigDict(env_prefix="SITEGUARD_SECURITY_")


class Settings(BaseSettings):
    """Main application settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    store: StoreSettings = Field(default_factory=StoreSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    logger: LoggerSettings = Field(default_factory=LoggerSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    model_config = SettingsConfigDict(env_prefix="SITEGUARD_", case_sensitive=False)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    mappings = {
        ("server", "host"): "SITEGUARD_HOST",
        ("server", "port"): "SITEGUARD_PORT",
        ("server", "debug"): "SITEGUARD_DEBUG",
        ("server", "log_level"): "SITEGUARD_LOG_LEVEL",
        ("store", "redis_url"): "SITEGUARD_STORE_REDIS_URL",
        ("store", "connect_timeout_seconds"): "SITEGUARD_STORE_CONNECT_TIMEOUT_SECONDS",
        ("logger", "environment"): "SITEGUARD_LOGGER_ENVIRONMENT",
        ("logger", "buffer_size"): "SITEGUARD_LOGGER_BUFFER_SIZE",
        ("logger", "flush_interval_seconds"): "SITEGUARD_LOGGER_FLUSH_INTERVAL_SECONDS",
        ("logger", "sink_url"): "SITEGUARD_LOGGER_SINK_URL",
        ("security", "admin_token"): "SITEGUARD_SECURITY_ADMIN_TOKEN",
    }

    for (section, key), env_var in mappings.items():
        if env_var not in os.environ:
            value = config_data.get(section, {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    # Handle rate limit overrides specially (convert dict to JSON string)
    if "SITEGUARD_RATE_LIMIT_OVERRIDES" not in os.environ:
        overrides = config_data.get("rate_limit", {}).get("overrides")
        if overrides:
            os.environ["SITEGUARD_RATE_LIMIT_OVERRIDES"] = json.dumps(overrides)

    monitor_section = config_data.get("monitor", {})
    for key, value in monitor_section.items():
        env_var = f"SITEGUARD_MONITOR_{key.upper()}"
        if env_var not in os.environ and value is not None:
            os.environ[env_var] = str(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
