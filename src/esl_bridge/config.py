"""
Bridge configuration.

Settings come from an optional JSON config file, overlaid by environment
variables. Everything is validated by pydantic so a bad backoff or retry
value fails at startup instead of inside the queue processor.
"""

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from esl_bridge.errors import ConfigurationError

DEFAULT_API_BASE = "https://cloud.minewesl.com"

# config key -> environment variable
ENV_MAPPINGS = {
    "api_base": "MINEW_API_BASE",
    "username": "MINEW_USERNAME",
    "password": "MINEW_PASSWORD",
    "database_url": "DATABASE_URL",
    "token_ttl_hours": "MINEW_TOKEN_TTL_HOURS",
    "refresh_wait_seconds": "MINEW_REFRESH_WAIT_SECONDS",
    "max_attempts": "MINEW_MAX_ATTEMPTS",
    "retry_delay_seconds": "MINEW_RETRY_DELAY_SECONDS",
    "timeout_seconds": "MINEW_TIMEOUT_SECONDS",
    "backoff_base": "SYNC_BACKOFF_BASE",
    "max_retries": "SYNC_MAX_RETRIES",
    "batch_size": "SYNC_BATCH_SIZE",
    "stale_after_minutes": "SYNC_STALE_AFTER_MINUTES",
    "dedup_window_minutes": "ESL_DEDUP_WINDOW_MINUTES",
    "button_poll_minutes": "ESL_BUTTON_POLL_MINUTES",
    "wake_mix_tags": "ESL_WAKE_MIX_TAGS",
    "cron_secret": "CRON_SECRET",
}


class BridgeSettings(BaseModel):
    """Validated runtime settings for the ESL bridge."""

    # Platform account
    api_base: str = DEFAULT_API_BASE
    username: str = ""
    password: str = ""

    database_url: str = "sqlite:///esl_bridge.db"

    # Credentials
    token_ttl_hours: float = 23.0  # platform tokens live 24h
    refresh_wait_seconds: float = 10.0

    # Outbound calls
    max_attempts: int = 2
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 30.0

    # Sync queue
    backoff_base: float = 2.0
    max_retries: int = 3
    batch_size: int = 50
    stale_after_minutes: int = 15

    # Webhook
    dedup_window_minutes: int = 5

    # Button log polling
    button_poll_minutes: int = 60
    wake_mix_tags: bool = True

    cron_secret: str | None = None

    @field_validator("api_base")
    @classmethod
    def validate_api_base(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_base must be an http(s) URL")
        return v

    @field_validator("token_ttl_hours")
    @classmethod
    def validate_token_ttl(cls, v: float) -> float:
        if not 0 < v < 24:
            raise ValueError("token_ttl_hours must be between 0 and 24 (exclusive)")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if not 1 <= v <= 5:
            raise ValueError("max_attempts must be between 1 and 5")
        return v

    @field_validator("backoff_base")
    @classmethod
    def validate_backoff_base(cls, v: float) -> float:
        if v < 1:
            raise ValueError("backoff_base must be >= 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_retries must be >= 1")
        return v

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        if not 1 <= v <= 500:
            raise ValueError("batch_size must be between 1 and 500")
        return v

    @field_validator(
        "refresh_wait_seconds",
        "retry_delay_seconds",
        "timeout_seconds",
    )
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("stale_after_minutes", "dedup_window_minutes", "button_poll_minutes")
    @classmethod
    def validate_positive_minutes(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of minutes")
        return v

    @field_validator("cron_secret")
    @classmethod
    def blank_secret_is_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


def get_config_path() -> Path:
    """Get the configuration file path."""
    override = os.environ.get("ESL_BRIDGE_CONFIG")
    if override:
        return Path(override)
    return Path.home() / ".esl-bridge" / "config.json"


def load_settings(
    config_path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> BridgeSettings:
    """
    Load settings from file, with environment variable overrides.

    Priority:
    1. Environment variables
    2. Config file values
    3. Defaults

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid
    """
    env = os.environ if environ is None else environ
    path = Path(config_path) if config_path else get_config_path()

    raw: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path) as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    for config_key, env_var in ENV_MAPPINGS.items():
        env_value = env.get(env_var)
        if env_value is not None:
            raw[config_key] = env_value

    try:
        return BridgeSettings.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
