"""
Settings for the profile harvester.

Values come from environment variables; a YAML file named by
HARVESTER_CONFIG may override any of them (keys are the Settings field
names). Settings are loaded once at process start.
"""
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from core.exceptions import ConfigurationError

DEFAULT_DATABASE_URL = f"sqlite:///{os.path.join(os.path.dirname(__file__), 'harvester.db')}"
DEFAULT_API_BASE_URL = "https://real-time-people-company-data.p.rapidapi.com/"
DEFAULT_API_HOST = "real-time-people-company-data.p.rapidapi.com"

# Setting name -> environment variable
ENV_VARS = {
    "database_url": "DATABASE_URL",
    "api_key": "PROFILE_API_KEY",
    "api_base_url": "PROFILE_API_BASE_URL",
    "api_host": "PROFILE_API_HOST",
    "monthly_quota": "MONTHLY_QUOTA",
    "request_timeout": "REQUEST_TIMEOUT",
    "max_retries": "MAX_RETRIES",
    "backoff_base": "BACKOFF_BASE",
    "backoff_max": "BACKOFF_MAX",
    "retry_delay": "RETRY_DELAY",
    "item_delay": "ITEM_DELAY",
    "batch_size": "BATCH_SIZE",
    "respect_quota": "RESPECT_QUOTA",
    "profile_fetcher_schedule": "PROFILE_FETCHER_SCHEDULE",
    "quota_reset_schedule": "QUOTA_RESET_SCHEDULE",
    "blob_dir": "BLOB_DIR",
    "smtp_host": "SMTP_HOST",
    "smtp_port": "SMTP_PORT",
    "smtp_username": "SMTP_USERNAME",
    "smtp_password": "SMTP_PASSWORD",
    "from_address": "EMAIL_FROM",
    "admin_email": "ADMIN_EMAIL",
    "run_log_dir": "RUN_LOG_DIR",
}


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    api_key: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    api_host: str = DEFAULT_API_HOST
    monthly_quota: int = 50000
    request_timeout: float = 60.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    retry_delay: float = 1.0
    item_delay: float = 5.0
    batch_size: int = 10
    respect_quota: bool = True
    profile_fetcher_schedule: str = "0 2 * * *"
    quota_reset_schedule: str = "0 0 1 * *"
    blob_dir: str = "./blobs"
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    from_address: str = ""
    admin_email: str = ""
    run_log_dir: Optional[str] = None

    def __post_init__(self):
        if self.monthly_quota <= 0:
            raise ConfigurationError("monthly_quota must be > 0")
        if self.batch_size <= 0:
            raise ConfigurationError("batch_size must be > 0")
        if self.max_retries <= 0:
            raise ConfigurationError("max_retries must be > 0")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be > 0")
        if self.backoff_base <= 0 or self.backoff_max < self.backoff_base:
            raise ConfigurationError("backoff_base must be > 0 and <= backoff_max")
        if self.retry_delay < 0 or self.item_delay < 0:
            raise ConfigurationError("retry_delay and item_delay must be >= 0")


def _coerce(name: str, raw: Any, default: Any) -> Any:
    """Convert a raw env/YAML value to the type of the field's default."""
    if raw is None:
        return None
    try:
        if isinstance(default, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in {"1", "true", "yes", "on"}
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid value for '{name}': {raw!r}")
    return str(raw)


def _load_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    with open(config_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a mapping")
    unknown = set(data) - set(ENV_VARS)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
    return data


def load_settings(env: Optional[Dict[str, str]] = None, config_path: Optional[str] = None) -> Settings:
    """Build Settings from the environment and an optional YAML overlay."""
    env = os.environ if env is None else env
    config_path = config_path or env.get("HARVESTER_CONFIG")
    overlay = _load_yaml(config_path) if config_path else {}

    values = {}
    for f in fields(Settings):
        default = f.default
        raw = overlay.get(f.name, env.get(ENV_VARS[f.name]))
        if raw is None or raw == "":
            continue
        # Optional[str] fields default to None, treat them as strings
        values[f.name] = _coerce(f.name, raw, default if default is not None else "")
    return Settings(**values)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
