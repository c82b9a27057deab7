"""
Configuration loader for the Discord async worker.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DiscordConfig:
    bot_token: str = ""
    api_base: str = "https://discord.com/api/v10"
    request_timeout: float = 15.0          # seconds, per API call
    user_agent: str = "Pawtograder-Discord-Bot/1.0"


@dataclass
class RateLimitConfig:
    redis_url: str = ""                    # empty → process-local buckets
    key_prefix: str = "discord"
    global_capacity: int = 50
    global_refill_amount: int = 50
    global_refill_interval: float = 1.0    # seconds
    channel_capacity: int = 5
    channel_refill_amount: int = 5
    channel_refill_interval: float = 5.0   # seconds


@dataclass
class QueueConfig:
    backend: str = "memory"                # "pgmq" for production, "memory" for dev
    queue_name: str = "discord_async_calls"
    dlq_name: str = "discord_async_calls_dlq"
    batch_size: int = 4
    visibility_timeout: int = 60           # seconds a read message stays hidden
    idle_sleep: float = 15.0               # seconds to wait after an empty batch
    error_sleep: float = 5.0               # seconds to wait after a loop error
    stuck_read_threshold: int = 10         # read_ct that triggers a stuck alert


@dataclass
class RetryConfig:
    max_retries: int = 5
    default_retry_after: int = 60          # seconds, when a 429 carries no hint
    min_backoff: int = 5
    max_backoff: int = 900
    max_exponent: int = 6
    jitter_ratio: float = 0.25
    error_delay: int = 120                 # fixed delay for non rate-limit errors
    fast_track_unknown_methods: bool = False


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./discord_worker.db"  # postgresql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory"


@dataclass
class WorkerConfig:
    edge_function_secret: str = ""
    app_url: str = ""                      # host used for deep links, no scheme


@dataclass
class ObservabilityConfig:
    sentry_dsn: str = ""
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"            # "console" | "json"


@dataclass
class Settings:
    app_name: str = "discord-async-worker"
    debug: bool = False
    discord: DiscordConfig = field(default_factory=DiscordConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


_settings: Optional[Settings] = None

_ENV_PATTERN = re.compile(r'\$\{(\w+)\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (empty if unset)."""
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return _ENV_PATTERN.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _coerce(value: Any, default: Any) -> Any:
    """Coerce env-substituted strings back to the type of the default."""
    if value is None or value == "":
        return default
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def _build_section(cls, raw: dict[str, Any]):
    defaults = cls()
    values = {}
    for name in cls.__dataclass_fields__:
        values[name] = _coerce(raw.get(name), getattr(defaults, name))
    return cls(**values)


def settings_from_dict(raw: dict[str, Any]) -> Settings:
    """Build Settings from an already-parsed mapping (YAML or test fixture)."""
    raw = _process_values(raw or {})
    settings = Settings()
    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = _coerce(raw.get("debug"), settings.debug)

    sections = {
        "discord": DiscordConfig,
        "rate_limit": RateLimitConfig,
        "queue": QueueConfig,
        "retry": RetryConfig,
        "database": DatabaseConfig,
        "worker": WorkerConfig,
        "observability": ObservabilityConfig,
    }
    for name, cls in sections.items():
        if name in raw:
            setattr(settings, name, _build_section(cls, raw[name] or {}))
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "WORKER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    raw: dict[str, Any] = {}
    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _settings = settings_from_dict(raw)
    return _settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
