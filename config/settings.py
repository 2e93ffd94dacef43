"""
Configuration loader for the ordering bot.
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
class WhatsAppConfig:
    api_base_url: str = "https://graph.facebook.com/v18.0"
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""                  # empty disables signature checks


@dataclass
class ResilienceConfig:
    break_duration_seconds: float = 30.0
    max_retries: int = 3
    timeout_seconds: float = 10.0
    sampling_duration_seconds: float = 60.0
    minimum_throughput: int = 10
    failure_rate_threshold: float = 50.0  # percent
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0


@dataclass
class SessionConfig:
    timeout_minutes: int = 30
    warning_minutes: int = 2
    watchdog_interval_seconds: int = 60


@dataclass
class BusinessConfig:
    name: str = "Carnicería La Blanquita"
    timezone: str = "America/Mexico_City"
    late_order_start_hour: int = 16
    printer_name: str = "default"
    hours: str = "Lun-Sáb 8:00 AM - 8:00 PM\nDom 8:00 AM - 2:00 PM"
    address: str = "No disponible"
    phone: str = "No disponible"
    delivery_time: str = "60-90 minutos"


@dataclass
class DedupConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"
    ttl_hours: int = 24


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./carniceria_bot.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "print-workers"
    consumer_concurrency: int = 2
    max_attempts: int = 3
    retry_backoff_base: int = 30        # base seconds for exponential retry backoff
    delayed_promote_interval: int = 5


@dataclass
class Settings:
    app_name: str = "CarniceriaBot"
    debug: bool = False
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    business: BusinessConfig = field(default_factory=BusinessConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is None:
            return os.environ.get(var_name, match.group(0))
        return os.environ.get(var_name, default)
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _build_section(cls, data: Optional[dict[str, Any]]):
    """Instantiate a config dataclass, ignoring unknown keys."""
    data = data or {}
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.whatsapp = _build_section(WhatsAppConfig, raw.get("whatsapp"))
        settings.resilience = _build_section(ResilienceConfig, raw.get("resilience"))
        settings.session = _build_section(SessionConfig, raw.get("session"))
        settings.business = _build_section(BusinessConfig, raw.get("business"))
        settings.dedup = _build_section(DedupConfig, raw.get("dedup"))
        settings.database = _build_section(DatabaseConfig, raw.get("database"))
        settings.queue = _build_section(QueueConfig, raw.get("queue"))

    _settings = settings
    return settings


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
