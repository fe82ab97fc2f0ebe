"""
Configuration loader for the message hub worker.
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
class DatabaseConfig:
    url: str = "sqlite:///./message_hub.db"            # postgresql:// | sqlite://
    echo: bool = False


@dataclass
class RedisConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    url: str = "redis://localhost:6379"


@dataclass
class QueueConfig:
    inbound: str = "inbound_events"
    marketing: str = "marketing_queue"
    realtime_channel: str = "chat_events"
    pop_timeout: int = 5                # seconds a blocking pop waits before yielding
    error_backoff: float = 1.0          # pause after a queue/connection failure


@dataclass
class DispatchConfig:
    max_attempts: int = 3
    backoff_base: float = 2.0           # delay before retry n is backoff_base ** n seconds
    inter_message_delay: float = 0.2
    provider_timeout: float = 30.0


@dataclass
class MetaConfig:
    graph_url: str = "https://graph.facebook.com"
    api_version: str = "v18.0"
    access_token: str = ""
    phone_number_id: str = ""
    page_access_token: str = ""
    instagram_access_token: str = ""
    session_template: str = ""          # template used when the 24h window is closed
    session_template_language: str = "fr"


@dataclass
class AIConfig:
    history_limit: int = 10
    knowledge_char_limit: int = 20000
    default_provider: str = "GEMINI"
    max_output_tokens: int = 500
    gemini_url: str = "https://generativelanguage.googleapis.com/v1beta"


@dataclass
class TenantConfig:
    default_tenant_id: str = ""


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "MessageHub"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    meta: MetaConfig = field(default_factory=MetaConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    tenant: TenantConfig = field(default_factory=TenantConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_settings: Optional[Settings] = None

_ENV_VAR = re.compile(r"\$\{(\w+)\}")

# YAML section name → dataclass
_SECTIONS = {
    "database": DatabaseConfig,
    "redis": RedisConfig,
    "queues": QueueConfig,
    "dispatch": DispatchConfig,
    "meta": MetaConfig,
    "ai": AIConfig,
    "tenant": TenantConfig,
    "logging": LoggingConfig,
}


def _expand(obj: Any) -> Any:
    """Substitute ${VAR} in every string; unknown variables are left in place."""
    if isinstance(obj, str):
        return _ENV_VAR.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {k: _expand(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand(v) for v in obj]
    return obj


def _section(cls, data: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    if not data:
        return cls()
    known = cls.__dataclass_fields__
    values = {
        k: v for k, v in data.items()
        # an unresolved ${VAR} keeps the dataclass default
        if k in known and v is not None and not (isinstance(v, str) and _ENV_VAR.fullmatch(v))
    }
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "HUB_WORKER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()
    path = Path(config_path)
    if path.exists():
        raw = _expand(yaml.safe_load(path.read_text()) or {})
        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        for name, cls in _SECTIONS.items():
            setattr(settings, name, _section(cls, raw.get(name)))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests)."""
    global _settings
    _settings = None
