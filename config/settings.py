"""
Configuration loader for the quotecast broadcaster.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_CRON = "0 9 * * *"
DEFAULT_TIMEZONE = "Asia/Kolkata"


@dataclass
class ScheduleConfig:
    cron: str = DEFAULT_CRON
    timezone: str = DEFAULT_TIMEZONE
    session_recheck_s: float = 300.0    # re-verify a not-ready session; 0 disables


@dataclass
class DataConfig:
    contacts_file: str = "./data/contacts.json"
    quotes_file: str = "./data/quotes.json"


@dataclass
class DispatchConfig:
    max_attempts: int = 3               # first attempt + 2 retries
    backoff_base_s: float = 1.0
    backoff_factor: float = 1.4
    backoff_max_s: float = 30.0
    throttle_base_s: float = 2.0        # pause between recipients
    throttle_jitter_s: float = 1.5      # random extra on top of the base pause
    caption_template: str = "Hi {name},\n\n{text}"


@dataclass
class InboundConfig:
    unsubscribe_keywords: list[str] = field(default_factory=lambda: [
        "stop", "unsubscribe", "stop messages", "stop now", "cancel",
    ])
    resubscribe_keywords: list[str] = field(default_factory=lambda: ["join", "start"])
    allow_resubscribe: bool = False
    unsubscribed_reply: str = (
        "You have been unsubscribed from daily messages. "
        "If this was a mistake, reply JOIN or contact the sender."
    )
    not_found_reply: str = (
        "We did not find your number in the subscription list. "
        "If you want to unsubscribe, reply STOP from the subscribed number."
    )
    resubscribe_reply: str = (
        "To subscribe, please ask the sender to add your number. "
        "This account accepts subscriptions only from the owner."
    )
    resubscribed_reply: str = "Welcome back! You will receive the daily message again."
    already_subscribed_reply: str = "You are already subscribed to daily messages."


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""
    verify_token: str = ""
    app_secret: str = ""
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"
    timeout_s: float = 20.0
    media_timeout_s: float = 20.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False
    file: str = "./logs/quotecast.log"   # empty string disables the file sink


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class Settings:
    app_name: str = "quotecast"
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    data: DataConfig = field(default_factory=DataConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    inbound: InboundConfig = field(default_factory=InboundConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (empty if unset)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
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


def _section(cls, raw: dict[str, Any], name: str):
    """Build a dataclass section, keeping defaults for missing or unknown keys."""
    data = raw.get(name) or {}
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then apply env overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "QUOTECAST_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.schedule = _section(ScheduleConfig, raw, "schedule")
        settings.data = _section(DataConfig, raw, "data")
        settings.dispatch = _section(DispatchConfig, raw, "dispatch")
        settings.inbound = _section(InboundConfig, raw, "inbound")
        settings.whatsapp = _section(WhatsAppConfig, raw, "whatsapp")
        settings.logging = _section(LoggingConfig, raw, "logging")
        settings.api = _section(ApiConfig, raw, "api")

    # Plain env vars win over the file for the schedule
    settings.schedule.cron = os.environ.get("CRON_SCHEDULE") or settings.schedule.cron
    settings.schedule.timezone = os.environ.get("CRON_TIMEZONE") or settings.schedule.timezone

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
