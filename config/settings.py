"""
Configuration loader for the flowbot engine.
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
class EngineConfig:
    default_session_timeout_minutes: int = 30
    max_loop_iterations: int = 50                      # template {{for}} cap
    max_auto_advance_steps: int = 100                  # skip / input_type none chain cap
    serialize_per_contact: bool = True                 # one message at a time per (tenant, contact, channel)
    cancel_message: str = "Flow cancelled."
    validation_error_message: str = "Invalid input. Please try again."
    max_retries_message: str = "Too many invalid attempts. Please start again later."
    api_error_message: str = "Sorry, there was an error processing your request."
    default_max_retries: int = 3                       # step.max_retries 0 means this


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"                      # "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class WhatsAppConfig:
    account_name: str = "default"                      # channel name sessions are keyed on
    tenant_id: str = "default"
    phone_number_id: str = ""
    access_token: str = ""
    api_version: str = "v21.0"
    base_url: str = "https://graph.facebook.com"
    verify_token: str = ""
    timeout_seconds: float = 30.0


@dataclass
class Settings:
    app_name: str = "flowbot"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    chatbots: list[dict[str, Any]] = field(default_factory=list)
    flows: list[dict[str, Any]] = field(default_factory=list)
    keyword_rules: list[dict[str, Any]] = field(default_factory=list)
    ai_contexts: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
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


def _build(cls, raw: Optional[dict[str, Any]], default):
    """Dataclass from a YAML section, keeping defaults for missing / unknown keys."""
    if not raw:
        return default
    known = {f for f in cls.__dataclass_fields__}
    values = {k: v for k, v in raw.items() if k in known}
    return cls(**values)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWBOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.engine = _build(EngineConfig, raw.get("engine"), settings.engine)
        settings.database = _build(DatabaseConfig, raw.get("database"), settings.database)
        settings.whatsapp = _build(WhatsAppConfig, raw.get("whatsapp"), settings.whatsapp)
        settings.chatbots = raw.get("chatbots", [])
        settings.flows = raw.get("flows", [])
        settings.keyword_rules = raw.get("keyword_rules", [])
        settings.ai_contexts = raw.get("ai_contexts", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
