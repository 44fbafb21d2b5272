"""
Configuration loader for the service desk agent.
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
class LLMConfig:
    provider: str = "openai"                        # "openai" | "anthropic"
    model: str = "gpt-4o-mini"
    temperature: float = 0.2
    max_tokens: int = 512
    api_key: str = ""
    assistant_id: str = ""                          # OpenAI assistant used for threaded resolution
    classify_timeout_s: float = 8.0                 # single-shot classification budget
    poll_interval_s: float = 1.0                    # assistant run polling interval
    poll_max_attempts: int = 15                     # hard cap on assistant polls


@dataclass
class ConversationConfig:
    grace_period_s: float = 60.0                    # idle wait before a timer fallback fires
    max_session_age_s: float = 2 * 60 * 60          # absolute session lifetime
    fragile_idle_s: float = 10 * 60                 # idle limit while still unidentified
    sweep_interval_s: float = 60.0
    dedup_window_s: float = 5 * 60
    max_attachments: int = 4
    identify_max_attempts: int = 3
    resolution_timeout_s: float = 45.0              # overall bound on the strategy chain
    salvage_min_length: int = 8
    min_text_length: dict[str, int] = field(default_factory=lambda: {
        "problem_description": 10,
        "damage_photo": 10,
        "order_request": 10,
        "training_request": 8,
        "general_office_request": 10,
        "guest_details": 10,
    })


@dataclass
class IdentityConfig:
    customers_file: str = "./data/clients.json"
    country_code: str = "972"
    trunk_prefix: str = "0"
    stopwords: list[str] = field(default_factory=lambda: [
        "parking", "park", "lot", "garage", "site", "center", "centre", "the", "from",
        "חניון", "חניה", "חנייה", "אתר", "מרכז",
    ])
    aliases: list[list[str]] = field(default_factory=list)   # [[alias, site fragment], ...]


@dataclass
class ResolutionConfig:
    catalog_file: str = "./data/scenarios.json"
    keyword_min_score: int = 8


@dataclass
class TicketConfig:
    prefix: str = "HSC-"
    floor: int = 10001


@dataclass
class MailConfig:
    from_address: str = "report@example.com"
    technician_address: str = "service@example.com"
    office_address: str = "office@example.com"
    sales_address: str = "sales@example.com"
    training_address: str = "training@example.com"


@dataclass
class BusinessConfig:
    company_name: str = "Service Desk"
    agent_name: str = "Hadar"
    support_phone: str = ""
    support_email: str = ""
    office_hours: str = "Sun-Thu 08:15-17:00"


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ServiceDeskAgent"
    debug: bool = False
    timezone: str = "Asia/Jerusalem"
    llm: LLMConfig = field(default_factory=LLMConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    resolution: ResolutionConfig = field(default_factory=ResolutionConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    business: BusinessConfig = field(default_factory=BusinessConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


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


def _merge_section(section: Any, raw: dict[str, Any]) -> Any:
    """Overlay known keys from a raw YAML mapping onto a config dataclass."""
    for key, value in (raw or {}).items():
        if not hasattr(section, key):
            continue
        current = getattr(section, key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = {**current, **value}
        setattr(section, key, value)
    return section


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "SERVICE_DESK_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        _merge_section(settings.llm, raw.get("llm"))
        _merge_section(settings.conversation, raw.get("conversation"))
        _merge_section(settings.identity, raw.get("identity"))
        _merge_section(settings.resolution, raw.get("resolution"))
        _merge_section(settings.tickets, raw.get("tickets"))
        _merge_section(settings.mail, raw.get("mail"))
        _merge_section(settings.business, raw.get("business"))

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
